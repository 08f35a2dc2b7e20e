"""
Brief: Tests for dforever.config.settings.GlobalSettings defaults.

Inputs:
  - None

Outputs:
  - None
"""

import os

from dforever.config import settings as settings_mod
from dforever.config.settings import GlobalSettings, hostname_fallback_enabled


def test_empty_document_defaults():
    """
    Brief: An empty document yields the documented defaults.

    Inputs:
      - None

    Outputs:
      - None: Asserts directory, ports, and disabled sections
    """
    s = GlobalSettings.from_canonical({}, home="/home/bob")
    assert s.directory == os.path.join("/home/bob", ".forever")
    assert s.domain is None
    assert s.http_mirror is False
    assert s.ports == {"http": 80, "https": 443}
    assert s.letsencrypt is False
    assert s.dashboard is False
    assert s.webapi is False


def test_from_canonical_does_not_mutate_document():
    """
    Brief: Defaults never leak into the canonical mapping.

    Inputs:
      - None

    Outputs:
      - None
    """
    doc = {"ports": {"http": 8080}}
    GlobalSettings.from_canonical(doc, home="/h")
    assert doc == {"ports": {"http": 8080}}


def test_user_values_override_defaults():
    """
    Brief: Configured values replace defaults; partial ports merge.

    Inputs:
      - None

    Outputs:
      - None
    """
    s = GlobalSettings.from_canonical(
        {
            "directory": "~/.foobar",
            "domain": "foo.bar",
            "httpMirror": True,
            "ports": {"https": 8443},
            "webapi": {"username": "robert", "password": "hunter2"},
        },
        home="/home/bob",
    )
    assert s.directory == "/home/bob/.foobar"
    assert s.domain == "foo.bar"
    assert s.http_mirror is True
    assert s.ports == {"http": 80, "https": 8443}
    assert s.webapi == {"username": "robert", "password": "hunter2"}


def test_hostname_fallback(monkeypatch):
    """
    Brief: Without a domain the machine hostname is used only when enabled.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    monkeypatch.setattr(settings_mod.socket, "gethostname", lambda: "box.local")
    assert GlobalSettings.from_canonical({}, hostname_fallback=True).domain == "box.local"
    assert GlobalSettings.from_canonical({}, hostname_fallback=False).domain is None
    assert GlobalSettings.from_canonical({"domain": "x.y"}, hostname_fallback=True).domain == "x.y"


def test_hostname_fallback_enabled_by_environment():
    """
    Brief: debug/staging/test environments disable the hostname fallback.

    Inputs:
      - None

    Outputs:
      - None
    """
    assert hostname_fallback_enabled({}) is True
    assert hostname_fallback_enabled({"DFOREVER_ENV": "production"}) is True
    for env in ("debug", "staging", "test", "TEST"):
        assert hostname_fallback_enabled({"DFOREVER_ENV": env}) is False
