"""
Brief: Global pytest configuration and shared fixtures for dforever tests.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys

import pytest

# Ensure 'src' is on sys.path so 'dforever' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

KEY_A = "a" * 64
KEY_B = "0123456789abcdef" * 4
KEY_C = "c" * 64

FULL_CONFIG = f"""\
directory: ~/.foobar
domain: foo.bar
httpMirror: true
ports:
  http: 8080
  https: 8443
letsencrypt:
  email: bob@foo.com
  agreeTos: true
dashboard:
  port: 8089
webapi:
  username: robert
  password: hunter2
dpacks:
  - url: dweb://{KEY_A}/
    name: mysite
    otherDomains:
      - mysite.com
      - my-site.com
  - url: {KEY_B}
    name: othersite
    otherDomains: othersite.com
proxies:
  - from: myproxy.com
    to: https://mysite.com/
  - from: foo.proxy.edu
    to: http://localhost:8080/
  - from: best-proxy-ever
    to: http://127.0.0.1:123/
redirects:
  - from: myredirect.com
    to: https://mysite.com
  - from: foo.redirect.edu
    to: http://localhost:8080
  - from: best-redirect-ever
    to: http://127.0.0.1:123
"""


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        # Fallback: no-op on platforms without SIGALRM
        yield


@pytest.fixture
def write_config(tmp_path):
    """
    Brief: Factory writing YAML text to a config file under tmp_path.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - Callable(text, name="dforever.yml") -> str path
    """

    def _write(text: str, name: str = "dforever.yml") -> str:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def full_config_path(write_config):
    """
    Brief: Path of a config file exercising every supported key.

    Outputs:
      - str path to the YAML file
    """
    return write_config(FULL_CONFIG)
