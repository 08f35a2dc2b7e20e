"""Typed, read-only view of the global configuration with defaults applied.

The canonical YAML document only stores what the user wrote. Everything that
needs a default goes through GlobalSettings instead, so that defaults never
leak back into the file on write-back.
"""

from __future__ import annotations

import dataclasses
import os
import socket
from typing import Any, Dict, Mapping, Optional, Union

DEFAULT_DIRECTORY = os.path.join("~", ".forever")
DEFAULT_PORTS = {"http": 80, "https": 443}
DEBUG_ENVIRONMENTS = frozenset({"debug", "staging", "test"})

# letsencrypt/dashboard/webapi are either a mapping or False when disabled.
Section = Union[Dict[str, Any], bool]


@dataclasses.dataclass(frozen=True)
class GlobalSettings:
    """Global settings derived from the canonical document.

    Inputs (constructor): see fields; normally built with from_canonical().

    Example:
      >>> s = GlobalSettings.from_canonical({}, home="/home/bob")
      >>> s.directory, s.ports
      ('/home/bob/.forever', {'http': 80, 'https': 443})
    """

    directory: str
    domain: Optional[str]
    http_mirror: bool
    ports: Dict[str, Any]
    letsencrypt: Section
    dashboard: Section
    webapi: Section

    @classmethod
    def from_canonical(
        cls,
        canonical: Mapping[str, Any],
        *,
        hostname_fallback: bool = False,
        home: Optional[str] = None,
    ) -> "GlobalSettings":
        """Brief: Build settings from a canonical mapping without mutating it.

        Inputs:
          - canonical: Parsed and validated YAML mapping.
          - hostname_fallback: When True and no domain is configured, use the
            machine hostname as the domain.
          - home: Optional home directory used to expand "~" (tests).

        Outputs:
          - GlobalSettings instance.
        """

        directory = str(canonical.get("directory") or DEFAULT_DIRECTORY)
        if home is not None and (directory == "~" or directory.startswith("~/")):
            directory = home + directory[1:]
        directory = os.path.expanduser(directory)

        domain = canonical.get("domain")
        if not domain and hostname_fallback:
            domain = socket.gethostname()

        ports = dict(DEFAULT_PORTS)
        for k, v in (canonical.get("ports") or {}).items():
            if v:
                ports[k] = v

        return cls(
            directory=directory,
            domain=domain,
            http_mirror=bool(canonical.get("httpMirror") or False),
            ports=ports,
            letsencrypt=canonical.get("letsencrypt") or False,
            dashboard=canonical.get("dashboard") or False,
            webapi=canonical.get("webapi") or False,
        )


def hostname_fallback_enabled(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Return False when DFOREVER_ENV names a debug/test environment."""

    env = os.environ if environ is None else environ
    return str(env.get("DFOREVER_ENV", "")).lower() not in DEBUG_ENVIRONMENTS
