"""Error taxonomy shared by the configuration store and the vhost runtimes.

Configuration failures carry enough detail (offending value, dotted location,
optional category) for callers such as the web API to build field-specific
messages. Archive lookup misses are expected during content resolution and
are modelled as their own type so they never get confused with read failures.
"""

from __future__ import annotations

from typing import Any, Optional

# Validation categories surfaced to web API callers.
INVALID_URL = "invalidUrl"
INVALID_NAME = "invalidName"
INVALID_DOMAIN = "invalidDomain"


class DForeverError(Exception):
    """Base class for all dforever errors."""


class ConfigError(DForeverError):
    """Base class for configuration errors."""


class ConfigParseError(ConfigError):
    """Brief: The configuration file is not a parsable YAML mapping.

    Inputs:
      - message: Human-readable description.
      - path: Optional path of the offending file.
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ConfigValidationError(ConfigError):
    """Brief: A configuration value violates the schema.

    Inputs:
      - message: Human-readable description (mentions the offending key).
      - value: The offending value, when known.
      - category: Optional category (INVALID_URL, INVALID_NAME, INVALID_DOMAIN).
      - path: Optional dotted location, e.g. "dpacks.0.url".

    Example:
      >>> err = ConfigValidationError("bad url", value="x", category=INVALID_URL)
      >>> err.category
      'invalidUrl'
    """

    def __init__(
        self,
        message: str,
        *,
        value: Any = None,
        category: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.value = value
        self.category = category
        self.path = path

    @property
    def invalid_url(self) -> bool:
        return self.category == INVALID_URL

    @property
    def invalid_name(self) -> bool:
        return self.category == INVALID_NAME

    @property
    def invalid_domain(self) -> bool:
        return self.category == INVALID_DOMAIN


class InvalidContentKey(DForeverError, ValueError):
    """Raised when a string does not encode a 64-hex-character content key."""


class ArchiveError(DForeverError):
    """Base class for archive access errors."""


class ArchiveEntryNotFound(ArchiveError, LookupError):
    """A path lookup inside an archive missed. Drives resolution, not a failure."""


class ArchiveReadError(ArchiveError):
    """Reading bytes from an archive failed mid-transfer."""
