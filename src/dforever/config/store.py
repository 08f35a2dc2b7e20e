"""Canonical configuration store.

Brief:
  The YAML file is the single source of truth. The user may edit it while the
  process runs (a watcher calls load() again), and the web API may change it
  through add_site()/update_site()/remove_site(), which write it straight back.

  To keep write-back from rewriting the user's file with defaults, the store
  keeps `canonical` exactly as the user wrote it (apart from the small
  in-place normalizations done by validation). Defaults and computed values
  live in GlobalSettings and the derived vhosts, never in `canonical`.

Inputs:
  - Path to the YAML configuration file.

Outputs:
  - The canonical mapping, derived views, and "reloaded"/"persisted"
    notifications for subscribers (e.g. the VhostRegistry).
"""

from __future__ import annotations

import copy
import dataclasses
import datetime
import logging
import os
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional

import yaml

from ..errors import ConfigError, ConfigParseError, ConfigValidationError
from ..vhosts.derivation import (
    DerivedVhost,
    MirrorVhost,
    all_hostnames,
    derive_mirrors,
    derive_vhosts,
    dweb_url_for_key,
)
from .config_schema import match_content_key, validate_config, validate_mirror_entry
from .settings import GlobalSettings

logger = logging.getLogger(__name__)

EVENT_RELOADED = "reloaded"
EVENT_PERSISTED = "persisted"

# Outcome statuses returned to the web API.
SITE_OK = "ok"
SITE_ALREADY_EXISTS = "already_exists"
SITE_NOT_FOUND = "not_found"
SITE_INVALID = "invalid"

Subscriber = Callable[["CanonicalStore"], None]

_SKIP = object()
_SCALARS = (str, bool, int, float, bytes, datetime.date, type(None))


@dataclasses.dataclass(frozen=True)
class SiteOutcome:
    """Result of an API-driven site mutation.

    Attributes:
      - status: SITE_OK, SITE_ALREADY_EXISTS, SITE_NOT_FOUND or SITE_INVALID.
      - error: The ConfigValidationError when status is SITE_INVALID.
    """

    status: str
    error: Optional[ConfigValidationError] = None

    @property
    def ok(self) -> bool:
        return self.status in (SITE_OK, SITE_ALREADY_EXISTS)


def _yaml_safe(value: Any) -> Any:
    """Brief: Copy value keeping only what yaml.safe_dump can represent.

    Inputs:
      - value: Arbitrary object from the canonical mapping.

    Outputs:
      - A plain copy, or the _SKIP sentinel when value cannot be dumped.
        Unrepresentable members of containers are dropped individually.
    """

    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, (list, tuple)):
        items = [_yaml_safe(v) for v in value]
        return [v for v in items if v is not _SKIP]
    if isinstance(value, dict):
        out: Dict[Any, Any] = {}
        for k, v in value.items():
            if not isinstance(k, _SCALARS):
                continue
            safe = _yaml_safe(v)
            if safe is not _SKIP:
                out[k] = safe
        return out
    return _SKIP


def _entry_key(entry: Any) -> Optional[str]:
    if not isinstance(entry, dict) or not isinstance(entry.get("url"), str):
        return None
    key = match_content_key(entry["url"])
    return key.lower() if key else None


class CanonicalStore:
    """Owns the canonical YAML document and its file.

    Inputs (constructor):
      - config_path: Optional path; when given the file is loaded immediately.
      - hostname_fallback: Passed to GlobalSettings (use the machine hostname
        when no domain is configured).
      - home: Optional home directory for "~" expansion (tests).

    Example:
      >>> store = CanonicalStore("/tmp/does-not-exist.yml")
      >>> store.canonical
      {}
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        *,
        hostname_fallback: bool = False,
        home: Optional[str] = None,
    ) -> None:
        self.config_path: Optional[str] = config_path
        # Only the values the user set (or a mutation API explicitly added).
        self.canonical: Dict[str, Any] = {}
        self.hostname_fallback = hostname_fallback
        self.home = home
        # Serializes read-modify-persist-notify sequences.
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[Subscriber]] = {}
        if config_path:
            self.load(config_path)

    # -- notifications ---------------------------------------------------

    def subscribe(self, event: str, callback: Subscriber) -> None:
        self._subscribers.setdefault(event, []).append(callback)

    def unsubscribe(self, event: str, callback: Subscriber) -> None:
        callbacks = self._subscribers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _emit(self, event: str) -> None:
        for callback in list(self._subscribers.get(event, [])):
            try:
                callback(self)
            except Exception:
                logger.exception("Subscriber for %r failed", event)

    # -- file I/O --------------------------------------------------------

    def load(self, config_path: Optional[str] = None) -> None:
        """Brief: Read, parse and validate the YAML file, then replace canonical.

        Inputs:
          - config_path: Optional path; defaults to the path of the last load.

        Outputs:
          - None; emits "reloaded" on success.

        Raises:
          - OSError: for read failures other than a missing file.
          - ConfigParseError: when the file is not a YAML mapping.
          - ConfigValidationError: when a value violates the schema.

        Notes:
          - A missing file is an empty document.
          - On failure the previous canonical document stays in place.
        """

        with self._lock:
            path = config_path or self.config_path
            if not path:
                raise ConfigError("no configuration path given")

            try:
                with open(path, "r", encoding="utf-8") as f:
                    contents = f.read()
            except FileNotFoundError:
                contents = ""
            except OSError:
                logger.error("Failed to load config file at %s", path)
                raise

            try:
                parsed = yaml.safe_load(contents)
            except yaml.YAMLError as exc:
                logger.error("Failed to parse config file at %s", path)
                raise ConfigParseError(f"Failed to parse {path}: {exc}", path=path) from exc

            if parsed is None:
                parsed = {}
            if not isinstance(parsed, dict):
                raise ConfigParseError("Configuration root must be a mapping", path=path)

            validate_config(parsed, config_path=path)

            self.config_path = path
            self.canonical = parsed
            logger.info("Loaded config from %s", path)
            self._emit(EVENT_RELOADED)

    def persist(self, config_path: Optional[str] = None) -> None:
        """Brief: Write canonical back to the YAML file.

        Inputs:
          - config_path: Optional override; defaults to the loaded path.

        Outputs:
          - None; emits "persisted".

        Notes:
          - Values that cannot be represented in YAML are left out instead of
            failing the whole write.
          - The file is replaced atomically (temp file + rename).
        """

        with self._lock:
            path = config_path or self.config_path
            if not path:
                raise ConfigError("no configuration path given")

            text = yaml.safe_dump(
                _yaml_safe(self.canonical),
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

            abs_path = os.path.abspath(path)
            cfg_dir = os.path.dirname(abs_path)
            os.makedirs(cfg_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".tmp-{os.path.basename(abs_path)}-", dir=cfg_dir
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                    tmp.write(text)
                os.replace(tmp_path, abs_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise

            self.config_path = path
            logger.debug("Wrote config to %s", path)
            self._emit(EVENT_PERSISTED)

    # -- mutations -------------------------------------------------------

    def _find_entry(self, key: str) -> Optional[Dict[str, Any]]:
        key = key.lower()
        for entry in self.canonical.get("dpacks") or []:
            if _entry_key(entry) == key:
                return entry
        return None

    def add_site(self, entry: Dict[str, Any]) -> bool:
        """Brief: Append a mirror entry and persist.

        Inputs:
          - entry: Validated mirror entry (url, name, optional otherDomains).

        Outputs:
          - bool: False (and no write) when a mirror with the same key exists.
        """

        with self._lock:
            key = _entry_key(entry)
            if key is None or self._find_entry(key) is not None:
                return False
            dpacks = self.canonical.get("dpacks")
            if not isinstance(dpacks, list):
                dpacks = self.canonical["dpacks"] = []
            dpacks.append(entry)
            self.persist()
            return True

    def update_site(self, key: str, entry: Dict[str, Any]) -> bool:
        """Brief: Update the hostname-affecting fields of an existing mirror.

        Inputs:
          - key: Content key of the mirror.
          - entry: Mapping with optional name and otherDomains.

        Outputs:
          - bool: False when no mirror has that key.

        Notes:
          - The stored url is never changed.
          - An empty or missing otherDomains removes the field.
        """

        with self._lock:
            old = self._find_entry(key)
            if old is None:
                return False
            if entry.get("name"):
                old["name"] = entry["name"]
            if entry.get("otherDomains"):
                old["otherDomains"] = list(entry["otherDomains"])
            else:
                old.pop("otherDomains", None)
            self.persist()
            return True

    def remove_site(self, key: str) -> int:
        """Brief: Remove every mirror with the given key and persist.

        Outputs:
          - int: number of entries removed (0 is not an error).
        """

        with self._lock:
            key = key.lower()
            before = list(self.canonical.get("dpacks") or [])
            kept = [e for e in before if _entry_key(e) != key]
            if "dpacks" in self.canonical:
                self.canonical["dpacks"] = kept
            self.persist()
            return len(before) - len(kept)

    # -- web API facing --------------------------------------------------

    def list_sites(self) -> List[MirrorVhost]:
        return derive_mirrors(self.canonical, self.settings)

    def get_site(self, key: str) -> Optional[MirrorVhost]:
        key = key.lower()
        for site in self.list_sites():
            if site.content_key == key:
                return site
        return None

    def try_add_site(self, entry: Dict[str, Any]) -> SiteOutcome:
        """Brief: Validate then add a mirror entry, returning a typed outcome.

        Inputs:
          - entry: Untrusted mapping with url, name, otherDomains.

        Outputs:
          - SiteOutcome: SITE_INVALID with the error, SITE_ALREADY_EXISTS, or SITE_OK.
        """

        candidate = copy.deepcopy(entry)
        try:
            validate_mirror_entry(candidate)
        except ConfigValidationError as exc:
            return SiteOutcome(SITE_INVALID, exc)
        if not self.add_site(candidate):
            return SiteOutcome(SITE_ALREADY_EXISTS)
        return SiteOutcome(SITE_OK)

    def try_update_site(self, key: str, entry: Dict[str, Any]) -> SiteOutcome:
        """Brief: Validate then update a mirror; missing fields keep their old value."""

        with self._lock:
            old = self._find_entry(key)
            if old is None:
                return SiteOutcome(SITE_NOT_FOUND)
            candidate: Dict[str, Any] = {"url": dweb_url_for_key(key.lower())}
            candidate["name"] = entry["name"] if entry.get("name") is not None else old.get("name")
            other = entry.get("otherDomains")
            candidate["otherDomains"] = other if other is not None else old.get("otherDomains")
            try:
                validate_mirror_entry(candidate)
            except ConfigValidationError as exc:
                return SiteOutcome(SITE_INVALID, exc)
            self.update_site(key, candidate)
            return SiteOutcome(SITE_OK)

    # -- derived views ---------------------------------------------------

    @property
    def settings(self) -> GlobalSettings:
        return GlobalSettings.from_canonical(
            self.canonical, hostname_fallback=self.hostname_fallback, home=self.home
        )

    def vhosts(self) -> List[DerivedVhost]:
        return derive_vhosts(self.canonical, self.settings)

    def hostnames(self) -> List[Optional[str]]:
        return all_hostnames(self.settings, self.vhosts())
