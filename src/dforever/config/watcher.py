"""Reload the YAML configuration when the file changes on disk.

Brief:
  A watchdog observer watches the directory holding the config file (editors
  often save through create+rename, which a watch on the file itself would
  miss). Bursts of events are coalesced: a reload runs at most once per
  `min_interval` seconds and a deferred reload is scheduled for events that
  arrive inside that window.

  A failed reload (parse or validation error) is logged; the store keeps its
  previous document and the running vhosts stay as they are.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import ConfigError
from .store import CanonicalStore

logger = logging.getLogger(__name__)

_WRITE_EVENTS = frozenset({"modified", "created", "moved"})


class _ConfigFileHandler(FileSystemEventHandler):
    """Forward write-like events on the config file to the watcher."""

    def __init__(self, watcher: "ConfigWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event) -> None:  # type: ignore[override]
        if getattr(event, "is_directory", False):
            return
        if getattr(event, "event_type", None) not in _WRITE_EVENTS:
            return
        for raw in (getattr(event, "src_path", None), getattr(event, "dest_path", None)):
            if raw and os.path.abspath(os.fsdecode(raw)) == self._watcher.path:
                self._watcher.notify()
                return


class ConfigWatcher:
    """Watch one config file and call store.load() when it changes.

    Inputs (constructor):
      - store: CanonicalStore to reload (its config_path is watched).
      - min_interval: Minimum seconds between two reloads.

    Example:
      >>> watcher = ConfigWatcher(store)
      >>> watcher.start()
      >>> # ... later
      >>> watcher.stop()
    """

    def __init__(self, store: CanonicalStore, min_interval: float = 1.0) -> None:
        if not store.config_path:
            raise ConfigError("cannot watch a store without a configuration path")
        self.store = store
        self.path = os.path.abspath(store.config_path)
        self.min_interval = float(min_interval)
        self._observer: Optional[Observer] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._last_reload_ts = 0.0

    def start(self) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)
        observer = Observer()
        observer.schedule(_ConfigFileHandler(self), directory, recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self.path)

    def stop(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=2.0)

    def notify(self) -> None:
        """Handle one change event, reloading now or after the minimum interval."""

        elapsed = time.monotonic() - self._last_reload_ts
        if elapsed < self.min_interval:
            self._schedule(self.min_interval - elapsed)
            return
        self.reload()

    def _schedule(self, delay: float) -> None:
        with self._lock:
            if self._timer is not None and self._timer.is_alive():
                return
            timer = threading.Timer(delay, self.reload)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def reload(self) -> bool:
        """Brief: Reload the store from disk.

        Outputs:
          - bool: True when the new document was accepted.
        """

        self._last_reload_ts = time.monotonic()
        logger.info("Reloading configuration from %s", self.path)
        try:
            self.store.load()
        except (ConfigError, OSError) as exc:
            logger.error("Configuration reload failed, keeping previous config: %s", exc)
            return False
        return True
