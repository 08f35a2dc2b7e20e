"""Reconcile running vhosts with the derived configuration.

Brief:
  The registry owns the current generation of derived vhosts, keyed by id.
  Each reconcile() diffs a new generation against it and asks a runtime
  collaborator to start new vhosts, stop removed ones and restart changed
  ones. Vhosts are frozen dataclasses, so "changed" is plain inequality.

  The generation is swapped before the first await, so a second reconcile
  against the same generation has nothing to do even while the first one is
  still running. Lifecycle calls for one id are sequenced by a per-id lock;
  different ids are handled concurrently.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Dict, Iterable, List, Optional, Protocol

from ..config.store import EVENT_PERSISTED, EVENT_RELOADED
from .derivation import DerivedVhost

logger = logging.getLogger(__name__)


class VhostRuntime(Protocol):
    async def start(self, vhost: DerivedVhost) -> None:
        """Start serving vhost."""

    async def stop(self, vhost: DerivedVhost) -> None:
        """Stop serving vhost and release its resources."""


@dataclasses.dataclass(frozen=True)
class ReconcileResult:
    started: List[str]
    stopped: List[str]
    restarted: List[str]

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped or self.restarted)


class VhostRegistry:
    """Keep a runtime collaborator in step with the configured vhosts.

    Inputs (constructor):
      - runtime: Object with async start(vhost) / stop(vhost).

    Example:
      >>> registry = VhostRegistry(runtime)
      >>> # result = await registry.reconcile(store.vhosts())
    """

    def __init__(self, runtime: VhostRuntime) -> None:
        self.runtime = runtime
        self._current: Dict[str, DerivedVhost] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._store = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def current(self) -> Dict[str, DerivedVhost]:
        return dict(self._current)

    def _lock_for(self, vhost_id: str) -> asyncio.Lock:
        lock = self._locks.get(vhost_id)
        if lock is None:
            lock = self._locks[vhost_id] = asyncio.Lock()
        return lock

    async def _stop(self, vhost: DerivedVhost) -> None:
        async with self._lock_for(vhost.id):
            logger.info("Stopping %s vhost %s", vhost.vhost_type, vhost.id)
            await self.runtime.stop(vhost)

    async def _start(self, vhost: DerivedVhost) -> None:
        async with self._lock_for(vhost.id):
            logger.info("Starting %s vhost %s (%s)", vhost.vhost_type, vhost.id, ", ".join(vhost.hostnames))
            await self.runtime.start(vhost)

    async def _restart(self, old: DerivedVhost, new: DerivedVhost) -> None:
        async with self._lock_for(new.id):
            logger.info("Restarting %s vhost %s", new.vhost_type, new.id)
            await self.runtime.stop(old)
            await self.runtime.start(new)

    async def reconcile(self, vhosts: Iterable[DerivedVhost]) -> ReconcileResult:
        """Brief: Bring the runtime in line with a new generation of vhosts.

        Inputs:
          - vhosts: Derived vhosts of the new generation.

        Outputs:
          - ReconcileResult with the ids started, stopped and restarted.

        Notes:
          - A failing start/stop is logged and does not affect other vhosts.
        """

        new = {v.id: v for v in vhosts}
        old = self._current
        self._current = new

        stopped = [vid for vid in old if vid not in new]
        started = [vid for vid in new if vid not in old]
        restarted = [vid for vid in new if vid in old and old[vid] != new[vid]]

        ops = [self._stop(old[vid]) for vid in stopped]
        ops += [self._start(new[vid]) for vid in started]
        ops += [self._restart(old[vid], new[vid]) for vid in restarted]
        if ops:
            results = await asyncio.gather(*ops, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Vhost lifecycle operation failed", exc_info=result)

        for vid in stopped:
            lock = self._locks.get(vid)
            if vid not in self._current and lock is not None and not lock.locked():
                del self._locks[vid]

        return ReconcileResult(started=started, stopped=stopped, restarted=restarted)

    # -- store wiring ----------------------------------------------------

    def _on_store_change(self, store) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        vhosts = store.vhosts()

        def _schedule() -> None:
            task = loop.create_task(self.reconcile(vhosts))
            task.add_done_callback(_log_task_failure)

        loop.call_soon_threadsafe(_schedule)

    def attach(self, store, loop: asyncio.AbstractEventLoop) -> None:
        """Brief: Reconcile on the given loop whenever the store changes.

        Inputs:
          - store: CanonicalStore (or anything with subscribe()/vhosts()).
          - loop: Event loop that owns the runtime collaborator.

        Outputs:
          - None. Notifications may arrive from any thread.
        """

        self.detach()
        self._store = store
        self._loop = loop
        store.subscribe(EVENT_RELOADED, self._on_store_change)
        store.subscribe(EVENT_PERSISTED, self._on_store_change)

    def detach(self) -> None:
        if self._store is not None:
            self._store.unsubscribe(EVENT_RELOADED, self._on_store_change)
            self._store.unsubscribe(EVENT_PERSISTED, self._on_store_change)
        self._store = None
        self._loop = None

    async def shutdown(self) -> ReconcileResult:
        """Detach from the store and stop every running vhost."""

        self.detach()
        return await self.reconcile([])


def _log_task_failure(task: "asyncio.Task[ReconcileResult]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Reconcile failed", exc_info=exc)
