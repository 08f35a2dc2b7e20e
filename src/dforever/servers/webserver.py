"""HTTP listener for dforever: Host-header dispatch to vhosts and the web API.

This module builds the FastAPI application and helpers to run it with uvicorn
in a background thread. Requests are routed on their Host header:

  - the configured `domain`, when the `webapi` block is enabled, reaches the
    pinning web API routes,
  - any hostname owned by a running vhost reaches that vhost's site,
  - anything else gets "404 Unknown Host".

The vhost runtimes live on the server's event loop: the app lifespan attaches
the VhostRegistry to the store on startup and stops every vhost on shutdown.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config.store import EVENT_PERSISTED, EVENT_RELOADED, CanonicalStore
from ..vhosts.registry import VhostRegistry
from ..vhosts.sites import RuntimeManager, normalize_host
from .webapi import SessionStore, install_webapi

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class AppContext:
    """Everything the HTTP layer needs, passed explicitly instead of via globals.

    Inputs (constructor):
      - store: Loaded CanonicalStore.
      - runtime: RuntimeManager owning the running sites.
      - registry: VhostRegistry driving runtime (created when omitted).
      - sessions: Web API session tokens.
    """

    store: CanonicalStore
    runtime: RuntimeManager = dataclasses.field(default_factory=RuntimeManager)
    registry: Optional[VhostRegistry] = None
    sessions: SessionStore = dataclasses.field(default_factory=SessionStore)
    # Lowercased API hostname, or None when the web API is off.
    webapi_host: Optional[str] = dataclasses.field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.registry is None:
            self.registry = VhostRegistry(self.runtime)
        self.refresh_webapi_host(self.store)
        self.store.subscribe(EVENT_RELOADED, self.refresh_webapi_host)
        self.store.subscribe(EVENT_PERSISTED, self.refresh_webapi_host)

    def refresh_webapi_host(self, store: CanonicalStore) -> None:
        """Recompute the API hostname; runs once per store change, not per request."""

        settings = store.settings
        if settings.webapi and settings.domain:
            self.webapi_host = settings.domain.lower()
        else:
            self.webapi_host = None

    def is_webapi_host(self, host: Optional[str]) -> bool:
        if self.webapi_host is None:
            return False
        return normalize_host(host) == self.webapi_host


class VhostDispatchMiddleware:
    """ASGI middleware sending non-API HTTP traffic to the matching site.

    Inputs (constructor):
      - app: Downstream ASGI app (the FastAPI web API).
      - context: AppContext used to look up sites and the API host.
    """

    def __init__(self, app: ASGIApp, context: AppContext) -> None:
        self.app = app
        self.context = context

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        host = request.headers.get("host")
        if self.context.is_webapi_host(host):
            await self.app(scope, receive, send)
            return

        site = self.context.runtime.site_for_host(host)
        if site is None:
            logger.debug("No vhost for host %r", host)
            response = PlainTextResponse("404 Unknown Host", status_code=404)
        else:
            response = await site.handle(request)
        await response(scope, receive, send)


def create_app(context: AppContext) -> FastAPI:
    """Create the FastAPI application serving every vhost and the web API.

    Inputs:
      - context: AppContext with a loaded store.

    Outputs:
      - FastAPI app. Its lifespan starts the configured vhosts and stops them
        on shutdown.

    Example:
      >>> store = CanonicalStore("/etc/dforever.yml")
      >>> app = create_app(AppContext(store))
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry = context.registry
        registry.attach(context.store, asyncio.get_running_loop())
        result = await registry.reconcile(context.store.vhosts())
        logger.info("Started %d vhosts", len(result.started))
        try:
            yield
        finally:
            await registry.shutdown()
            logger.info("Stopped all vhosts")

    app = FastAPI(
        title="dforever",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.context = context
    install_webapi(app, context.store, context.sessions)
    app.add_middleware(VhostDispatchMiddleware, context=context)
    return app


class WebServerHandle:
    """Handle for the background uvicorn thread.

    Inputs (constructor):
      - thread: Thread running the uvicorn server loop.
      - server: uvicorn.Server instance (asked to exit on stop()).
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 10.0) -> None:
        """Ask uvicorn to exit (running the app shutdown) and wait for the thread."""

        if self._server is not None:
            self._server.should_exit = True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Webserver thread did not exit within %.1fs", timeout)


def start_webserver(
    context: AppContext,
    host: str = "0.0.0.0",
    port: Optional[int] = None,
) -> WebServerHandle:
    """Start the HTTP listener with uvicorn in a daemon thread.

    Inputs:
      - context: AppContext with a loaded store.
      - host: Bind address.
      - port: Bind port; defaults to the configured `ports.http`.

    Outputs:
      - WebServerHandle for is_running()/stop().

    Example:
      >>> handle = start_webserver(AppContext(store))
      >>> handle.is_running()
      True
    """

    if port is None:
        port = int(context.store.settings.ports["http"])

    app = create_app(context)
    config_uvicorn = uvicorn.Config(app, host=host, port=port, log_level="info", log_config=None)
    server = uvicorn.Server(config_uvicorn)

    def _runner() -> None:
        try:
            server.run()
        except Exception:
            logger.exception("Unhandled exception in webserver thread")

    thread = threading.Thread(target=_runner, name="dforever-webserver", daemon=True)
    thread.start()
    logger.info("Started dforever webserver on %s:%d", host, port)
    return WebServerHandle(thread, server=server)
