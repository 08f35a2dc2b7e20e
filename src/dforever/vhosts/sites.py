"""Per-vhost runtimes and the hostname table the HTTP listener dispatches on.

Brief:
  A site is the running form of one derived vhost. It has async start()/stop()
  and handle(request) returning a Starlette response:

  - MirrorSite serves a dPack archive through ContentResolver,
  - RedirectSite answers every request with a permanent redirect,
  - ProxySite forwards requests to its target origin with httpx.

  RuntimeManager is the VhostRegistry collaborator: it creates and tears down
  sites and keeps the hostname -> site table used for Host-header dispatch.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Callable, Dict, List, Optional

import httpx
from cachetools import TTLCache
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse

from .archive import Archive, ArchiveOpener, DirectoryArchiveOpener
from .derivation import DWEB_SCHEME, DerivedVhost, MirrorVhost, ProxyVhost, RedirectVhost
from .manifest import EMPTY_MANIFEST, Manifest, read_manifest
from .resolver import ContentResolver, MirrorRequest, MirrorResponse, encode_location_path

logger = logging.getLogger(__name__)

WELL_KNOWN_DPACK = "/.well-known/dpack"
WELL_KNOWN_TTL = 3600
MANIFEST_TTL_SECONDS = 5.0

# Existing escapes ("%") and query delimiters pass through untouched.
_QUERY_SAFE = "%=&?/:;@!$'()*+,~"

# Hop-by-hop headers are never forwarded in either direction.
_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def request_target(request: Request) -> str:
    """Percent-encoded path plus query string of the request."""

    path = encode_location_path(request.url.path)
    query = urllib.parse.quote(request.url.query, safe=_QUERY_SAFE)
    return f"{path}?{query}" if query else path


def to_starlette(response: MirrorResponse) -> Response:
    """Convert a resolved MirrorResponse into a Starlette response."""

    if response.stream is not None:
        return StreamingResponse(response.stream, status_code=response.status, headers=response.headers)
    return Response(content=response.body, status_code=response.status, headers=response.headers)


class Site:
    vhost: DerivedVhost

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def handle(self, request: Request) -> Response:
        raise NotImplementedError


class MirrorSite(Site):
    """Serve one dPack archive over HTTP.

    Inputs (constructor):
      - vhost: MirrorVhost this site runs.
      - opener: ArchiveOpener used on start().
      - manifest_ttl: Seconds a parsed manifest is reused before re-reading.
    """

    def __init__(
        self,
        vhost: MirrorVhost,
        opener: ArchiveOpener,
        *,
        manifest_ttl: float = MANIFEST_TTL_SECONDS,
    ) -> None:
        self.vhost = vhost
        self.opener = opener
        self.archive: Optional[Archive] = None
        self._manifest_cache: TTLCache = TTLCache(maxsize=1, ttl=manifest_ttl)

    async def start(self) -> None:
        self.archive = await self.opener.open(self.vhost.storage_directory, self.vhost.content_key)

    async def stop(self) -> None:
        archive, self.archive = self.archive, None
        self._manifest_cache.clear()
        if archive is not None:
            await archive.close()

    async def manifest(self) -> Manifest:
        cached = self._manifest_cache.get("manifest")
        if cached is not None:
            return cached
        if self.archive is None:
            return EMPTY_MANIFEST
        manifest = await read_manifest(self.archive)
        self._manifest_cache["manifest"] = manifest
        return manifest

    async def handle(self, request: Request) -> Response:
        if request.url.path == WELL_KNOWN_DPACK:
            return PlainTextResponse(f"{DWEB_SCHEME}{self.vhost.content_key}/\nTTL={WELL_KNOWN_TTL}")

        if not self.vhost.http_mirror:
            location = f"{DWEB_SCHEME}{self.vhost.hostnames[0]}{request_target(request)}"
            return Response(status_code=302, headers={"Location": location})

        if self.archive is None:
            return PlainTextResponse("503 Archive Not Ready", status_code=503)

        resolver = ContentResolver(self.archive, await self.manifest())
        resolved = await resolver.resolve(
            MirrorRequest(
                method=request.method,
                path=request.url.path,
                range_header=request.headers.get("range"),
            )
        )
        return to_starlette(resolved)


class RedirectSite(Site):
    def __init__(self, vhost: RedirectVhost) -> None:
        self.vhost = vhost

    async def handle(self, request: Request) -> Response:
        return Response(status_code=301, headers={"Location": self.vhost.target + request_target(request)})


class ProxySite(Site):
    """Forward requests to the vhost's target origin.

    Inputs (constructor):
      - vhost: ProxyVhost this site runs.
      - client_factory: Callable returning an httpx.AsyncClient (tests pass
        one with a mock transport).
    """

    def __init__(
        self,
        vhost: ProxyVhost,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.vhost = vhost
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=30.0))
        self.client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        self.client = self.client_factory()

    async def stop(self) -> None:
        client, self.client = self.client, None
        if client is not None:
            await client.aclose()

    def _upstream_headers(self, request: Request) -> Dict[str, str]:
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in _HOP_BY_HOP and name.lower() not in ("host", "content-length")
        }
        headers["x-forwarded-host"] = request.headers.get("host", self.vhost.source)
        if request.client is not None:
            headers["x-forwarded-for"] = request.client.host
        return headers

    async def handle(self, request: Request) -> Response:
        if self.client is None:
            return PlainTextResponse("503 Proxy Not Ready", status_code=503)

        url = self.vhost.target.rstrip("/") + request_target(request)
        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self._upstream_headers(request),
            content=await request.body(),
        )
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning("Proxy %s -> %s failed: %s", self.vhost.source, url, exc)
            return PlainTextResponse("502 Bad Gateway", status_code=502)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # multi_items() keeps repeated headers such as Set-Cookie apart.
        response.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in upstream.headers.multi_items()
            if name.lower() not in _HOP_BY_HOP
        ]
        return response


def normalize_host(host: Optional[str]) -> Optional[str]:
    """Brief: Hostname part of a Host header, lowercased.

    Example:
      >>> normalize_host("MySite.Foo.Bar:8080")
      'mysite.foo.bar'
      >>> normalize_host("[::1]:80")
      '::1'
    """

    if not host:
        return None
    host = host.strip().lower()
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".") or None


class RuntimeManager:
    """Create, track and tear down sites for the VhostRegistry.

    Inputs (constructor):
      - opener: ArchiveOpener for mirror sites (defaults to directory archives).
      - proxy_client_factory: Optional httpx.AsyncClient factory for proxies.
    """

    def __init__(
        self,
        opener: Optional[ArchiveOpener] = None,
        *,
        proxy_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.opener = opener or DirectoryArchiveOpener()
        self.proxy_client_factory = proxy_client_factory
        self._sites: Dict[str, Site] = {}
        self._hosts: Dict[str, Site] = {}

    def build_site(self, vhost: DerivedVhost) -> Site:
        if isinstance(vhost, MirrorVhost):
            return MirrorSite(vhost, self.opener)
        if isinstance(vhost, ProxyVhost):
            return ProxySite(vhost, self.proxy_client_factory)
        if isinstance(vhost, RedirectVhost):
            return RedirectSite(vhost)
        raise TypeError(f"unsupported vhost type: {type(vhost).__name__}")

    async def start(self, vhost: DerivedVhost) -> None:
        site = self.build_site(vhost)
        await site.start()
        self._sites[vhost.id] = site
        for hostname in vhost.hostnames:
            key = hostname.lower()
            owner = self._hosts.get(key)
            if owner is not None and owner.vhost.id != vhost.id:
                logger.warning("Hostname %s already served by %s; %s takes over", key, owner.vhost.id, vhost.id)
            self._hosts[key] = site

    async def stop(self, vhost: DerivedVhost) -> None:
        site = self._sites.pop(vhost.id, None)
        if site is None:
            return
        for key in [k for k, s in self._hosts.items() if s is site]:
            del self._hosts[key]
        await site.stop()

    def site_for_host(self, host: Optional[str]) -> Optional[Site]:
        key = normalize_host(host)
        if key is None:
            return None
        return self._hosts.get(key)

    def sites(self) -> List[Site]:
        return list(self._sites.values())

    def hostnames(self) -> List[str]:
        return sorted(self._hosts)

