"""Content resolution for mirror vhosts.

Brief:
  Given one archive, its manifest and a GET/HEAD request, decide what to send
  back: a redirect to the canonical directory URL, a directory listing, a
  (ranged) file stream, the manifest fallback page, or an error.

  File responses are two-phase. Status and headers stay pending until the
  first chunk of the file has been read and its type identified; only then
  are they committed. A read failure while still pending becomes a 500; a
  failure after the commit can only truncate the body.

Inputs:
  - MirrorRequest(method, path, range_header)

Outputs:
  - MirrorResponse(status, headers, body, stream)
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import urllib.parse
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from ..errors import ArchiveEntryNotFound, ArchiveError
from .archive import Archive, Entry
from .listing import render_directory_listing
from .manifest import EMPTY_MANIFEST, Manifest, apply_web_root
from .ranges import first_byte_range
from .sniff import identify_stream

logger = logging.getLogger(__name__)

ListingRenderer = Callable[[Archive, str, Optional[str]], Awaitable[str]]
StreamIdentifier = Callable[
    [AsyncIterator[bytes], str], Awaitable[Tuple[Optional[str], AsyncIterator[bytes]]]
]

ALLOWED_METHODS = ("GET", "HEAD")

# Sub-delims and ":@" are legal in a path segment and stay as they are.
_PATH_SAFE = "/!$&'()*+,;=:@~"


@dataclasses.dataclass(frozen=True)
class MirrorRequest:
    method: str
    path: str
    range_header: Optional[str] = None

    @property
    def is_head(self) -> bool:
        return self.method.upper() == "HEAD"


@dataclasses.dataclass
class MirrorResponse:
    """Resolved response. Either body or stream carries the content."""

    status: int
    headers: Dict[str, str] = dataclasses.field(default_factory=dict)
    body: bytes = b""
    stream: Optional[AsyncIterator[bytes]] = None


class ResponseState(enum.Enum):
    PENDING = "pending"
    COMMITTED = "committed"


class ResponseHead:
    """Status and headers of a response that has not been committed yet.

    Example:
      >>> head = ResponseHead()
      >>> head.set("Accept-Ranges", "bytes")
      >>> head.commit(200).headers
      {'Accept-Ranges': 'bytes'}
      >>> head.state
      <ResponseState.COMMITTED: 'committed'>
    """

    def __init__(self) -> None:
        self.state = ResponseState.PENDING
        self.headers: Dict[str, str] = {}

    def set(self, name: str, value: str) -> None:
        if self.state is ResponseState.COMMITTED:
            raise RuntimeError("response headers already committed")
        self.headers[name] = value

    def discard(self, name: str) -> None:
        if self.state is ResponseState.COMMITTED:
            raise RuntimeError("response headers already committed")
        self.headers.pop(name, None)

    def commit(
        self, status: int, *, body: bytes = b"", stream: Optional[AsyncIterator[bytes]] = None
    ) -> MirrorResponse:
        if self.state is ResponseState.COMMITTED:
            raise RuntimeError("response headers already committed")
        self.state = ResponseState.COMMITTED
        return MirrorResponse(status=status, headers=dict(self.headers), body=body, stream=stream)


async def _aclose(iterator: Optional[AsyncIterator[bytes]]) -> None:
    close = getattr(iterator, "aclose", None)
    if close is not None:
        await close()


def encode_location_path(path: str) -> str:
    """Brief: Percent-encode a decoded request path for a Location header.

    Example:
      >>> encode_location_path("/\u2603/a b")
      '/%E2%98%83/a%20b'
    """

    return urllib.parse.quote(path, safe=_PATH_SAFE)


def error_response(request: MirrorRequest, status: int, reason: str) -> MirrorResponse:
    """Plain "<code> <reason>" error; HEAD requests get the status only."""

    body = b"" if request.is_head else f"{status} {reason}".encode("utf-8")
    return MirrorResponse(status=status, body=body)


class ContentResolver:
    """Resolve requests against one archive.

    Inputs (constructor):
      - archive: Archive to serve from.
      - manifest: Parsed manifest (EMPTY_MANIFEST when the archive has none).
      - render_listing: Directory page renderer.
      - identify: Stream type identifier.
    """

    def __init__(
        self,
        archive: Archive,
        manifest: Manifest = EMPTY_MANIFEST,
        *,
        render_listing: ListingRenderer = render_directory_listing,
        identify: StreamIdentifier = identify_stream,
    ) -> None:
        self.archive = archive
        self.manifest = manifest
        self.render_listing = render_listing
        self.identify = identify

    @property
    def csp(self) -> str:
        return self.manifest.content_security_policy or ""

    async def _try_stat(self, path: str) -> Optional[Entry]:
        target = apply_web_root(self.manifest.web_root, path)
        try:
            entry = await self.archive.stat(target)
        except ArchiveEntryNotFound:
            logger.debug("miss %s in %s", target, self.archive.key)
            return None
        return dataclasses.replace(entry, path=target)

    async def _first_entry(self, *paths: str) -> Optional[Entry]:
        for path in paths:
            entry = await self._try_stat(path)
            if entry is not None:
                return entry
        return None

    async def resolve(self, request: MirrorRequest) -> MirrorResponse:
        """Brief: Resolve one request to a response.

        Inputs:
          - request: MirrorRequest.

        Outputs:
          - MirrorResponse. File content is returned as a stream that the
            caller must consume (or close) exactly once.
        """

        if request.method.upper() not in ALLOWED_METHODS:
            return error_response(request, 405, "Method Not Supported")

        path = request.path
        is_folder = path.endswith("/")

        # Directory URLs always end with a slash.
        if not is_folder:
            entry = await self._try_stat(path)
            if entry is not None and entry.is_directory():
                return MirrorResponse(status=303, headers={"Location": encode_location_path(path) + "/"})

        if is_folder:
            entry = await self._first_entry(path + "index.html", path + "index.md", path)
        else:
            entry = await self._first_entry(path, path + ".html")

        if entry is not None and entry.is_directory():
            return await self._respond_directory(request)

        if entry is None and self.manifest.fallback_page:
            entry = await self._try_stat(self.manifest.fallback_page)
            if entry is not None and entry.is_directory():
                entry = None
        if entry is None:
            return error_response(request, 404, "File Not Found")

        return await self._respond_file(request, entry)

    async def _respond_directory(self, request: MirrorRequest) -> MirrorResponse:
        headers = {
            "Content-Type": "text/html",
            "Content-Security-Policy": self.csp,
            "Access-Control-Allow-Origin": "*",
        }
        if request.is_head:
            return MirrorResponse(status=204, headers=headers)
        page = await self.render_listing(self.archive, request.path, self.manifest.web_root)
        return MirrorResponse(status=200, headers=headers, body=page.encode("utf-8"))

    async def _respond_file(self, request: MirrorRequest, entry: Entry) -> MirrorResponse:
        head = ResponseHead()
        head.set("Accept-Ranges", "bytes")

        status = 200
        byte_range = first_byte_range(entry.size, request.range_header)
        if byte_range is not None:
            start, end = byte_range
            status = 206
            head.set("Content-Range", f"bytes {start}-{end}/{entry.size}")
            head.set("Content-Length", str(end - start + 1))
        elif entry.size:
            head.set("Content-Length", str(entry.size))

        source = self.archive.create_read_stream(entry.path, byte_range)
        try:
            mime_type, passthrough = await self.identify(source, entry.path)
        except (ArchiveError, OSError):
            logger.exception("Failed to read %s from %s", entry.path, self.archive.key)
            await _aclose(source)
            return error_response(request, 500, "Failed to read file")

        head.set("Content-Security-Policy", self.csp)
        head.set("Access-Control-Allow-Origin", "*")

        if mime_type is None:
            # Zero bytes: commit without a content type.
            await _aclose(source)
            if request.is_head:
                return head.commit(204)
            return head.commit(200)

        head.set("Content-Type", mime_type)
        head.set("Cache-Control", "public, max-age: 60")

        if request.is_head:
            await _aclose(passthrough)
            await _aclose(source)
            head.discard("Content-Length")
            return head.commit(204)

        return head.commit(status, stream=self._guarded(passthrough, source, entry.path))

    async def _guarded(
        self, passthrough: AsyncIterator[bytes], source: AsyncIterator[bytes], path: str
    ) -> AsyncIterator[bytes]:
        """Yield file data after the commit; read errors truncate the body."""

        try:
            async for chunk in passthrough:
                yield chunk
        except (ArchiveError, OSError):
            logger.exception("Read of %s from %s failed mid-transfer", path, self.archive.key)
        finally:
            await _aclose(passthrough)
            await _aclose(source)
