"""Content-type identification for streamed archive files.

The type is decided from the first chunk of data (magic numbers), then the
file extension, then a text/binary heuristic. Identification consumes the
first chunk, so identify_stream() hands back a passthrough iterator that
yields that chunk again before the rest of the stream.
"""

from __future__ import annotations

import mimetypes
import posixpath
from typing import AsyncIterator, Optional, Tuple

DEFAULT_BINARY_TYPE = "application/octet-stream"

_MAGIC = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b", "application/gzip"),
    (b"\x00asm", "application/wasm"),
    (b"wOFF", "font/woff"),
    (b"wOF2", "font/woff2"),
    (b"OggS", "audio/ogg"),
    (b"ID3", "audio/mpeg"),
    (b"\x1a\x45\xdf\xa3", "video/webm"),
)

_EXTRA_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".mjs": "text/javascript",
    ".wasm": "application/wasm",
    ".webmanifest": "application/manifest+json",
}

_CHARSET_TYPES = frozenset(
    {
        "text/html",
        "text/plain",
        "text/markdown",
        "text/css",
        "text/javascript",
        "application/javascript",
        "application/json",
    }
)


def _with_charset(mime_type: str) -> str:
    return f"{mime_type}; charset=utf-8" if mime_type in _CHARSET_TYPES else mime_type


def _sniff_magic(head: bytes) -> Optional[str]:
    for prefix, mime_type in _MAGIC:
        if head.startswith(prefix):
            return mime_type
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head[4:8] == b"ftyp":
        return "video/mp4"
    return None


def _looks_textual(head: bytes) -> bool:
    if b"\x00" in head:
        return False
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character cut at the chunk boundary is still text.
        return exc.start >= len(head) - 3
    return True


def identify(head: bytes, path: str) -> str:
    """Brief: Identify the MIME type of data starting with `head`.

    Inputs:
      - head: First bytes of the file (non-empty).
      - path: Archive path, used for the extension fallback.

    Outputs:
      - str: MIME type, with "; charset=utf-8" for text types.

    Example:
      >>> identify(b"\\x89PNG\\r\\n\\x1a\\n....", "/logo.bin")
      'image/png'
      >>> identify(b"# Title", "/README.md")
      'text/markdown; charset=utf-8'
    """

    magic = _sniff_magic(head)
    if magic:
        return magic

    ext = posixpath.splitext(path)[1].lower()
    guessed = _EXTRA_TYPES.get(ext) or mimetypes.guess_type("file" + ext)[0]
    if guessed:
        return _with_charset(guessed)

    return _with_charset("text/plain") if _looks_textual(head) else DEFAULT_BINARY_TYPE


async def _replay(first: bytes, rest: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    yield first
    async for chunk in rest:
        yield chunk


async def _empty() -> AsyncIterator[bytes]:
    return
    yield  # pragma: no cover


async def identify_stream(
    chunks: AsyncIterator[bytes], path: str
) -> Tuple[Optional[str], AsyncIterator[bytes]]:
    """Brief: Read the first non-empty chunk and identify the stream's type.

    Inputs:
      - chunks: Async iterator of file data.
      - path: Archive path of the file.

    Outputs:
      - (mime_type, passthrough): mime_type is None when the stream ended
        without data. passthrough yields every chunk, the first included.

    Raises:
      - Whatever the underlying stream raises while reading the first chunk.
    """

    async for first in chunks:
        if first:
            return identify(first, path), _replay(first, chunks)
    return None, _empty()
