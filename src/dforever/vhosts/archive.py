"""Archive access interface and the local-directory backend.

Brief:
  The peer-to-peer layer that replicates dPack archives is external to this
  package. Mirrors only need a handful of capabilities from it: open an
  archive by key, stat a path, list a directory, and stream a (byte range of
  a) file. Those are described by the ArchiveOpener/Archive protocols below.

  DirectoryArchive implements them over the archive's storage directory on
  disk, which is what a replicated archive looks like once synced. File I/O
  runs in worker threads so the event loop never blocks on the disk.
"""

from __future__ import annotations

import asyncio
import dataclasses
import errno
import logging
import os
import posixpath
import stat as stat_mod
from typing import AsyncIterator, List, Optional, Protocol, Tuple

from ..errors import ArchiveEntryNotFound, ArchiveReadError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

FILE = "file"
DIRECTORY = "directory"

# Inclusive (start, end) byte offsets.
ByteRange = Tuple[int, int]

_MISS_ERRNOS = frozenset({errno.ENOENT, errno.ENOTDIR, errno.EISDIR, errno.ENAMETOOLONG})


@dataclasses.dataclass(frozen=True)
class Entry:
    """Result of a path lookup inside an archive."""

    path: str
    kind: str
    size: int
    mtime: Optional[float] = None

    def is_directory(self) -> bool:
        return self.kind == DIRECTORY

    def is_file(self) -> bool:
        return self.kind == FILE


class Archive(Protocol):
    key: str

    async def stat(self, path: str) -> Entry:
        """Return the entry at path or raise ArchiveEntryNotFound."""

    async def readdir(self, path: str) -> List[str]:
        """Return the names inside a directory."""

    async def read_file(self, path: str) -> bytes:
        """Return the whole content of a file."""

    def create_read_stream(
        self, path: str, byte_range: Optional[ByteRange] = None
    ) -> AsyncIterator[bytes]:
        """Stream the file (or an inclusive byte range of it) in chunks."""

    async def close(self) -> None:
        """Release the archive."""


class ArchiveOpener(Protocol):
    async def open(self, directory: str, key: str) -> Archive:
        """Open (creating when needed) the archive stored under directory."""


def normalize_archive_path(path: str) -> str:
    """Brief: Normalize an archive path to "/a/b" form.

    Inputs:
      - path: Request-style path; may be relative or contain "." / "..".

    Outputs:
      - str: absolute, normalized path. ".." never climbs above "/".

    Example:
      >>> normalize_archive_path("docs/../../etc/passwd")
      '/etc/passwd'
    """

    return posixpath.normpath("/" + (path or "").lstrip("/"))


def _is_lookup_miss(exc: Exception) -> bool:
    """True when a filesystem error only means "no such entry".

    ValueError is what os functions raise for a path with an embedded NUL.
    """

    if isinstance(exc, ValueError):
        return True
    return isinstance(exc, OSError) and exc.errno in _MISS_ERRNOS


class DirectoryArchive:
    """Archive backed by a directory on the local filesystem."""

    def __init__(self, root: str, key: str) -> None:
        self.root = os.path.abspath(root)
        self.key = key
        self.closed = False

    def _local_path(self, path: str) -> str:
        rel = normalize_archive_path(path).lstrip("/")
        local = os.path.join(self.root, *rel.split("/")) if rel else self.root
        if os.path.commonpath([self.root, os.path.abspath(local)]) != self.root:
            raise ArchiveEntryNotFound(path)
        return local

    async def stat(self, path: str) -> Entry:
        local = self._local_path(path)
        try:
            st = await asyncio.to_thread(os.stat, local)
        except (OSError, ValueError) as exc:
            if not _is_lookup_miss(exc):
                raise
            raise ArchiveEntryNotFound(path) from exc
        kind = DIRECTORY if stat_mod.S_ISDIR(st.st_mode) else FILE
        size = 0 if kind == DIRECTORY else st.st_size
        return Entry(path=normalize_archive_path(path), kind=kind, size=size, mtime=st.st_mtime)

    async def readdir(self, path: str) -> List[str]:
        local = self._local_path(path)
        try:
            names = await asyncio.to_thread(os.listdir, local)
        except (OSError, ValueError) as exc:
            if not _is_lookup_miss(exc):
                raise
            raise ArchiveEntryNotFound(path) from exc
        return sorted(names)

    async def read_file(self, path: str) -> bytes:
        local = self._local_path(path)

        def _read() -> bytes:
            with open(local, "rb") as f:
                return f.read()

        try:
            return await asyncio.to_thread(_read)
        except (OSError, ValueError) as exc:
            if not _is_lookup_miss(exc):
                raise
            raise ArchiveEntryNotFound(path) from exc

    async def create_read_stream(
        self, path: str, byte_range: Optional[ByteRange] = None
    ) -> AsyncIterator[bytes]:
        """Brief: Yield the file content in CHUNK_SIZE pieces.

        Inputs:
          - path: Archive path of a file.
          - byte_range: Optional inclusive (start, end) offsets.

        Outputs:
          - Async iterator of bytes chunks.

        Raises:
          - ArchiveReadError: when the file cannot be opened or read.
        """

        local = self._local_path(path)
        start, end = byte_range if byte_range is not None else (0, None)
        try:
            f = await asyncio.to_thread(open, local, "rb")
        except (OSError, ValueError) as exc:
            raise ArchiveReadError(f"cannot open {path}: {exc}") from exc
        try:
            if start:
                await asyncio.to_thread(f.seek, start)
            remaining = None if end is None else end - start + 1
            while remaining is None or remaining > 0:
                size = CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining)
                try:
                    chunk = await asyncio.to_thread(f.read, size)
                except OSError as exc:
                    raise ArchiveReadError(f"cannot read {path}: {exc}") from exc
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk
        finally:
            f.close()

    async def close(self) -> None:
        self.closed = True


class DirectoryArchiveOpener:
    """ArchiveOpener creating DirectoryArchive instances."""

    async def open(self, directory: str, key: str) -> DirectoryArchive:
        await asyncio.to_thread(os.makedirs, directory, exist_ok=True)
        logger.debug("Opened archive %s at %s", key, directory)
        return DirectoryArchive(directory, key)
