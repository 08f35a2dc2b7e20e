"""Per-archive manifest (``dpack.json``).

Only three fields influence how a mirror serves content:

- web_root: path prefix under which every request is resolved,
- fallback_page: path served when nothing matches the request,
- content_security_policy: echoed as the Content-Security-Policy header.

A missing or unreadable manifest is the same as an empty one.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import posixpath
from typing import Any, Mapping, Optional

from ..errors import ArchiveEntryNotFound
from .archive import Archive

logger = logging.getLogger(__name__)

MANIFEST_PATH = "/dpack.json"


@dataclasses.dataclass(frozen=True)
class Manifest:
    web_root: Optional[str] = None
    fallback_page: Optional[str] = None
    content_security_policy: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Manifest":
        """Brief: Pick the recognized fields out of a parsed manifest.

        Inputs:
          - data: Parsed JSON object.

        Outputs:
          - Manifest; non-string or empty values are treated as unset.

        Example:
          >>> Manifest.from_mapping({"web_root": "/www", "content_security_policy": 5})
          Manifest(web_root='/www', fallback_page=None, content_security_policy=None)
        """

        def _str(name: str) -> Optional[str]:
            value = data.get(name)
            return value if isinstance(value, str) and value else None

        return cls(
            web_root=_str("web_root"),
            fallback_page=_str("fallback_page"),
            content_security_policy=_str("content_security_policy"),
        )


EMPTY_MANIFEST = Manifest()


async def read_manifest(archive: Archive) -> Manifest:
    """Read and parse the archive manifest, falling back to EMPTY_MANIFEST."""

    try:
        raw = await archive.read_file(MANIFEST_PATH)
    except ArchiveEntryNotFound:
        return EMPTY_MANIFEST
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unparsable manifest in %s: %s", archive.key, exc)
        return EMPTY_MANIFEST
    if not isinstance(data, dict):
        return EMPTY_MANIFEST
    return Manifest.from_mapping(data)


def apply_web_root(web_root: Optional[str], path: str) -> str:
    """Brief: Prefix an archive path with the manifest web_root.

    Example:
      >>> apply_web_root("www", "/docs/")
      '/www/docs/'
      >>> apply_web_root(None, "/docs/")
      '/docs/'
    """

    if not web_root:
        return path or "/"
    return posixpath.join("/", web_root.strip("/"), (path or "").lstrip("/"))
