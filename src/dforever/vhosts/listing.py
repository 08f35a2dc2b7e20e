"""Directory listing page for mirrored archives."""

from __future__ import annotations

import html
import posixpath
import urllib.parse
from typing import List, Optional, Tuple

from ..errors import ArchiveEntryNotFound
from .archive import Archive
from .manifest import apply_web_root

_PAGE = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Index of {title}</title>
    <style>
      body {{ font-family: sans-serif; margin: 2em; }}
      ul {{ list-style: none; padding: 0; }}
      li {{ padding: 2px 0; }}
      .dir a {{ font-weight: bold; }}
    </style>
  </head>
  <body>
    <h1>Index of {title}</h1>
    <ul>
{items}
    </ul>
  </body>
</html>
"""


async def render_directory_listing(archive: Archive, path: str, web_root: Optional[str] = None) -> str:
    """Brief: Render an HTML index of one archive directory.

    Inputs:
      - archive: Archive to read from.
      - path: Request path of the directory (as seen by the client).
      - web_root: Optional manifest web_root the path is relative to.

    Outputs:
      - str: HTML page; sub-directories first, then files, each sorted by name,
        with a parent link when path is not the root.
    """

    target = apply_web_root(web_root, path)
    try:
        names = await archive.readdir(target)
    except ArchiveEntryNotFound:
        names = []

    dirs: List[str] = []
    files: List[Tuple[str, int]] = []
    for name in names:
        try:
            entry = await archive.stat(posixpath.join(target, name))
        except ArchiveEntryNotFound:
            continue
        if entry.is_directory():
            dirs.append(name)
        else:
            files.append((name, entry.size))

    items: List[str] = []
    if path.strip("/"):
        items.append('      <li class="dir"><a href="../">..</a></li>')
    for name in sorted(dirs):
        href = urllib.parse.quote(name) + "/"
        items.append(f'      <li class="dir"><a href="{href}">{html.escape(name)}/</a></li>')
    for name, size in sorted(files):
        href = urllib.parse.quote(name)
        items.append(f'      <li class="file"><a href="{href}">{html.escape(name)}</a> ({size} bytes)</li>')

    return _PAGE.format(title=html.escape(path or "/"), items="\n".join(items))
