"""HTTP Range header parsing.

Supports the forms clients actually send: "bytes=a-b", "bytes=a-",
"bytes=-n" (suffix), and comma-separated lists of those. End offsets past the
end of the entity are clamped; ranges that cannot be satisfied are dropped.
"""

from __future__ import annotations

import dataclasses
import re
from typing import List, Optional, Tuple, Union

RANGE_UNSATISFIABLE = -1
RANGE_MALFORMED = -2

_SPEC_RE = re.compile(r"^\s*(\d*)\s*-\s*(\d*)\s*$")


@dataclasses.dataclass(frozen=True)
class RangeSet:
    unit: str
    ranges: List[Tuple[int, int]]


def parse_range(size: int, header: str) -> Union[RangeSet, int]:
    """Brief: Parse a Range header against an entity of `size` bytes.

    Inputs:
      - size: Entity length in bytes.
      - header: Raw Range header value.

    Outputs:
      - RangeSet with inclusive (start, end) pairs in request order,
      - RANGE_MALFORMED when the header has no "unit=" prefix,
      - RANGE_UNSATISFIABLE when no listed range fits the entity.

    Example:
      >>> parse_range(20, "bytes=0-9")
      RangeSet(unit='bytes', ranges=[(0, 9)])
      >>> parse_range(20, "bytes=-5").ranges
      [(15, 19)]
      >>> parse_range(0, "bytes=0-9")
      -1
    """

    unit, sep, specs = header.partition("=")
    if not sep:
        return RANGE_MALFORMED

    ranges: List[Tuple[int, int]] = []
    for spec in specs.split(","):
        m = _SPEC_RE.match(spec)
        if not m or (not m.group(1) and not m.group(2)):
            continue
        start_s, end_s = m.groups()
        if not start_s:
            start = size - int(end_s)
            end = size - 1
        else:
            start = int(start_s)
            end = int(end_s) if end_s else size - 1
        end = min(end, size - 1)
        if start < 0 or start > end:
            continue
        ranges.append((start, end))

    if not ranges:
        return RANGE_UNSATISFIABLE
    return RangeSet(unit=unit.strip(), ranges=ranges)


def first_byte_range(size: int, header: Optional[str]) -> Optional[Tuple[int, int]]:
    """Return the first satisfiable "bytes" range of header, or None to serve it all."""

    if not header:
        return None
    parsed = parse_range(size, header)
    if not isinstance(parsed, RangeSet) or parsed.unit != "bytes":
        return None
    return parsed.ranges[0]
