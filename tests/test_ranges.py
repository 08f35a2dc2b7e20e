"""
Brief: Tests for dforever.vhosts.ranges Range header parsing.

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from dforever.vhosts.ranges import (
    RANGE_MALFORMED,
    RANGE_UNSATISFIABLE,
    RangeSet,
    first_byte_range,
    parse_range,
)


@pytest.mark.parametrize(
    "header,expected",
    [
        ("bytes=0-9", [(0, 9)]),
        ("bytes=10-", [(10, 19)]),
        ("bytes=-5", [(15, 19)]),
        ("bytes=0-100", [(0, 19)]),
        ("bytes=0-1, 5-6", [(0, 1), (5, 6)]),
        ("bytes=30-40, 2-3", [(2, 3)]),
    ],
)
def test_parse_range_forms(header, expected):
    """
    Brief: Supported range forms parse to inclusive clamped pairs.

    Inputs:
      - header: Range header value
      - expected: list of (start, end)

    Outputs:
      - None
    """
    parsed = parse_range(20, header)
    assert isinstance(parsed, RangeSet)
    assert parsed.unit == "bytes"
    assert parsed.ranges == expected


def test_parse_range_failures():
    """
    Brief: Missing unit is malformed; ranges past the end are unsatisfiable.

    Inputs:
      - None

    Outputs:
      - None
    """
    assert parse_range(20, "0-9") == RANGE_MALFORMED
    assert parse_range(20, "bytes=25-30") == RANGE_UNSATISFIABLE
    assert parse_range(20, "bytes=9-2") == RANGE_UNSATISFIABLE
    assert parse_range(20, "bytes=abc") == RANGE_UNSATISFIABLE


def test_first_byte_range():
    """
    Brief: Only the first satisfiable bytes range is used; anything else means full body.

    Inputs:
      - None

    Outputs:
      - None
    """
    assert first_byte_range(20, "bytes=0-9") == (0, 9)
    assert first_byte_range(20, "bytes=5-6,0-1") == (5, 6)
    assert first_byte_range(20, None) is None
    assert first_byte_range(20, "items=0-9") is None
    assert first_byte_range(20, "bytes=50-60") is None
    assert first_byte_range(20, "garbage") is None
