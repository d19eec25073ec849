"""
Single-interval HTTP Range parsing.

Only ``bytes=<start>-<end>`` (end optional) is understood. Suffix ranges
(``bytes=-500``) and multi-range requests (``bytes=0-10,20-30``) are
rejected outright instead of being half-interpreted.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .errors import RangeNotSatisfiable

RANGE_RE = re.compile(r'^bytes=(\d+)-(\d*)$')


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte interval of a stored file."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def unsatisfiable_content_range(size: int) -> str:
    return f"bytes */{size}"


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """
    Parse a Range header against a file of ``size`` bytes.

    Returns:
        None when no Range header was sent, otherwise the ByteRange.

    Raises:
        RangeNotSatisfiable: unparsable, multi-range, inverted, or out of
            bounds. Bounds equal to the size are rejected, not clamped.
    """
    if header is None:
        return None

    match = RANGE_RE.match(header.strip())
    if not match:
        raise RangeNotSatisfiable(size, f"unsupported range {header!r}")

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else size - 1

    if start > end or start >= size or end >= size:
        raise RangeNotSatisfiable(size, f"range {start}-{end} outside 0-{size - 1}")

    return ByteRange(start, end)
