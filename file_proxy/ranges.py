"""HTTP Range header parsing.

Only a single ``bytes=<start>-<end>`` range is understood. Anything else,
including multi-range requests, is ignored and the request falls back to a
full fetch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import RangeValidationError

_RANGE_RE = re.compile(r"^\s*bytes=(\d*)-(\d*)\s*$")


@dataclass(frozen=True)
class ByteRange:
    """A validated byte range: bounded, open-ended, or suffix.

    ``offset``/``length`` describe bounded and open-ended ranges (``length``
    is ``None`` when open-ended); ``suffix`` alone describes the last N
    bytes of the object.
    """

    offset: int | None = None
    length: int | None = None
    suffix: int | None = None

    def __post_init__(self) -> None:
        if self.suffix is not None:
            if self.offset is not None or self.length is not None:
                msg = "Invalid range: suffix cannot be combined with an offset"
                raise RangeValidationError(msg)
            if self.suffix < 0:
                msg = "Invalid range: negative suffix"
                raise RangeValidationError(msg)
            return
        if self.offset is None:
            msg = "Invalid range: missing offset"
            raise RangeValidationError(msg)
        if self.offset < 0:
            msg = "Invalid range: negative offset"
            raise RangeValidationError(msg)
        if self.length is not None and self.length <= 0:
            msg = "Invalid range: end before start"
            raise RangeValidationError(msg)

    @property
    def is_suffix(self) -> bool:
        return self.suffix is not None

    @property
    def is_open_ended(self) -> bool:
        return self.suffix is None and self.length is None

    @property
    def end(self) -> int | None:
        """Inclusive last byte for bounded ranges."""
        if self.offset is None or self.length is None:
            return None
        return self.offset + self.length - 1

    def to_header(self) -> str:
        """Render the range in ``Range`` header syntax for the object store."""
        if self.suffix is not None:
            return f"bytes=-{self.suffix}"
        if self.length is None:
            return f"bytes={self.offset}-"
        return f"bytes={self.offset}-{self.end}"


def parse_range(
    header: str | None,
    *,
    max_range_bytes: int,
    max_suffix_bytes: int,
) -> ByteRange | None:
    """Parse a ``Range`` header value.

    Returns ``None`` when the header is absent, does not match the grammar,
    or has both sides empty.

    Raises:
        RangeValidationError: end before start, or a bounded/suffix range
            larger than the configured limits.
    """
    if not header:
        return None

    match = _RANGE_RE.match(header)
    if match is None:
        return None

    start_str, end_str = match.groups()
    start = int(start_str) if start_str else None
    end = int(end_str) if end_str else None

    if start is not None and end is not None:
        length = end - start + 1
        if length <= 0:
            msg = "Invalid range: end before start"
            raise RangeValidationError(msg)
        if length > max_range_bytes:
            msg = (
                f"Range too large: {length} bytes exceeds "
                f"{max_range_bytes} byte limit"
            )
            raise RangeValidationError(msg)
        return ByteRange(offset=start, length=length)

    if start is not None:
        # open-ended; the transport bounds what is actually sent
        return ByteRange(offset=start)

    if end is not None:
        if end > max_suffix_bytes:
            msg = (
                f"Suffix range too large: {end} bytes exceeds "
                f"{max_suffix_bytes} byte limit"
            )
            raise RangeValidationError(msg)
        return ByteRange(suffix=end)

    return None
