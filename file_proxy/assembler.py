"""Status line and header assembly for proxied objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .ranges import ByteRange
    from .storage import ProxiedObject


@dataclass(frozen=True)
class AssembledResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body_present: bool = True


def format_header_value(value: Any) -> str:
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        aware = aware.astimezone(UTC)
        return format_datetime(aware, usegmt=True)
    return str(value)


def content_range(offset: int, length: int, total: int) -> str:
    return f"bytes {offset}-{offset + length - 1}/{total}"


def assemble(
    obj: ProxiedObject,
    requested_range: ByteRange | None,
    *,
    is_head: bool,
    cache_control: str,
) -> AssembledResponse:
    """Decide status, headers and body presence for ``obj``.

    A 206 is only produced for GET when a range was requested and the store
    reports the sub-range it actually served. HEAD always answers 200 with
    the full object size.
    """
    headers = {
        "Content-Type": obj.content_type,
        "Accept-Ranges": "bytes",
        "Cache-Control": cache_control,
    }
    if obj.etag:
        headers["ETag"] = obj.etag
    if obj.last_modified is not None:
        headers["Last-Modified"] = format_header_value(obj.last_modified)

    served = obj.served_range
    if is_head or requested_range is None or served is None:
        headers["Content-Length"] = str(obj.size)
        return AssembledResponse(200, headers, body_present=not is_head)

    headers["Content-Length"] = str(served.length)
    headers["Content-Range"] = content_range(served.offset, served.length, obj.size)
    return AssembledResponse(206, headers, body_present=True)
