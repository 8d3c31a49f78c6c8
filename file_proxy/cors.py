"""Allow-list CORS policy.

An empty allow-list denies every cross-origin caller. There is no wildcard
mode: responses carry tenant-private data.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

ALLOW_METHODS = "GET, HEAD, OPTIONS"
ALLOW_HEADERS = ("Authorization", "Content-Type", "Range")
EXPOSE_HEADERS = "Content-Length, Content-Range, Accept-Ranges, ETag, Last-Modified"
PREFLIGHT_MAX_AGE = "86400"


class CORSPolicy:
    def __init__(
        self,
        authorized_origins: Iterable[str] = (),
        *,
        extra_allow_headers: Iterable[str] = (),
    ) -> None:
        self._origins = frozenset(
            origin.rstrip("/") for origin in authorized_origins if origin != "*"
        )
        self._allow_headers = ", ".join((*ALLOW_HEADERS, *extra_allow_headers))

    @property
    def authorized_origins(self) -> frozenset[str]:
        return self._origins

    def is_allowed(self, origin: str | None) -> bool:
        return bool(origin) and origin in self._origins

    def headers(self, origin: str | None) -> dict[str, str]:
        """CORS headers layered onto actual (non-preflight) responses."""
        headers = {"Access-Control-Expose-Headers": EXPOSE_HEADERS}
        if self.is_allowed(origin):
            assert origin is not None
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        return headers

    def preflight_headers(self, origin: str | None) -> dict[str, str]:
        headers = self.headers(origin)
        headers.update(
            {
                "Access-Control-Allow-Methods": ALLOW_METHODS,
                "Access-Control-Allow-Headers": self._allow_headers,
                "Access-Control-Max-Age": PREFLIGHT_MAX_AGE,
            }
        )
        return headers
