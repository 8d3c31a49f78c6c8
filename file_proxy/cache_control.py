"""Cache-Control presets per resource mutability class."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .resource import ResourceKey
    from .settings import ProxySettings

NO_STORE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

_MAX_AGE_RE = re.compile(r"(?:^|[,\s])max-age=(\d+)")


def analytic_cache_control(max_age: int) -> str:
    """Short-lived artifacts that are regenerated often."""
    return f"private, max-age={max_age}"


def immutable_cache_control(max_age: int) -> str:
    """Content-addressed or versioned artifacts."""
    return f"private, max-age={max_age}, immutable"


def max_age_of(cache_control: str | None) -> int | None:
    if not cache_control:
        return None
    if "no-store" in cache_control:
        return 0
    match = _MAX_AGE_RE.search(cache_control)
    return int(match.group(1)) if match else None


class CacheControlPolicy:
    def __init__(
        self,
        *,
        max_age: int,
        immutable_max_age: int,
        immutable_prefixes: Iterable[str] = (),
    ) -> None:
        self._analytic = analytic_cache_control(max_age)
        self._immutable = immutable_cache_control(immutable_max_age)
        self._immutable_prefixes = tuple(immutable_prefixes)

    @classmethod
    def from_settings(cls, settings: ProxySettings) -> CacheControlPolicy:
        return cls(
            max_age=settings.cache_max_age_seconds,
            immutable_max_age=settings.immutable_max_age_seconds,
            immutable_prefixes=settings.immutable_prefixes or (),
        )

    def for_resource(self, resource: ResourceKey) -> str:
        if resource.path.startswith(self._immutable_prefixes):
            return self._immutable
        return self._analytic
