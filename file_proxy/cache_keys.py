"""Tenant-scoped cache keys for the edge cache."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# Injected server-side after authentication; any caller-supplied value is
# discarded before ours is appended.
TENANT_PARAM = "_uid"


@dataclass(frozen=True)
class CacheKey:
    url: str
    headers: tuple[tuple[str, str], ...] = ()

    def serialize(self) -> str:
        lines = ["GET", self.url]
        lines.extend(f"{name.lower()}: {value}" for name, value in self.headers)
        return "\n".join(lines)

    def digest(self) -> str:
        return hashlib.sha256(self.serialize().encode("utf-8")).hexdigest()


def derive_cache_key(
    resource_url: str,
    tenant_id: str,
    range_header: str | None = None,
) -> CacheKey:
    """Build the cache key for ``resource_url`` as seen by ``tenant_id``.

    The tenant is a dedicated query parameter rather than part of the path,
    and the literal Range header text is part of the key's header set, so
    neither tenants nor ranges can share an entry.
    """
    parts = urlsplit(resource_url)
    query = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if name != TENANT_PARAM
    ]
    query.append((TENANT_PARAM, tenant_id))
    url = urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), "")
    )

    headers: tuple[tuple[str, str], ...] = ()
    if range_header:
        headers = (("Range", range_header),)
    return CacheKey(url=url, headers=headers)
