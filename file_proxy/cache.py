"""Edge response cache backends.

The proxy only ever talks to a :class:`ResponseCache`; which backend sits
behind it is a deployment decision.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import ClientError

from .cache_control import max_age_of
from .storage import run_sync

if TYPE_CHECKING:
    from .cache_keys import CacheKey

LOG = logging.getLogger("file_proxy.cache")

KEY_PREFIX = "v1"


@dataclass
class CachedResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


class ResponseCache(Protocol):
    async def lookup(self, key: CacheKey) -> CachedResponse | None: ...

    async def store(self, key: CacheKey, response: CachedResponse) -> None: ...


class NullResponseCache:
    """Used when edge caching is disabled."""

    async def lookup(self, key: CacheKey) -> CachedResponse | None:
        return None

    async def store(self, key: CacheKey, response: CachedResponse) -> None:
        return None


class S3ResponseCache:
    """Stores responses as objects in a dedicated bucket.

    Status, headers and an absolute expiry live in object metadata; the
    object body is the response body.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        *,
        location: str | None = None,
        clock=time.time,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._location = location
        self._clock = clock

    @staticmethod
    def object_key(key: CacheKey) -> str:
        return f"{KEY_PREFIX}/{key.digest()}"

    async def startup(self) -> None:
        await self._ensure_bucket()

    async def lookup(self, key: CacheKey) -> CachedResponse | None:
        object_key = self.object_key(key)
        try:
            result = await run_sync(
                self._client.get_object, Bucket=self._bucket, Key=object_key
            )
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code not in {"404", "NoSuchKey", "NotFound"}:
                LOG.warning("cache lookup failed for %s: %s", object_key, error)
            return None

        stream = result["Body"]
        try:
            metadata = result.get("Metadata") or {}
            expires_at = float(metadata.get("expires-at", "0"))
            if expires_at <= self._clock():
                LOG.debug("cache entry %s expired", object_key)
                return None
            body = await run_sync(stream.read)
        finally:
            await run_sync(stream.close)

        try:
            headers = json.loads(metadata.get("headers", "{}"))
            status_code = int(metadata["status"])
        except (KeyError, ValueError):
            LOG.warning("discarding malformed cache entry %s", object_key)
            return None
        return CachedResponse(status_code=status_code, headers=headers, body=body)

    async def store(self, key: CacheKey, response: CachedResponse) -> None:
        max_age = max_age_of(response.headers.get("Cache-Control"))
        if not max_age:
            LOG.debug("not caching %s: no freshness lifetime", key.url)
            return
        object_key = self.object_key(key)
        await run_sync(
            self._client.put_object,
            Bucket=self._bucket,
            Key=object_key,
            Body=response.body,
            Metadata={
                "status": str(response.status_code),
                "headers": json.dumps(response.headers, sort_keys=True),
                "expires-at": str(self._clock() + max_age),
            },
        )
        LOG.debug("cached %s (%d bytes)", object_key, len(response.body))

    async def _ensure_bucket(self) -> None:
        try:
            await run_sync(self._client.head_bucket, Bucket=self._bucket)
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code not in {"404", "NoSuchBucket", "NotFound"}:
                raise
            create_kwargs: dict[str, Any] = {"Bucket": self._bucket}
            if self._location and self._location != "us-east-1":
                create_kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": self._location
                }
            await run_sync(self._client.create_bucket, **create_kwargs)
            LOG.info("created cache bucket %s", self._bucket)
