from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Generator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, cast

import pytest
from litestar import Request
from litestar.types import HTTPScope

from file_proxy import FileProxy, ProxySettings
from file_proxy.auth import Identity, extract_bearer_token
from file_proxy.cache import CachedResponse
from file_proxy.errors import (
    AuthenticationError,
    IdentityProviderError,
    ObjectNotFoundError,
    RangeNotSatisfiableError,
)
from file_proxy.storage import ProxiedObject, ServedRange

if TYPE_CHECKING:
    from file_proxy.cache_keys import CacheKey
    from file_proxy.ranges import ByteRange

ALLOWED_ORIGIN = "https://app.example.com"
U1_KEY = "analytics/archive/user_id=u1/data.parquet"
U1_CONTENT = bytes(range(256)) * 4


class MemoryBody:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0
        self.closed = False

    async def read(self, size: int) -> bytes:
        chunk = self._data[self._pos : self._pos + size]
        self._pos += len(chunk)
        return chunk

    async def close(self) -> None:
        self.closed = True


class FakeAuthenticator:
    """Maps bearer tokens straight to identities."""

    def __init__(self, tokens: dict[str, Identity]) -> None:
        self.tokens = tokens
        self.unreachable = False
        self.calls = 0

    async def authenticate(self, headers) -> Identity:
        self.calls += 1
        token = extract_bearer_token(headers)
        if self.unreachable:
            raise IdentityProviderError()
        identity = self.tokens.get(token)
        if identity is None:
            msg = "Unauthorized - Invalid token"
            raise AuthenticationError(msg)
        return identity


class MemoryObjectStore:
    """Object store double that serves ranges the way S3 does."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.calls: list[tuple[str, str, ByteRange | None]] = []
        self.bodies: list[MemoryBody] = []
        self.last_modified = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        self.fail_with: Exception | None = None

    def put(self, key: str, data: bytes, content_type: str = "application/vnd.apache.parquet") -> None:
        self.objects[key] = (data, content_type)

    def _lookup(self, key: str) -> tuple[bytes, str]:
        if self.fail_with is not None:
            raise self.fail_with
        try:
            return self.objects[key]
        except KeyError:
            raise ObjectNotFoundError() from None

    async def get(self, key: str, byte_range: ByteRange | None) -> ProxiedObject:
        self.calls.append(("get", key, byte_range))
        data, content_type = self._lookup(key)
        size = len(data)
        served = None
        if byte_range is not None:
            if byte_range.suffix is not None:
                if byte_range.suffix == 0:
                    raise RangeNotSatisfiableError(size)
                start = max(0, size - byte_range.suffix)
                end = size - 1
            else:
                assert byte_range.offset is not None
                if byte_range.offset >= size:
                    raise RangeNotSatisfiableError(size)
                start = byte_range.offset
                end = size - 1 if byte_range.end is None else min(byte_range.end, size - 1)
            served = ServedRange(offset=start, length=end - start + 1)
            data = data[start : end + 1]
        body = MemoryBody(data)
        self.bodies.append(body)
        return ProxiedObject(
            size=size,
            content_type=content_type,
            etag='"etag-1"',
            last_modified=self.last_modified,
            served_range=served,
            body=body,
        )

    async def head(self, key: str) -> ProxiedObject:
        self.calls.append(("head", key, None))
        data, content_type = self._lookup(key)
        return ProxiedObject(
            size=len(data),
            content_type=content_type,
            etag='"etag-1"',
            last_modified=self.last_modified,
        )


class MemoryResponseCache:
    def __init__(self) -> None:
        self.entries: dict[str, CachedResponse] = {}
        self.lookups: list[CacheKey] = []
        self.stores: list[CacheKey] = []
        self.fail_store = False

    async def lookup(self, key: CacheKey) -> CachedResponse | None:
        self.lookups.append(key)
        return self.entries.get(key.serialize())

    async def store(self, key: CacheKey, response: CachedResponse) -> None:
        self.stores.append(key)
        if self.fail_store:
            msg = "cache backend unavailable"
            raise ConnectionError(msg)
        self.entries[key.serialize()] = response


def make_request(
    method: str,
    path: str,
    headers: dict[str, str] | None = None,
    *,
    raw_path: str | None = None,
) -> Request:
    scope = cast(
        HTTPScope,
        {
            "type": "http",
            "method": method,
            "path": path,
            "raw_path": (raw_path or path).encode("latin-1"),
            "query_string": b"",
            "scheme": "http",
            "server": ("testserver", 80),
            "headers": [
                (name.lower().encode("latin-1"), value.encode("latin-1"))
                for name, value in (headers or {}).items()
            ],
        },
    )

    async def receive():
        return {"type": "http.request", "body": b""}

    return Request(scope=scope, receive=receive)


async def read_body(response) -> bytes:
    iterator_attr = getattr(response, "iterator", None)
    if callable(iterator_attr):
        iterator_func = cast(Callable[[], AsyncIterator[bytes]], iterator_attr)
        return b"".join([chunk async for chunk in iterator_func()])
    content = getattr(response, "content", b"")
    return content if isinstance(content, bytes) else b""


async def finish(response) -> None:
    """Run the response's background task, as the server would after sending."""
    if response.background is not None:
        await response.background()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def identities() -> dict[str, Identity]:
    return {
        "token-u1": Identity(subject_id="user_1", tenant_id="u1"),
        "token-u2": Identity(subject_id="user_2", tenant_id="u2"),
    }


@pytest.fixture
def authenticator(identities) -> FakeAuthenticator:
    return FakeAuthenticator(identities)


@pytest.fixture
def store() -> MemoryObjectStore:
    store = MemoryObjectStore()
    store.put(U1_KEY, U1_CONTENT)
    return store


@pytest.fixture
def cache() -> MemoryResponseCache:
    return MemoryResponseCache()


@pytest.fixture
def proxy_settings() -> ProxySettings:
    return ProxySettings(
        max_range_bytes=512,
        max_suffix_bytes=128,
        authorized_origins=[ALLOWED_ORIGIN],
        cache_enabled=True,
        cache_max_age_seconds=5,
        immutable_prefixes=["analytics/static/"],
    )


@pytest.fixture
def file_proxy(proxy_settings, authenticator, store, cache) -> FileProxy:
    return FileProxy(proxy_settings, authenticator, store, cache)


@pytest.fixture
def set_env() -> Generator[Callable[[dict[str, str]], None]]:
    """Set environment variables for the duration of a test."""
    original_values: dict[str, str | None] = {}

    def _set(values: dict[str, str]) -> None:
        for key, value in values.items():
            original_values.setdefault(key, os.environ.get(key))
            os.environ[key] = value

    yield _set

    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value
