from __future__ import annotations

import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote
from uuid import uuid4

from litestar.background_tasks import BackgroundTask
from litestar.response import Response, Stream

from .assembler import assemble
from .auth import JWTAuthenticator
from .authz import authorize
from .cache import CachedResponse, NullResponseCache, S3ResponseCache
from .cache_control import NO_STORE_HEADERS, CacheControlPolicy
from .cache_keys import derive_cache_key
from .cors import CORSPolicy
from .errors import (
    AccessDeniedError,
    InvalidResourceKeyError,
    MethodNotAllowedError,
    ProxyError,
    RouteNotFoundError,
)
from .ranges import parse_range
from .resource import decode_file_path, parse_resource_key
from .settings import (
    load_auth_settings_from_env,
    load_proxy_settings_from_env,
    load_storage_settings_from_env,
)
from .storage import S3ObjectStore, parse_content_range

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar import Request

    from .auth import Authenticator, Identity
    from .cache import ResponseCache
    from .cache_keys import CacheKey
    from .resource import ResourceKey
    from .settings import ProxySettings
    from .storage import ObjectStore, ProxiedObject

LOG = logging.getLogger("file_proxy.proxy")
SECURITY_LOG = logging.getLogger("file_proxy.security")

FILE_PREFIX = "/file/"
HEALTH_PATH = "/health"
READ_METHODS = {"GET", "HEAD"}
CACHEABLE_STATUSES = {200, 206}


@dataclass
class RequestMetrics:
    cache_hit: bool = False
    bytes_transferred: int = 0
    auth_ms: float = 0.0
    storage_ms: float = 0.0
    started: float = 0.0

    @staticmethod
    def since(start: float) -> float:
        return (time.perf_counter() - start) * 1000


class _BodyTee:
    """Keeps a copy of a streamed body for the cache, up to ``limit`` bytes."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.overflowed = False
        self.complete = False

    def feed(self, chunk: bytes) -> None:
        if self.overflowed:
            return
        self._size += len(chunk)
        if self._size > self._limit:
            self.overflowed = True
            self._chunks.clear()
            return
        self._chunks.append(chunk)

    @property
    def cacheable(self) -> bool:
        return self.complete and not self.overflowed

    def body(self) -> bytes:
        return b"".join(self._chunks)


class FileProxy:
    """Authenticated, range-aware, tenant-scoped file proxy."""

    def __init__(
        self,
        settings: ProxySettings,
        authenticator: Authenticator,
        store: ObjectStore,
        cache: ResponseCache | None = None,
        *,
        tenant_header: str | None = None,
    ) -> None:
        self._settings = settings
        self._authenticator = authenticator
        self._store = store
        self._cache = cache if cache is not None else NullResponseCache()
        self._cors = CORSPolicy(
            settings.authorized_origins or (),
            extra_allow_headers=(tenant_header,) if tenant_header else (),
        )
        self._cache_control = CacheControlPolicy.from_settings(settings)

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    @classmethod
    def from_env(cls) -> FileProxy:
        """Create a FileProxy backed by S3 and JWT verification from env vars."""
        settings = load_proxy_settings_from_env()
        storage_settings = load_storage_settings_from_env()
        auth_settings = load_auth_settings_from_env()

        store = S3ObjectStore(storage_settings)
        cache: ResponseCache
        if settings.cache_enabled:
            cache = S3ResponseCache(
                store.client,
                storage_settings.cache_bucket,
                location=storage_settings.region,
            )
        else:
            cache = NullResponseCache()
        authenticator = JWTAuthenticator(
            auth_settings,
            authorized_parties=settings.authorized_origins or (),
        )
        return cls(
            settings,
            authenticator,
            store,
            cache,
            tenant_header=auth_settings.tenant_header,
        )

    async def startup(self) -> None:
        for component in (self._authenticator, self._cache):
            startup = getattr(component, "startup", None)
            if startup is not None:
                await startup()
        LOG.info(
            "file proxy ready (namespace=%s, cache=%s, origins=%d)",
            self._settings.resource_namespace,
            "enabled" if self._settings.cache_enabled else "disabled",
            len(self._cors.authorized_origins),
        )

    async def shutdown(self) -> None:
        shutdown = getattr(self._authenticator, "shutdown", None)
        if shutdown is not None:
            await shutdown()

    async def handle(self, request: Request, path: str) -> Response:
        request_id = uuid4().hex[:8]
        origin = request.headers.get("origin")
        LOG.debug("[%s] %s %s", request_id, request.method, path)

        if request.method == "OPTIONS":
            return Response(
                content=b"",
                status_code=204,
                headers=self._cors.preflight_headers(origin),
            )

        try:
            if path == HEALTH_PATH:
                if request.method != "GET":
                    raise MethodNotAllowedError("GET, OPTIONS")
                return self._health(origin)
            if path.startswith(FILE_PREFIX):
                if request.method not in READ_METHODS:
                    raise MethodNotAllowedError("GET, HEAD, OPTIONS")
                return await self._handle_file(request, request_id, origin)
            raise RouteNotFoundError()
        except ProxyError as error:
            return self._error_response(error, request_id, origin)
        except Exception:
            LOG.exception("[%s] unhandled error for %s %s", request_id, request.method, path)
            return self._error_response(ProxyError(), request_id, origin)

    def _health(self, origin: str | None) -> Response:
        return Response(
            content={"status": "ok"},
            status_code=200,
            headers={**NO_STORE_HEADERS, **self._cors.headers(origin)},
            media_type="application/json",
        )

    async def _handle_file(
        self, request: Request, request_id: str, origin: str | None
    ) -> Response:
        metrics = RequestMetrics(started=time.perf_counter())
        is_head = request.method == "HEAD"

        auth_start = time.perf_counter()
        identity = await self._authenticator.authenticate(request.headers)
        metrics.auth_ms = RequestMetrics.since(auth_start)

        resource = self._parse_resource(request, request_id, identity)

        range_header = request.headers.get("range")
        byte_range = parse_range(
            range_header,
            max_range_bytes=self._settings.max_range_bytes,
            max_suffix_bytes=self._settings.max_suffix_bytes,
        )

        cache_key = derive_cache_key(
            self._resource_url(request, resource),
            identity.tenant_id,
            range_header,
        )

        cached = await self._lookup(cache_key, request_id)
        if cached is not None:
            metrics.cache_hit = True
            response = self._from_cache(cached, is_head=is_head, origin=origin)
            metrics.bytes_transferred = 0 if is_head else len(cached.body)
            self._log_metrics(request_id, metrics)
            return response

        decision = authorize(resource, identity.tenant_id)
        if not decision.allowed:
            SECURITY_LOG.error(
                "[%s] SECURITY: tenant %s denied %s (%s)",
                request_id,
                identity.tenant_id,
                resource.path,
                decision.reason,
            )
            raise AccessDeniedError(decision.reason or "denied")

        storage_start = time.perf_counter()
        if is_head:
            obj = await self._store.head(resource.path)
        else:
            obj = await self._store.get(resource.path, byte_range)
        metrics.storage_ms = RequestMetrics.since(storage_start)

        try:
            assembled = assemble(
                obj,
                byte_range,
                is_head=is_head,
                cache_control=self._cache_control.for_resource(resource),
            )
        except BaseException:
            await obj.aclose()
            raise

        headers = {**assembled.headers, **self._cors.headers(origin), "X-Cache": "MISS"}
        if not assembled.body_present:
            await obj.aclose()
            self._log_metrics(request_id, metrics)
            return Response(
                content=b"",
                status_code=assembled.status_code,
                headers=headers,
                media_type=assembled.headers["Content-Type"],
            )

        tee = None
        if self._settings.cache_enabled and assembled.status_code in CACHEABLE_STATUSES:
            tee = _BodyTee(self._settings.cache_max_body_bytes)

        async def iterator() -> AsyncIterator[bytes]:
            async with aclosing(obj.iter_body()) as chunks:
                async for chunk in chunks:
                    metrics.bytes_transferred += len(chunk)
                    if tee is not None:
                        tee.feed(chunk)
                    yield chunk
            if tee is not None:
                tee.complete = True

        return Stream(
            content=iterator,
            status_code=assembled.status_code,
            headers=headers,
            media_type=assembled.headers["Content-Type"],
            background=BackgroundTask(
                self._finish_stream,
                obj,
                tee,
                cache_key,
                CachedResponse(assembled.status_code, dict(assembled.headers)),
                request_id,
                metrics,
            ),
        )

    def _parse_resource(
        self, request: Request, request_id: str, identity: Identity
    ) -> ResourceKey:
        try:
            raw_key = decode_file_path(self._raw_file_path(request))
            return parse_resource_key(raw_key, self._settings.resource_namespace)
        except InvalidResourceKeyError as error:
            SECURITY_LOG.error(
                "[%s] SECURITY: tenant %s sent invalid file key: %s",
                request_id,
                identity.tenant_id,
                error.message,
            )
            raise

    @staticmethod
    def _raw_file_path(request: Request) -> str:
        raw_path = request.scope.get("raw_path")
        if raw_path:
            path = raw_path.decode("latin-1").split("?", 1)[0]
            return path[len(FILE_PREFIX) :] if path.startswith(FILE_PREFIX) else ""
        # already decoded by the server
        path = request.scope.get("path", "")
        return quote(path[len(FILE_PREFIX) :], safe="/=")

    @staticmethod
    def _resource_url(request: Request, resource: ResourceKey) -> str:
        scheme = request.scope.get("scheme", "http")
        host = request.headers.get("host")
        if not host:
            server = request.scope.get("server")
            host = f"{server[0]}:{server[1]}" if server else "localhost"
        return f"{scheme}://{host}{FILE_PREFIX}{quote(resource.path, safe='/=')}"

    async def _lookup(self, key: CacheKey, request_id: str) -> CachedResponse | None:
        try:
            cached = await self._cache.lookup(key)
        except Exception:
            LOG.warning("[%s] cache lookup failed, treating as miss", request_id, exc_info=True)
            return None
        LOG.info("[%s] cache %s", request_id, "HIT" if cached is not None else "MISS")
        return cached

    def _from_cache(
        self, cached: CachedResponse, *, is_head: bool, origin: str | None
    ) -> Response:
        headers = dict(cached.headers)
        status_code = cached.status_code
        body = cached.body
        if is_head:
            body = b""
            if status_code == 206:
                status_code = 200
                parsed = parse_content_range(headers.pop("Content-Range", None))
                if parsed is not None and parsed[1] is not None:
                    headers["Content-Length"] = str(parsed[1])
        headers.update(self._cors.headers(origin))
        headers["X-Cache"] = "HIT"
        return Response(
            content=body,
            status_code=status_code,
            headers=headers,
            media_type=headers.get("Content-Type", "application/octet-stream"),
        )

    async def _finish_stream(
        self,
        obj: ProxiedObject,
        tee: _BodyTee | None,
        key: CacheKey,
        entry: CachedResponse,
        request_id: str,
        metrics: RequestMetrics,
    ) -> None:
        await obj.aclose()
        self._log_metrics(request_id, metrics)
        if tee is None:
            return
        if not tee.cacheable:
            LOG.debug(
                "[%s] not caching %s (complete=%s, overflowed=%s)",
                request_id,
                key.url,
                tee.complete,
                tee.overflowed,
            )
            return
        entry.body = tee.body()
        try:
            await self._cache.store(key, entry)
        except Exception:
            LOG.warning(
                "[%s] failed to cache response (non-fatal)", request_id, exc_info=True
            )

    def _error_response(
        self, error: ProxyError, request_id: str, origin: str | None
    ) -> Response:
        if error.status_code >= 500:
            LOG.error("[%s] error response: %s - %s", request_id, error.status_code, error.message)
        else:
            LOG.warning(
                "[%s] error response: %s - %s", request_id, error.status_code, error.message
            )
        headers: dict[str, Any] = {
            **NO_STORE_HEADERS,
            **self._cors.headers(origin),
            **error.extra_headers(),
        }
        return Response(
            content={"error": error.message},
            status_code=error.status_code,
            headers=headers,
            media_type="application/json",
        )

    @staticmethod
    def _log_metrics(request_id: str, metrics: RequestMetrics) -> None:
        LOG.info(
            "[%s] metrics cache=%s bytes=%d auth_ms=%.2f storage_ms=%.2f total_ms=%.2f",
            request_id,
            "HIT" if metrics.cache_hit else "MISS",
            metrics.bytes_transferred,
            metrics.auth_ms,
            metrics.storage_ms,
            RequestMetrics.since(metrics.started),
        )
