from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol

from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .errors import ObjectNotFoundError, RangeNotSatisfiableError, StorageError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping
    from datetime import datetime

    from .ranges import ByteRange
    from .settings import StorageSettings

LOG = logging.getLogger("file_proxy.storage")

CHUNK_SIZE = 1024 * 64
DEFAULT_CONTENT_TYPE = "application/octet-stream"
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

_CONTENT_RANGE_RE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")


async def run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


class ObjectBody(Protocol):
    async def read(self, size: int) -> bytes: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class ServedRange:
    """The byte span the store actually returned."""

    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length - 1


class ProxiedObject:
    """Object metadata plus an optional, single-use body stream."""

    def __init__(
        self,
        *,
        size: int,
        content_type: str | None = None,
        etag: str | None = None,
        last_modified: datetime | None = None,
        served_range: ServedRange | None = None,
        body: ObjectBody | None = None,
    ) -> None:
        self.size = size
        self.content_type = content_type or DEFAULT_CONTENT_TYPE
        self.etag = etag
        self.last_modified = last_modified
        self.served_range = served_range
        self._body = body
        self._consumed = False
        self._closed = False

    @property
    def has_body(self) -> bool:
        return self._body is not None

    async def iter_body(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield the body once; the stream is released on every exit path."""
        if self._body is None:
            return
        if self._consumed:
            msg = "object body already consumed"
            raise RuntimeError(msg)
        self._consumed = True
        try:
            while True:
                chunk = await self._body.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed or self._body is None:
            return
        self._closed = True
        await self._body.close()


class ObjectStore(Protocol):
    async def get(self, key: str, byte_range: ByteRange | None) -> ProxiedObject:
        """Fetch an object, optionally restricted to ``byte_range``.

        Raises:
            ObjectNotFoundError: no object under ``key``.
            RangeNotSatisfiableError: the range lies outside the object.
            StorageError: any other backend failure.
        """
        ...

    async def head(self, key: str) -> ProxiedObject: ...


class _S3Body:
    def __init__(self, streaming_body: Any) -> None:
        self._stream = streaming_body

    async def read(self, size: int) -> bytes:
        return await run_sync(self._stream.read, size)

    async def close(self) -> None:
        await run_sync(self._stream.close)


def parse_content_range(value: str | None) -> tuple[ServedRange, int | None] | None:
    """Parse ``bytes <start>-<end>/<total>`` as reported by S3."""
    if not value:
        return None
    match = _CONTENT_RANGE_RE.match(value.strip())
    if match is None:
        return None
    start, end, total = match.groups()
    served = ServedRange(offset=int(start), length=int(end) - int(start) + 1)
    return served, None if total == "*" else int(total)


class S3ObjectStore:
    """Read-only view of one bucket in an S3-compatible store."""

    def __init__(self, settings: StorageSettings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client if client is not None else self._build_client()

    @property
    def bucket(self) -> str:
        return self._settings.bucket

    @property
    def client(self) -> Any:
        return self._client

    def _build_client(self):
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            aws_session_token=self._settings.session_token,
            region_name=self._settings.region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 3},
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )

    async def get(self, key: str, byte_range: ByteRange | None) -> ProxiedObject:
        get_kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if byte_range is not None:
            get_kwargs["Range"] = byte_range.to_header()
        try:
            result = await run_sync(self._client.get_object, **get_kwargs)
        except ClientError as error:
            raise self._translate_error(error, key) from error

        served_range = None
        size = result.get("ContentLength", 0)
        parsed = parse_content_range(result.get("ContentRange"))
        if parsed is not None:
            served_range, total = parsed
            if total is not None:
                size = total

        LOG.debug(
            "GET s3://%s/%s range=%s served=%s",
            self.bucket,
            key,
            get_kwargs.get("Range"),
            served_range,
        )
        return self._to_object(
            result, size=size, served_range=served_range, body=_S3Body(result["Body"])
        )

    async def head(self, key: str) -> ProxiedObject:
        try:
            result = await run_sync(
                self._client.head_object, Bucket=self.bucket, Key=key
            )
        except ClientError as error:
            raise self._translate_error(error, key) from error
        LOG.debug("HEAD s3://%s/%s", self.bucket, key)
        return self._to_object(result, size=result.get("ContentLength", 0))

    @staticmethod
    def _to_object(
        result: Mapping[str, Any],
        *,
        size: int,
        served_range: ServedRange | None = None,
        body: ObjectBody | None = None,
    ) -> ProxiedObject:
        return ProxiedObject(
            size=size,
            content_type=result.get("ContentType"),
            etag=result.get("ETag"),
            last_modified=result.get("LastModified"),
            served_range=served_range,
            body=body,
        )

    def _translate_error(self, error: ClientError, key: str) -> Exception:
        code = error.response.get("Error", {}).get("Code")
        if code in NOT_FOUND_CODES:
            LOG.debug("miss for s3://%s/%s", self.bucket, key)
            return ObjectNotFoundError()
        if code in {"InvalidRange", "416"}:
            size = error.response.get("Error", {}).get("ActualObjectSize")
            return RangeNotSatisfiableError(int(size) if size else None)
        LOG.warning(
            "storage error for s3://%s/%s: %s",
            self.bucket,
            key,
            error,
        )
        return StorageError()
