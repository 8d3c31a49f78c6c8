from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import unquote

from .errors import InvalidResourceKeyError

OWNER_MARKER = "user_id="


@dataclass(frozen=True)
class ResourceKey:
    """A storage key parsed once at the request boundary.

    Expected shape: ``<namespace>/.../user_id=<owner>/...``. ``owner_id`` is
    ``None`` when the key carries no ownership segment; the authorizer
    rejects such keys.
    """

    namespace: str
    owner_id: str | None
    path: str

    def __str__(self) -> str:
        return self.path


def decode_file_path(raw: str) -> str:
    """Percent-decode the ``/file/`` path component exactly once."""
    try:
        return unquote(raw, errors="strict")
    except UnicodeDecodeError as error:
        msg = "Invalid characters in file key"
        raise InvalidResourceKeyError(msg) from error


def parse_resource_key(raw: str, namespace: str) -> ResourceKey:
    if not raw or not raw.strip():
        msg = "Empty file key"
        raise InvalidResourceKeyError(msg)
    if "\0" in raw:
        msg = "Invalid characters in file key"
        raise InvalidResourceKeyError(msg)
    if ".." in raw:
        msg = "Path traversal detected: '..' not allowed"
        raise InvalidResourceKeyError(msg)
    if raw.startswith("/") or "\\" in raw:
        msg = "Path traversal detected: absolute paths not allowed"
        raise InvalidResourceKeyError(msg)

    segments = raw.split("/")
    if segments[0] != namespace or len(segments) < 2:
        msg = "Invalid file path prefix"
        raise InvalidResourceKeyError(msg)

    owner_id = None
    for segment in segments[1:]:
        if segment.startswith(OWNER_MARKER):
            owner_id = segment[len(OWNER_MARKER) :] or None
            break

    return ResourceKey(namespace=namespace, owner_id=owner_id, path=raw)
