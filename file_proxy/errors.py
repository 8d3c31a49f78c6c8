"""Error taxonomy for the file proxy.

Every failure that can reach a client is a :class:`ProxyError`. The
orchestrator converts them into a JSON ``{"error": ...}`` envelope at its
boundary; nothing below it builds HTTP error responses.
"""

from __future__ import annotations


class ProxyError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def extra_headers(self) -> dict[str, str]:
        return {}


class RangeValidationError(ProxyError):
    """Range header is well-formed but not acceptable."""

    status_code = 400
    default_message = "Invalid range"


class AuthenticationError(ProxyError):
    status_code = 401
    default_message = "Unauthorized"

    def extra_headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class InvalidResourceKeyError(ProxyError):
    """Resource key failed syntax checks (traversal, prefix, ...)."""

    status_code = 403
    default_message = "Invalid file key"


class AccessDeniedError(ProxyError):
    """Authenticated tenant does not own the resource.

    ``reason`` is kept for logs; clients only ever see "Access denied".
    """

    status_code = 403
    default_message = "Access denied"

    def __init__(self, reason: str) -> None:
        super().__init__(self.default_message)
        self.reason = reason


class ObjectNotFoundError(ProxyError):
    status_code = 404
    default_message = "File not found"


class RouteNotFoundError(ProxyError):
    status_code = 404
    default_message = "Not found"


class MethodNotAllowedError(ProxyError):
    status_code = 405
    default_message = "Method not allowed"

    def __init__(self, allow: str) -> None:
        super().__init__()
        self.allow = allow

    def extra_headers(self) -> dict[str, str]:
        return {"Allow": self.allow}


class RangeNotSatisfiableError(ProxyError):
    status_code = 416
    default_message = "Range not satisfiable"

    def __init__(self, size: int | None = None) -> None:
        super().__init__()
        self.size = size

    def extra_headers(self) -> dict[str, str]:
        if self.size is None:
            return {}
        return {"Content-Range": f"bytes */{self.size}"}


class IdentityProviderError(ProxyError):
    """The identity collaborator could not be reached or misbehaved."""


class StorageError(ProxyError):
    """The object store failed with something other than not-found."""
