from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .resource import ResourceKey

MARKER_MISSING = "marker-missing"
OWNERSHIP_MISMATCH = "ownership-mismatch"


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> AuthzDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> AuthzDecision:
        return cls(allowed=False, reason=reason)


def authorize(resource: ResourceKey, tenant_id: str) -> AuthzDecision:
    """Compare the resource's owner with an already-authenticated tenant."""
    if resource.owner_id is None:
        return AuthzDecision.deny(MARKER_MISSING)
    if resource.owner_id != tenant_id:
        return AuthzDecision.deny(OWNERSHIP_MISMATCH)
    return AuthzDecision.allow()
