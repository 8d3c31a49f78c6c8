"""Bearer token verification.

Tokens are verified either networklessly against a configured key or
against keys fetched from a JWKS endpoint. The result is the tenant on whose
behalf the request runs; ownership checks happen elsewhere.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import jwt

from .errors import AuthenticationError, IdentityProviderError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from .settings import AuthSettings

LOG = logging.getLogger("file_proxy.auth")

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Identity:
    subject_id: str
    tenant_id: str


class Authenticator(Protocol):
    async def authenticate(self, headers: Mapping[str, str]) -> Identity: ...


def extract_bearer_token(headers: Mapping[str, str]) -> str:
    value = headers.get("authorization") or ""
    if not value.startswith(BEARER_PREFIX) or not value[len(BEARER_PREFIX) :].strip():
        msg = "Unauthorized - Missing Bearer token"
        raise AuthenticationError(msg)
    return value[len(BEARER_PREFIX) :].strip()


class JWTAuthenticator:
    def __init__(
        self,
        settings: AuthSettings,
        *,
        authorized_parties: Iterable[str] = (),
        clock=time.monotonic,
    ) -> None:
        self._settings = settings
        self._authorized_parties = frozenset(authorized_parties)
        self._clock = clock
        self._http_client: httpx.AsyncClient | None = None
        self._jwks: jwt.PyJWKSet | None = None
        self._jwks_fetched_at: float | None = None

    @property
    def networkless(self) -> bool:
        return self._settings.jwt_key is not None

    async def startup(self) -> None:
        if self._settings.jwks_url and not self.networkless:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.jwks_timeout_seconds),
                trust_env=False,
            )
        LOG.info(
            "auth mode: %s",
            "networkless" if self.networkless else f"jwks ({self._settings.jwks_url})",
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def authenticate(self, headers: Mapping[str, str]) -> Identity:
        token = extract_bearer_token(headers)
        key = await self._signing_key(token)
        claims = self._decode(token, key)

        subject_id = claims["sub"]
        party = claims.get("azp")
        if party and self._authorized_parties and party not in self._authorized_parties:
            LOG.warning("token issued for unauthorized party %s", party)
            msg = "Unauthorized - Invalid token"
            raise AuthenticationError(msg)

        if self._settings.tenant_header:
            tenant_id = headers.get(self._settings.tenant_header.lower())
            if not tenant_id:
                LOG.warning("missing %s header", self._settings.tenant_header)
                msg = "Unauthorized - Missing internal user ID"
                raise AuthenticationError(msg)
        else:
            tenant_id = claims.get(self._settings.tenant_claim)
            if not tenant_id or not isinstance(tenant_id, str):
                LOG.warning(
                    "token for %s has no %s claim",
                    subject_id,
                    self._settings.tenant_claim,
                )
                msg = "Unauthorized - Invalid token"
                raise AuthenticationError(msg)

        return Identity(subject_id=subject_id, tenant_id=tenant_id)

    def _decode(self, token: str, key: Any) -> dict[str, Any]:
        settings = self._settings
        try:
            return jwt.decode(
                token,
                key,
                algorithms=settings.allowed_algorithms,
                audience=settings.audience,
                issuer=settings.issuer,
                leeway=settings.leeway_seconds,
                options={
                    "require": ["exp", "sub"],
                    "verify_aud": settings.audience is not None,
                },
            )
        except jwt.PyJWTError as error:
            LOG.warning("token verification failed: %s", error)
            msg = "Unauthorized - Invalid token"
            raise AuthenticationError(msg) from error

    async def _signing_key(self, token: str) -> Any:
        if self._settings.jwt_key is not None:
            return self._settings.jwt_key
        if not self._settings.jwks_url:
            LOG.error("no jwt key or jwks url configured")
            raise IdentityProviderError()

        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.PyJWTError as error:
            msg = "Unauthorized - Invalid token"
            raise AuthenticationError(msg) from error

        if self._jwks is None:
            self._jwks = await self._fetch_jwks()
        elif not self._has_kid(kid):
            if not self._may_refetch():
                LOG.warning("unknown signing key id %s, refetch not yet allowed", kid)
                msg = "Unauthorized - Invalid token"
                raise AuthenticationError(msg)
            self._jwks = await self._fetch_jwks()
        for jwk in self._jwks.keys:
            if kid is None or jwk.key_id == kid:
                return jwk.key
        msg = "Unauthorized - Invalid token"
        raise AuthenticationError(msg)

    def _has_kid(self, kid: str | None) -> bool:
        assert self._jwks is not None
        return any(kid is None or jwk.key_id == kid for jwk in self._jwks.keys)

    def _may_refetch(self) -> bool:
        """Unknown key ids trigger at most one refetch per interval."""
        if self._jwks_fetched_at is None:
            return True
        elapsed = self._clock() - self._jwks_fetched_at
        return elapsed >= self._settings.jwks_refetch_interval_seconds

    async def _fetch_jwks(self) -> jwt.PyJWKSet:
        if self._http_client is None:
            message = "authenticator not initialised"
            raise RuntimeError(message)
        assert self._settings.jwks_url is not None
        # failed attempts also start the interval
        self._jwks_fetched_at = self._clock()
        try:
            response = await self._http_client.get(self._settings.jwks_url)
            response.raise_for_status()
            return jwt.PyJWKSet.from_dict(response.json())
        except (httpx.HTTPError, ValueError, jwt.PyJWTError) as error:
            LOG.error("failed to fetch signing keys: %s", error)
            raise IdentityProviderError() from error
