"""
Upstream credential acquisition for CRM profiles.

Two OAuth-style flows against the profile's token endpoint:
- service identity (client_credentials), cached in the TokenCache
- user identity (password grant), returned to the caller and never cached
"""

import time
from collections.abc import Callable
from typing import Protocol

import httpx

from sidecar.infrastructure.observability.logging import get_logger, redact_secrets
from sidecar.models.domain.profile_domain import DEFAULT_GRANT_TYPE, Profile
from sidecar.models.domain.session_domain import Session, UpstreamTokenSet
from sidecar.services.errors import (
    MissingCredentials,
    UpstreamAuthError,
    UpstreamBadResponse,
    UpstreamUnreachable,
    body_snippet,
)
from sidecar.services.token_cache import CachedAccessToken, TokenCache

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 300

# Lower-cased body fragments that always mean "bad credentials", whatever the status.
AUTH_FAILURE_MARKERS = (
    "invalid_client",
    "invalid_grant",
    "password is invalid",
    "no user found",
    "invalid credentials",
)


def classify_token_failure(status: int, body: str | None) -> int:
    """
    Map a failed token-endpoint response to 401 (credentials) or 502 (upstream fault).

    Some CRMs answer bad credentials with a 5xx and a descriptive body, so the
    body markers win over the status code.
    """
    text = (body or "").lower()
    if any(marker in text for marker in AUTH_FAILURE_MARKERS):
        return 401
    return 401 if status in (400, 401) else 502


class CredentialProvider:
    """Obtains upstream access tokens for a profile."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache,
        clock: Callable[[], float] = time.time,
    ):
        self.http_client = http_client
        self.token_cache = token_cache
        self.clock = clock

    async def get_service_token(self, profile: Profile) -> str:
        """
        Return a valid service-identity access token, using the cache when possible.

        Raises:
            UpstreamAuthError: Unsupported grant, rejected credentials
            MissingCredentials: Client id/secret not configured (no network call)
            UpstreamBadResponse: Token endpoint answered with an unusable body
            UpstreamUnreachable: Transport failure
        """
        oauth = profile.oauth
        if oauth.grant_type != DEFAULT_GRANT_TYPE:
            raise UpstreamAuthError(
                f"Unsupported grant type for service identity: {oauth.grant_type}", status_code=401
            )

        cached = await self.token_cache.get(profile.id)
        if cached:
            return cached.access_token

        if not oauth.has_client_credentials():
            logger.warning("Service identity requested without client credentials", profile_id=profile.id)
            raise MissingCredentials()

        data = {
            "grant_type": "client_credentials",
            "client_id": oauth.client_id,
            "client_secret": oauth.client_secret,
        }
        payload = await self._request_token(profile, data, operation="client_credentials")

        expires_at = self._expires_at(payload)
        await self.token_cache.put(
            profile.id, CachedAccessToken(access_token=payload["access_token"], expires_at=expires_at)
        )

        logger.info("Service token acquired", profile_id=profile.id, expires_at=expires_at)
        return payload["access_token"]

    async def login_with_password(
        self, profile: Profile, username: str, password: str
    ) -> UpstreamTokenSet:
        """
        Exchange user credentials for upstream tokens using the password grant.

        Raises:
            MissingCredentials: Profile has no client identity configured
            UpstreamAuthError, UpstreamBadResponse, UpstreamUnreachable
        """
        if not profile.oauth.has_client_credentials():
            raise MissingCredentials()

        data = {
            "grant_type": "password",
            "client_id": profile.oauth.client_id,
            "client_secret": profile.oauth.client_secret,
            "username": username,
            "password": password,
        }
        payload = await self._request_token(profile, data, operation="password")

        refresh_token = payload.get("refresh_token")
        tokens = UpstreamTokenSet(
            access_token=payload["access_token"],
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_at=self._expires_at(payload),
        )
        logger.info("User token acquired", profile_id=profile.id, expires_at=tokens.expires_at)
        return tokens

    async def _request_token(self, profile: Profile, data: dict, operation: str) -> dict:
        url = profile.oauth.token_url
        try:
            response = await self.http_client.post(
                url, data=data, headers={"Accept": "application/json"}
            )
        except httpx.RequestError as e:
            logger.error(
                "Token endpoint unreachable",
                profile_id=profile.id,
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise UpstreamUnreachable(f"Token endpoint unreachable: {type(e).__name__}") from e

        if response.status_code >= 400:
            status_code = classify_token_failure(response.status_code, response.text)
            logger.warning(
                "Token request rejected",
                profile_id=profile.id,
                operation=operation,
                upstream_status=response.status_code,
                classified_status=status_code,
                body=redact_secrets(body_snippet(response.text)),
            )
            raise UpstreamAuthError(
                f"CRM token request failed with HTTP {response.status_code}", status_code=status_code
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamBadResponse("Token endpoint returned invalid JSON") from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise UpstreamBadResponse("Token endpoint response has no access_token")

        return payload

    def _expires_at(self, payload: dict) -> int:
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        if expires_in <= 0:
            expires_in = DEFAULT_EXPIRES_IN
        return int(self.clock()) + expires_in


class AccessTokenSource(Protocol):
    async def get_access_token(self, profile: Profile) -> str: ...


class ServiceTokenSource:
    """Access tokens from the service-identity flow."""

    def __init__(self, provider: CredentialProvider):
        self.provider = provider

    async def get_access_token(self, profile: Profile) -> str:
        return await self.provider.get_service_token(profile)


class SessionTokenSource:
    """Access tokens held by an authenticated user session."""

    def __init__(self, session: Session, clock: Callable[[], float] = time.time):
        self.session = session
        self.clock = clock

    async def get_access_token(self, profile: Profile) -> str:
        if self.session.profile_id != profile.id:
            raise UpstreamAuthError("Session does not belong to this profile", status_code=401)
        if not self.session.access_token:
            raise UpstreamAuthError("Session has no CRM access token", status_code=401)
        if not self.session.upstream_token_usable(self.clock()):
            raise UpstreamAuthError("CRM session expired, please sign in again", status_code=401)
        return self.session.access_token
