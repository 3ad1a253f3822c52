"""
verify.py
---------
Purpose:
    Request-scoped dependencies: profile resolution and session verification.

Notes:
    - Session tokens are HS256 JWTs issued by SessionService at login.
    - In AUTH_MODE=service no bearer token is required and the adapter uses
      the profile's service identity.
    - The resolved profile must equal the profile the session was issued for.
"""

from dataclasses import dataclass

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sidecar.models.domain.profile_domain import Profile
from sidecar.models.domain.session_domain import Session, SessionClaims
from sidecar.services.container import ServiceContainer
from sidecar.services.errors import AuthError, InvalidOrExpiredToken, SidecarError

_security = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    profile: Profile
    session: Session | None = None
    claims: SessionClaims | None = None


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def peer_address(request: Request) -> str | None:
    peer = getattr(request.state, "peer_address", None)
    if peer is None and request.client:
        peer = request.client.host
    return peer


def resolve_profile(request: Request, container: ServiceContainer = Depends(get_container)) -> Profile:
    profile = container.resolver.resolve(request.query_params, request.headers, peer_address(request))
    structlog.contextvars.bind_contextvars(profile_id=profile.id)
    return profile


def require_session_service(container: ServiceContainer):
    if container.session_service is None:
        raise SidecarError("Authentication not configured", error_code="auth_not_configured")
    return container.session_service


async def auth_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
    container: ServiceContainer = Depends(get_container),
    profile: Profile = Depends(resolve_profile),
) -> AuthContext:
    if container.service_identity:
        return AuthContext(profile=profile)

    session_service = require_session_service(container)
    if credentials is None or not credentials.credentials:
        raise InvalidOrExpiredToken()

    claims, session = await session_service.authenticate(credentials.credentials)
    if session.profile_id != profile.id or claims.profile_id != profile.id:
        raise AuthError("Session does not belong to this profile", error_code="profile_mismatch")

    return AuthContext(profile=profile, session=session, claims=claims)
