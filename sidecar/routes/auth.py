"""
Session login / logout.
"""

from fastapi import APIRouter, Depends, Request

from sidecar.auth.verify import (
    AuthContext,
    auth_dependency,
    get_container,
    peer_address,
    require_session_service,
)
from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.api.auth_request import LoginRequest
from sidecar.models.api.auth_response import LoginResponse, LogoutResponse, SessionUser
from sidecar.services.container import ServiceContainer

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Exchange CRM credentials for a sidecar session token.

    The host mapping wins over ``profileId`` when the request host is mapped.
    """
    session_service = require_session_service(container)
    profile = container.resolver.resolve(
        request.query_params, request.headers, peer_address(request), explicit_id=body.profile_id
    )

    result = await session_service.login(profile, body.username, body.password)

    return LoginResponse(
        token=result.token,
        token_expires_at=result.token_expires_at,
        profile_id=result.profile_id,
        user=SessionUser(id=result.user_id, display_name=result.display_name, email=result.email),
    )


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    auth: AuthContext = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    if auth.session is None:
        return LogoutResponse(logged_out=False)
    session_service = require_session_service(container)
    await session_service.logout(auth.session.subject_id)
    return LogoutResponse(logged_out=True)
