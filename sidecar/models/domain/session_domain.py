# models/domain/session_domain.py
"""
Session, session-token and upstream-token domain models.
"""

import time

from pydantic import BaseModel

UPSTREAM_TOKEN_MIN_TTL_SECONDS = 30


class UpstreamTokenSet(BaseModel):
    """Tokens returned by the CRM for the user-identity (password) flow."""

    access_token: str
    refresh_token: str | None = None
    expires_at: int


class Session(BaseModel):
    """Server-side state behind one plugin login. Never auto-expired."""

    subject_id: str
    profile_id: str
    username: str
    email: str | None = None
    access_token: str
    refresh_token: str | None = None
    token_expires_at: int = 0
    created_at: str

    def upstream_token_usable(self, now: float | None = None) -> bool:
        """False when the upstream token is missing or expires within the safety margin."""
        if not self.access_token:
            return False
        if self.token_expires_at <= 0:
            return True
        now = time.time() if now is None else now
        return self.token_expires_at > now + UPSTREAM_TOKEN_MIN_TTL_SECONDS


class SessionClaims(BaseModel):
    sub: str
    profile_id: str
    username: str | None = None
    email: str | None = None
    iat: int
    exp: int


class IssuedToken(BaseModel):
    token: str
    expires_at: int


class LoginResult(BaseModel):
    token: str
    token_expires_at: int
    profile_id: str
    user_id: str
    display_name: str
    email: str | None = None
