"""
Plugin sessions: signed session tokens plus the server-side session records
that hold the user's upstream CRM tokens.
"""

import re
import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime

import jwt

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.profile_domain import Profile
from sidecar.models.domain.session_domain import (
    IssuedToken,
    LoginResult,
    Session,
    SessionClaims,
)
from sidecar.services.credential_provider import CredentialProvider
from sidecar.services.errors import AuthError, InvalidOrExpiredToken, SessionNotFound
from sidecar.services.infrastructure.encryption_service import EncryptionError, TokenCipher
from sidecar.services.infrastructure.kv_store import KeyValueStore

logger = get_logger(__name__)

SESSION_ALGORITHM = "HS256"
MIN_SESSION_TTL_SECONDS = 60
DEFAULT_SESSION_TTL_SECONDS = 28800

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SessionStore:
    """Session records keyed by subject id. Upstream tokens are encrypted when a cipher is set."""

    def __init__(self, store: KeyValueStore, cipher: TokenCipher | None = None):
        self.store = store
        self.cipher = cipher

    async def save(self, session: Session) -> None:
        record = session.model_dump()
        if self.cipher:
            record["access_token"] = self.cipher.encrypt(session.access_token)
            if session.refresh_token:
                record["refresh_token"] = self.cipher.encrypt(session.refresh_token)
            record["encrypted"] = True
        await self.store.put(session.subject_id, record)

    async def load(self, subject_id: str) -> Session | None:
        record = await self.store.get(subject_id)
        if not record:
            return None

        if record.pop("encrypted", False):
            if not self.cipher:
                logger.warning("Encrypted session found but no key configured", subject_id=subject_id)
                return None
            try:
                record["access_token"] = self.cipher.decrypt(record.get("access_token") or "")
                if record.get("refresh_token"):
                    record["refresh_token"] = self.cipher.decrypt(record["refresh_token"])
            except EncryptionError:
                logger.warning("Session record could not be decrypted", subject_id=subject_id)
                return None

        try:
            return Session.model_validate(record)
        except ValueError:
            logger.warning("Session record malformed", subject_id=subject_id)
            return None

    async def delete(self, subject_id: str) -> bool:
        return await self.store.delete(subject_id)


class SessionService:
    """Issues and validates session tokens and runs the login/logout use cases."""

    def __init__(
        self,
        secret: str | None,
        session_store: SessionStore,
        credential_provider: CredentialProvider | None = None,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise AuthError("Session signing secret not configured", error_code="auth_not_configured")
        self._secret = secret
        self.session_store = session_store
        self.credential_provider = credential_provider
        self.ttl_seconds = max(MIN_SESSION_TTL_SECONDS, int(ttl_seconds))
        self.clock = clock

    def issue_token(
        self, subject_id: str, profile_id: str, username: str, email: str | None = None
    ) -> IssuedToken:
        issued_at = int(self.clock())
        expires_at = issued_at + self.ttl_seconds
        claims = {
            "sub": subject_id,
            "profileId": profile_id,
            "username": username,
            "email": email,
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(claims, self._secret, algorithm=SESSION_ALGORITHM)
        return IssuedToken(token=token, expires_at=expires_at)

    def validate_token(self, token: str) -> SessionClaims:
        """
        Verify a session token.

        Every rejection (malformed, wrong algorithm, bad signature, expired,
        missing subject) raises the same InvalidOrExpiredToken.
        """
        if not token:
            raise InvalidOrExpiredToken()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[SESSION_ALGORITHM],
                # Expiry is checked against self.clock below.
                options={"require": ["sub", "exp", "iat"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.PyJWTError as e:
            logger.debug("Session token rejected", error_type=type(e).__name__)
            raise InvalidOrExpiredToken() from None

        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (TypeError, ValueError):
            raise InvalidOrExpiredToken() from None
        if expires_at <= self.clock():
            logger.debug("Session token rejected", error_type="ExpiredSignatureError")
            raise InvalidOrExpiredToken()

        subject = payload.get("sub")
        profile_id = payload.get("profileId")
        if not isinstance(subject, str) or not subject or not isinstance(profile_id, str):
            raise InvalidOrExpiredToken()

        return SessionClaims(
            sub=subject,
            profile_id=profile_id,
            username=payload.get("username"),
            email=payload.get("email"),
            iat=issued_at,
            exp=expires_at,
        )

    async def authenticate(self, token: str) -> tuple[SessionClaims, Session]:
        claims = self.validate_token(token)
        session = await self.session_store.load(claims.sub)
        if session is None:
            raise SessionNotFound()
        return claims, session

    async def login(self, profile: Profile, username: str, password: str) -> LoginResult:
        """
        Exchange CRM credentials for a session token.

        Raises:
            AuthError: Missing username or password
            UpstreamAuthError and friends: from the credential provider
        """
        username = (username or "").strip()
        if not username or not password:
            raise AuthError("Username and password are required", error_code="invalid_credentials")
        if self.credential_provider is None:
            raise AuthError("Login is not available", error_code="auth_not_configured")

        tokens = await self.credential_provider.login_with_password(profile, username, password)

        email = username if _EMAIL_RE.match(username) else None
        session = Session(
            subject_id=secrets.token_hex(16),
            profile_id=profile.id,
            username=username,
            email=email,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
            created_at=datetime.now(UTC).isoformat(),
        )
        await self.session_store.save(session)

        issued = self.issue_token(session.subject_id, profile.id, username, email)
        logger.info("Session created", profile_id=profile.id, subject_id=session.subject_id)

        return LoginResult(
            token=issued.token,
            token_expires_at=issued.expires_at,
            profile_id=profile.id,
            user_id=session.subject_id,
            display_name=username,
            email=email,
        )

    async def logout(self, subject_id: str) -> bool:
        deleted = await self.session_store.delete(subject_id)
        logger.info("Session ended", subject_id=subject_id, existed=deleted)
        return deleted
