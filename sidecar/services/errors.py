"""
Typed failures shared by the sidecar services.

Every failure carries an ``error_code`` and a default ``status_code`` so the
HTTP boundary can translate it without inspecting messages.
"""

import re

SNIPPET_LENGTH = 200


def body_snippet(body: str | None, limit: int = SNIPPET_LENGTH) -> str:
    """Collapse whitespace and keep the first ``limit`` characters."""
    if not body:
        return ""
    collapsed = re.sub(r"\s+", " ", body).strip()
    return collapsed[:limit]


class SidecarError(Exception):
    """Base exception for all sidecar failures."""

    error_code = "internal_error"
    status_code = 500

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class ProfileResolutionError(SidecarError):
    error_code = "profile_resolution_failed"
    status_code = 400


class InvalidRequestError(SidecarError):
    error_code = "invalid_request"
    status_code = 400


class AuthError(SidecarError):
    error_code = "unauthorized"
    status_code = 401


class InvalidOrExpiredToken(AuthError):
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class SessionNotFound(AuthError):
    error_code = "session_not_found"

    def __init__(self, message: str = "Session not found"):
        super().__init__(message)


class UpstreamError(SidecarError):
    error_code = "crm_unreachable"
    status_code = 502


class UpstreamAuthError(UpstreamError):
    """Upstream rejected or could not issue credentials."""

    error_code = "crm_auth_failed"

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class MissingCredentials(UpstreamAuthError):
    def __init__(self, message: str = "Missing OAuth client credentials"):
        super().__init__(message, status_code=401)


class UpstreamBadResponse(UpstreamError):
    error_code = "crm_bad_response"


class UpstreamUnreachable(UpstreamError):
    error_code = "crm_unreachable"


class UpstreamHttpError(UpstreamError):
    """Non-success HTTP status from a CRM data endpoint."""

    def __init__(self, status: int, endpoint: str, body: str | None = None):
        self.status = status
        self.endpoint = endpoint
        self.body_snippet = body_snippet(body)
        super().__init__(f"CRM request to {endpoint} failed with HTTP {status}")
        if status in (401, 403):
            self.status_code = 401
            self.error_code = "crm_auth_failed"
        elif status == 409:
            self.status_code = 409
            self.error_code = "conflict"


class DuplicateSubmission(SidecarError):
    """An activity for the same message was already recorded upstream."""

    error_code = "duplicate"
    status_code = 409

    def __init__(self, existing_record, message: str = "Email already logged"):
        super().__init__(message)
        self.existing_record = existing_record


def is_auth_failure(error: Exception) -> bool:
    """True for failures that mean the CRM rejected our credentials."""
    if isinstance(error, UpstreamAuthError):
        return True
    return isinstance(error, UpstreamHttpError) and error.status in (401, 403)
