"""
Session tokens, session records and the login / logout use cases.
"""

import jwt
import pytest

from sidecar.services.errors import AuthError, InvalidOrExpiredToken, SessionNotFound
from sidecar.services.infrastructure.encryption_service import TokenCipher, generate_key
from sidecar.services.infrastructure.kv_store import MemoryKeyValueStore
from sidecar.services.session_service import SessionService, SessionStore


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def cipher():
    return TokenCipher(generate_key())


@pytest.fixture
def service(kv, cipher, credential_provider, signing_secret):
    return SessionService(signing_secret, SessionStore(kv, cipher), credential_provider)


def test_missing_secret_is_rejected(kv):
    with pytest.raises(AuthError) as exc_info:
        SessionService("", SessionStore(kv))
    assert exc_info.value.error_code == "auth_not_configured"


def test_issue_and_validate_token(service):
    issued = service.issue_token("subject-1", "acme", "jane", "jane@example.com")
    claims = service.validate_token(issued.token)

    assert claims.sub == "subject-1"
    assert claims.profile_id == "acme"
    assert claims.email == "jane@example.com"
    assert claims.exp == issued.expires_at
    assert claims.exp - claims.iat == 28800


def test_ttl_has_a_floor(kv, signing_secret):
    service = SessionService(signing_secret, SessionStore(kv), ttl_seconds=5)
    assert service.ttl_seconds == 60


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
def test_malformed_tokens_are_rejected(service, token):
    with pytest.raises(InvalidOrExpiredToken):
        service.validate_token(token)


def test_tampered_token_is_rejected(service):
    token = service.issue_token("subject-1", "acme", "jane").token
    header, payload, signature = token.split(".")
    tampered = ".".join([header, payload, signature[::-1]])

    with pytest.raises(InvalidOrExpiredToken):
        service.validate_token(tampered)


def test_token_signed_with_other_secret_is_rejected(service):
    forged = jwt.encode(
        {"sub": "x", "profileId": "acme", "iat": 1, "exp": 4_000_000_000},
        "some-other-secret-of-sufficient-length-0000",
        algorithm="HS256",
    )
    with pytest.raises(InvalidOrExpiredToken):
        service.validate_token(forged)


def test_token_with_other_algorithm_is_rejected(service, signing_secret):
    forged = jwt.encode(
        {"sub": "x", "profileId": "acme", "iat": 1, "exp": 4_000_000_000},
        signing_secret,
        algorithm="HS512",
    )
    with pytest.raises(InvalidOrExpiredToken):
        service.validate_token(forged)


def test_expiry_follows_the_service_clock(kv, signing_secret):
    now = [1_000.0]
    service = SessionService(signing_secret, SessionStore(kv), ttl_seconds=600, clock=lambda: now[0])
    issued = service.issue_token("subject-1", "acme", "jane")

    now[0] = 1_599.0
    assert service.validate_token(issued.token).exp == 1_600

    now[0] = 1_600.0
    with pytest.raises(InvalidOrExpiredToken):
        service.validate_token(issued.token)


def test_expired_token_is_rejected_on_wall_clock(kv, signing_secret):
    issuer = SessionService(signing_secret, SessionStore(kv), clock=lambda: 1_000.0)
    token = issuer.issue_token("subject-1", "acme", "jane").token

    with pytest.raises(InvalidOrExpiredToken):
        SessionService(signing_secret, SessionStore(kv)).validate_token(token)


def test_token_without_profile_is_rejected(service, signing_secret):
    token = jwt.encode({"sub": "x", "iat": 1, "exp": 4_000_000_000}, signing_secret, algorithm="HS256")
    with pytest.raises(InvalidOrExpiredToken):
        service.validate_token(token)


@pytest.mark.asyncio
async def test_login_persists_encrypted_session(service, kv, fake_crm, profile):
    fake_crm.token_body = {"access_token": "user-abc", "refresh_token": "r-1", "expires_in": 600}

    result = await service.login(profile, "  jane@example.com ", "pw")

    assert result.profile_id == "acme"
    assert result.email == "jane@example.com"
    assert result.display_name == "jane@example.com"
    assert len(result.user_id) == 32

    record = await kv.get(result.user_id)
    assert record["encrypted"] is True
    assert record["access_token"] != "user-abc"

    claims, session = await service.authenticate(result.token)
    assert claims.sub == result.user_id
    assert session.access_token == "user-abc"
    assert session.refresh_token == "r-1"


@pytest.mark.asyncio
async def test_login_with_plain_username_has_no_email(service, profile):
    result = await service.login(profile, "jdoe", "pw")
    assert result.email is None


@pytest.mark.asyncio
async def test_login_requires_username_and_password(service, fake_crm, profile):
    with pytest.raises(AuthError):
        await service.login(profile, "   ", "pw")
    with pytest.raises(AuthError):
        await service.login(profile, "jane", "")
    assert fake_crm.token_requests == []


@pytest.mark.asyncio
async def test_logout_removes_session(service, profile):
    result = await service.login(profile, "jane@example.com", "pw")

    assert await service.logout(result.user_id) is True
    with pytest.raises(SessionNotFound):
        await service.authenticate(result.token)
    assert await service.logout(result.user_id) is False


@pytest.mark.asyncio
async def test_session_unreadable_with_other_key(kv, make_session):
    await SessionStore(kv, TokenCipher(generate_key())).save(make_session())
    assert await SessionStore(kv, TokenCipher(generate_key())).load("a" * 32) is None
    assert await SessionStore(kv).load("a" * 32) is None


@pytest.mark.asyncio
async def test_session_store_without_cipher_keeps_plain_record(kv, make_session):
    store = SessionStore(kv)
    await store.save(make_session())

    assert (await kv.get("a" * 32))["access_token"] == "user-token"
    assert (await store.load("a" * 32)).username == "jane@example.com"
