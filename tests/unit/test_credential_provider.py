"""
Upstream credential acquisition against a fake token endpoint.
"""

import httpx
import pytest

from sidecar.services.credential_provider import (
    DEFAULT_EXPIRES_IN,
    CredentialProvider,
    SessionTokenSource,
    classify_token_failure,
)
from sidecar.services.errors import (
    MissingCredentials,
    UpstreamAuthError,
    UpstreamBadResponse,
    UpstreamUnreachable,
)
from sidecar.services.infrastructure.kv_store import MemoryKeyValueStore
from sidecar.services.profile_registry import build_profile
from sidecar.services.token_cache import StoreTokenTier, TieredTokenCache


@pytest.mark.parametrize(
    "status,body,expected",
    [
        (400, "", 401),
        (401, "", 401),
        (403, "", 502),
        (500, '{"error":"invalid_client"}', 401),
        (500, "The user password is invalid: hunter2", 401),
        (503, "Service Unavailable", 502),
        (502, None, 502),
    ],
)
def test_classify_token_failure(status, body, expected):
    assert classify_token_failure(status, body) == expected


@pytest.mark.asyncio
async def test_service_token_is_cached(fake_crm, profile, credential_provider):
    first = await credential_provider.get_service_token(profile)
    second = await credential_provider.get_service_token(profile)

    assert first == second == "service-token"
    assert len(fake_crm.token_requests) == 1
    assert fake_crm.token_requests[0] == {
        "grant_type": "client_credentials",
        "client_id": "client-1",
        "client_secret": "secret-1",
    }


@pytest.mark.asyncio
async def test_missing_client_credentials_makes_no_request(fake_crm, make_entry, credential_provider):
    profile = build_profile(make_entry(oauth={"clientId": "client-1"}), environ={})

    with pytest.raises(MissingCredentials) as exc_info:
        await credential_provider.get_service_token(profile)

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Missing OAuth client credentials"
    assert fake_crm.requests == []


@pytest.mark.asyncio
async def test_unsupported_grant_type_is_rejected(fake_crm, make_entry, credential_provider):
    profile = build_profile(
        make_entry(oauth={"clientId": "a", "clientSecret": "b", "grantType": "password"}), environ={}
    )
    with pytest.raises(UpstreamAuthError):
        await credential_provider.get_service_token(profile)
    assert fake_crm.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,expected",
    [
        (401, {"error": "invalid_client"}, 401),
        (500, "invalid_grant: The user credentials were incorrect", 401),
        (503, "upstream maintenance", 502),
    ],
)
async def test_token_failures_are_classified(fake_crm, profile, credential_provider, status, body, expected):
    fake_crm.token_status = status
    fake_crm.token_body = body

    with pytest.raises(UpstreamAuthError) as exc_info:
        await credential_provider.get_service_token(profile)

    assert exc_info.value.status_code == expected


@pytest.mark.asyncio
async def test_transport_failure_is_unreachable(profile, token_cache):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = CredentialProvider(client, token_cache)

    with pytest.raises(UpstreamUnreachable):
        await provider.get_service_token(profile)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["<html>oops</html>", {"token_type": "Bearer"}, {"access_token": ""}])
async def test_unusable_token_body_is_bad_response(fake_crm, profile, credential_provider, body):
    fake_crm.token_body = body
    with pytest.raises(UpstreamBadResponse):
        await credential_provider.get_service_token(profile)


@pytest.mark.asyncio
async def test_missing_expires_in_defaults(fake_crm, profile, token_cache):
    fake_crm.token_body = {"access_token": "abc"}
    provider = CredentialProvider(fake_crm.client(), token_cache, clock=lambda: 1_000.0)

    await provider.get_service_token(profile)

    cached = await token_cache.durable.store.get("acme")
    assert cached["expiresAt"] == 1_000 + DEFAULT_EXPIRES_IN


@pytest.mark.asyncio
async def test_password_login_is_not_cached(fake_crm, profile, credential_provider, token_cache):
    fake_crm.token_body = {"access_token": "user-abc", "refresh_token": "r-1", "expires_in": 600}

    tokens = await credential_provider.login_with_password(profile, "jane@example.com", "pw")

    assert tokens.access_token == "user-abc"
    assert tokens.refresh_token == "r-1"
    assert fake_crm.token_requests[0]["grant_type"] == "password"
    assert fake_crm.token_requests[0]["username"] == "jane@example.com"
    assert fake_crm.token_requests[0]["password"] == "pw"
    assert await token_cache.get("acme") is None


@pytest.mark.asyncio
async def test_session_token_source(profile, make_session):
    now = 1_000.0
    source = SessionTokenSource(make_session(token_expires_at=2_000), clock=lambda: now)
    assert await source.get_access_token(profile) == "user-token"

    with pytest.raises(UpstreamAuthError):
        await SessionTokenSource(make_session(profile_id="other"), clock=lambda: now).get_access_token(profile)

    with pytest.raises(UpstreamAuthError, match="expired"):
        await SessionTokenSource(
            make_session(token_expires_at=1_020), clock=lambda: now
        ).get_access_token(profile)

    with pytest.raises(UpstreamAuthError):
        await SessionTokenSource(make_session(access_token=""), clock=lambda: now).get_access_token(profile)


class _FailingTier:
    async def get(self, profile_id):
        return None

    async def put(self, profile_id, token):
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_service_token_refreshed_once_inside_expiry_margin(fake_crm, profile):
    now = [1_000.0]

    def clock():
        return now[0]

    cache = TieredTokenCache(
        fast=StoreTokenTier(MemoryKeyValueStore(), "memory", clock=clock),
        durable=StoreTokenTier(MemoryKeyValueStore(), "durable", clock=clock),
    )
    provider = CredentialProvider(fake_crm.client(), cache, clock=clock)
    fake_crm.token_body = {"access_token": "first", "expires_in": 600}

    assert await provider.get_service_token(profile) == "first"
    now[0] = 1_569.0
    assert await provider.get_service_token(profile) == "first"
    assert len(fake_crm.token_requests) == 1

    fake_crm.token_body = {"access_token": "second", "expires_in": 600}
    now[0] = 1_571.0
    assert await provider.get_service_token(profile) == "second"
    assert await provider.get_service_token(profile) == "second"
    assert len(fake_crm.token_requests) == 2


@pytest.mark.asyncio
async def test_durable_cache_write_failure_still_returns_token(fake_crm, profile):
    cache = TieredTokenCache(fast=StoreTokenTier(MemoryKeyValueStore(), "memory"), durable=_FailingTier())
    provider = CredentialProvider(fake_crm.client(), cache)

    assert await provider.get_service_token(profile) == "service-token"
    assert await provider.get_service_token(profile) == "service-token"
    assert len(fake_crm.token_requests) == 1
