"""Pick the CRM adapter for a profile."""

import httpx

from sidecar.models.domain.profile_domain import Profile
from sidecar.services.credential_provider import AccessTokenSource
from sidecar.services.crm.mock_adapter import MockAdapter
from sidecar.services.crm.v8_adapter import V8Adapter
from sidecar.services.crm.v8_client import V8Client
from sidecar.services.dedup_store import DedupStore
from sidecar.services.runtime_limits import RuntimeLimits


def build_adapter(
    profile: Profile,
    token_source: AccessTokenSource,
    http_client: httpx.AsyncClient,
    dedup_store: DedupStore,
    limits: RuntimeLimits,
) -> V8Adapter | MockAdapter:
    if not profile.is_v8:
        return MockAdapter(profile)
    client = V8Client(profile, token_source, http_client)
    return V8Adapter(profile, client, dedup_store, limits)
