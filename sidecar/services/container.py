"""
Wiring of the long-lived sidecar services.

Built once in the application lifespan and stored on ``app.state``; tests
build their own container around fakes.
"""

import os
from collections.abc import Mapping

import httpx
import redis.asyncio as redis

from sidecar.config import Settings
from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.profile_domain import Profile
from sidecar.models.domain.session_domain import Session
from sidecar.services.credential_provider import (
    CredentialProvider,
    ServiceTokenSource,
    SessionTokenSource,
)
from sidecar.services.crm.factory import build_adapter
from sidecar.services.dedup_store import DedupStore
from sidecar.services.errors import AuthError
from sidecar.services.infrastructure.encryption_service import TokenCipher
from sidecar.services.infrastructure.kv_store import (
    FileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
)
from sidecar.services.profile_registry import ProfileRegistry
from sidecar.services.profile_resolver import ProfileResolver
from sidecar.services.runtime_limits import RuntimeLimits, resolve_runtime_limits
from sidecar.services.session_service import SessionService, SessionStore
from sidecar.services.token_cache import StoreTokenTier, TieredTokenCache

logger = get_logger(__name__)


class ServiceContainer:
    def __init__(
        self,
        registry: ProfileRegistry,
        resolver: ProfileResolver,
        http_client: httpx.AsyncClient,
        credential_provider: CredentialProvider,
        session_service: SessionService | None,
        dedup_store: DedupStore,
        limits: RuntimeLimits,
        service_identity: bool = False,
        redis_client=None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.http_client = http_client
        self.credential_provider = credential_provider
        self.session_service = session_service
        self.dedup_store = dedup_store
        self.limits = limits
        self.service_identity = service_identity
        self.redis_client = redis_client

    def adapter_for(self, profile: Profile, session: Session | None = None):
        """Adapter using the session's upstream token, or the service identity without a session."""
        if session is not None:
            token_source = SessionTokenSource(session)
        else:
            token_source = ServiceTokenSource(self.credential_provider)
        return build_adapter(profile, token_source, self.http_client, self.dedup_store, self.limits)

    async def close(self) -> None:
        await self.http_client.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def _stores(settings: Settings) -> tuple[KeyValueStore, KeyValueStore, KeyValueStore, object]:
    backend = settings.STORE_BACKEND.strip().lower()
    if backend == "redis":
        if not settings.REDIS_URL:
            raise ValueError("STORE_BACKEND=redis requires REDIS_URL")
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        return (
            RedisKeyValueStore(client, "sidecar:token"),
            RedisKeyValueStore(client, "sidecar:session"),
            RedisKeyValueStore(client, "sidecar:dedup"),
            client,
        )
    if backend != "file":
        raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")
    return (
        FileKeyValueStore(settings.token_cache_dir()),
        FileKeyValueStore(settings.session_dir()),
        FileKeyValueStore(settings.dedup_dir()),
        None,
    )


def build_container(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
    registry: ProfileRegistry | None = None,
    environ: Mapping[str, str] | None = None,
) -> ServiceContainer:
    registry = registry or ProfileRegistry.from_file(
        settings.profiles_path(), os.environ if environ is None else environ
    )
    resolver = ProfileResolver(
        registry,
        strict_host_routing=settings.STRICT_HOST_ROUTING,
        trust_forwarded_host=settings.TRUST_FORWARDED_HOST,
        trusted_proxies=settings.trusted_proxy_entries(),
    )

    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT, connect=settings.UPSTREAM_CONNECT_TIMEOUT)
    )

    token_store, session_kv, dedup_kv, redis_client = _stores(settings)
    token_cache = TieredTokenCache(
        fast=StoreTokenTier(MemoryKeyValueStore(), "memory"),
        durable=StoreTokenTier(token_store, settings.STORE_BACKEND),
    )
    credential_provider = CredentialProvider(http_client, token_cache)

    cipher = TokenCipher(settings.ENCRYPTION_KEY) if settings.ENCRYPTION_KEY else None
    session_service = None
    try:
        session_service = SessionService(
            settings.SESSION_SIGNING_SECRET,
            SessionStore(session_kv, cipher),
            credential_provider,
            ttl_seconds=settings.SESSION_TTL_SECONDS,
        )
    except AuthError:
        logger.warning("SESSION_SIGNING_SECRET not set, login is disabled")

    limits = resolve_runtime_limits(settings.MAX_REQUEST_BYTES, settings.MAX_ATTACHMENT_BYTES)

    logger.info(
        "Service container built",
        profiles=registry.count(),
        store_backend=settings.STORE_BACKEND,
        auth_mode=settings.AUTH_MODE,
        max_attachment_bytes=limits.max_attachment_bytes,
    )

    return ServiceContainer(
        registry=registry,
        resolver=resolver,
        http_client=http_client,
        credential_provider=credential_provider,
        session_service=session_service,
        dedup_store=DedupStore(dedup_kv),
        limits=limits,
        service_identity=settings.uses_service_identity(),
        redis_client=redis_client,
    )
