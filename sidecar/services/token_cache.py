"""
Two-tier cache for service-identity access tokens.

Both tiers implement the same small interface over a KeyValueStore; the
tiered cache reads through the fast tier to the durable one and writes
through to both.
"""

import time
from collections.abc import Callable
from typing import Protocol

from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.services.infrastructure.kv_store import KeyValueStore

logger = get_logger(__name__)

MIN_TTL_SECONDS = 30


class CachedAccessToken(BaseModel):
    access_token: str
    expires_at: int

    def is_valid(self, now: float) -> bool:
        return bool(self.access_token) and self.expires_at > now + MIN_TTL_SECONDS


class TokenCache(Protocol):
    async def get(self, profile_id: str) -> CachedAccessToken | None: ...

    async def put(self, profile_id: str, token: CachedAccessToken) -> None: ...


class StoreTokenTier:
    """A token tier over any KeyValueStore; entries past their margin read as misses."""

    def __init__(self, store: KeyValueStore, name: str, clock: Callable[[], float] = time.time):
        self.store = store
        self.name = name
        self.clock = clock

    async def get(self, profile_id: str) -> CachedAccessToken | None:
        raw = await self.store.get(profile_id)
        if not raw:
            return None
        try:
            token = CachedAccessToken(
                access_token=raw.get("accessToken", ""), expires_at=int(raw.get("expiresAt", 0))
            )
        except (ValidationError, TypeError, ValueError):
            logger.warning("Ignoring malformed cached token", tier=self.name, profile_id=profile_id)
            return None

        if not token.is_valid(self.clock()):
            return None
        return token

    async def put(self, profile_id: str, token: CachedAccessToken) -> None:
        ttl = int(token.expires_at - self.clock())
        await self.store.put(
            profile_id,
            {"accessToken": token.access_token, "expiresAt": token.expires_at},
            ttl_seconds=ttl if ttl > 0 else None,
        )


class TieredTokenCache:
    """Read-through / write-through composition of a fast and a durable tier."""

    def __init__(self, fast: TokenCache, durable: TokenCache):
        self.fast = fast
        self.durable = durable

    async def get(self, profile_id: str) -> CachedAccessToken | None:
        token = await self.fast.get(profile_id)
        if token:
            return token

        token = await self.durable.get(profile_id)
        if token:
            logger.debug("Token cache durable hit, repopulating memory", profile_id=profile_id)
            await self.fast.put(profile_id, token)
        return token

    async def put(self, profile_id: str, token: CachedAccessToken) -> None:
        """Write both tiers. A durable write failure is logged; the memory tier still serves the token."""
        await self.fast.put(profile_id, token)
        try:
            await self.durable.put(profile_id, token)
        except (OSError, RedisError) as e:
            logger.warning(
                "Durable token cache write failed",
                profile_id=profile_id,
                error=str(e),
                error_type=type(e).__name__,
            )
