"""
Key-value stores and the two-tier service token cache.
"""

import pytest

from sidecar.services.infrastructure.kv_store import (
    FileKeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
    safe_segment,
)
from sidecar.services.token_cache import CachedAccessToken, StoreTokenTier, TieredTokenCache


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the store."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0


def test_safe_segment():
    assert safe_segment("acme") == "acme"
    assert safe_segment("../etc/passwd") == "_etc_passwd"
    assert safe_segment("...") == "_"


@pytest.mark.asyncio
async def test_file_store_roundtrip_and_subdirectories(tmp_path):
    store = FileKeyValueStore(tmp_path)

    await store.put("acme/task-internet-abc", {"task": {"id": "t1"}})

    assert (tmp_path / "acme" / "task-internet-abc.json").exists()
    assert await store.get("acme/task-internet-abc") == {"task": {"id": "t1"}}
    assert await store.delete("acme/task-internet-abc") is True
    assert await store.get("acme/task-internet-abc") is None
    assert await store.delete("acme/task-internet-abc") is False


@pytest.mark.asyncio
async def test_file_store_corrupt_or_non_object_reads_as_missing(tmp_path):
    store = FileKeyValueStore(tmp_path)
    (tmp_path / "broken.json").write_text("{not json")
    (tmp_path / "listy.json").write_text("[1, 2]")

    assert await store.get("broken") is None
    assert await store.get("listy") is None
    assert await store.get("absent") is None


@pytest.mark.asyncio
async def test_file_store_overwrite_leaves_no_temp_files(tmp_path):
    store = FileKeyValueStore(tmp_path)
    await store.put("key", {"v": 1})
    await store.put("key", {"v": 2})

    assert await store.get("key") == {"v": 2}
    assert not list(tmp_path.glob(".tmp-*"))


def test_file_store_rejects_empty_key(tmp_path):
    with pytest.raises(ValueError):
        FileKeyValueStore(tmp_path).path_for("//")


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    store = MemoryKeyValueStore()
    await store.put("k", {"a": 1})

    value = await store.get("k")
    value["a"] = 2

    assert await store.get("k") == {"a": 1}
    assert len(store) == 1


@pytest.mark.asyncio
async def test_redis_store_prefix_and_ttl():
    client = FakeRedis()
    store = RedisKeyValueStore(client, "sidecar:tokens:")

    await store.put("acme", {"accessToken": "abc"}, ttl_seconds=120)
    await store.put("plain", {"x": 1})

    assert client.ttls == {"sidecar:tokens:acme": 120}
    assert await store.get("acme") == {"accessToken": "abc"}
    assert await store.delete("acme") is True
    assert await store.get("acme") is None


@pytest.mark.asyncio
async def test_redis_store_ignores_corrupt_values():
    client = FakeRedis()
    client.data["p:bad"] = "{oops"
    assert await RedisKeyValueStore(client, "p").get("bad") is None


def test_cached_token_margin():
    token = CachedAccessToken(access_token="abc", expires_at=1_000)

    assert token.is_valid(969)
    assert not token.is_valid(970)
    assert not CachedAccessToken(access_token="", expires_at=10_000).is_valid(0)


@pytest.mark.asyncio
async def test_token_tier_treats_near_expiry_as_miss():
    now = [1_000.0]
    tier = StoreTokenTier(MemoryKeyValueStore(), "memory", clock=lambda: now[0])

    await tier.put("acme", CachedAccessToken(access_token="abc", expires_at=1_100))
    assert (await tier.get("acme")).access_token == "abc"

    now[0] = 1_075.0
    assert await tier.get("acme") is None


@pytest.mark.asyncio
async def test_token_tier_ignores_malformed_entries():
    store = MemoryKeyValueStore()
    await store.put("acme", {"accessToken": "abc", "expiresAt": "soon"})
    assert await StoreTokenTier(store, "durable").get("acme") is None


@pytest.mark.asyncio
async def test_tiered_cache_repopulates_fast_tier_from_durable():
    fast_store = MemoryKeyValueStore()
    durable_store = MemoryKeyValueStore()
    clock = lambda: 1_000.0  # noqa: E731
    cache = TieredTokenCache(
        fast=StoreTokenTier(fast_store, "memory", clock=clock),
        durable=StoreTokenTier(durable_store, "durable", clock=clock),
    )
    await durable_store.put("acme", {"accessToken": "from-disk", "expiresAt": 5_000})

    token = await cache.get("acme")

    assert token.access_token == "from-disk"
    assert await fast_store.get("acme") == {"accessToken": "from-disk", "expiresAt": 5_000}


@pytest.mark.asyncio
async def test_tiered_cache_writes_through_both_tiers():
    fast_store = MemoryKeyValueStore()
    durable_store = MemoryKeyValueStore()
    cache = TieredTokenCache(
        fast=StoreTokenTier(fast_store, "memory"),
        durable=StoreTokenTier(durable_store, "durable"),
    )

    await cache.put("acme", CachedAccessToken(access_token="abc", expires_at=4_000_000_000))

    assert len(fast_store) == 1
    assert len(durable_store) == 1
