"""Unit tests for the read-through cache."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tenant_jobs.cache import CacheBackend, CacheKeys, CacheLayer, MemoryCacheBackend, RedisCacheBackend


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheLayer(MemoryCacheBackend(clock=clock))


def counting_loader(value):
    calls = []

    async def load():
        calls.append(1)
        return value

    return load, calls


def test_cache_keys():
    assert CacheKeys.subscription("t1") == "subscription:t1"
    assert CacheKeys.plan("t1") == "plan:t1"
    assert CacheKeys.quota("t1", "max_campaigns") == "quota:t1:max_campaigns"
    assert CacheKeys.tenant_prefix("quota", "t1") == "quota:t1:"


@pytest.mark.asyncio
async def test_read_through_hits_after_first_load(cache):
    load, calls = counting_loader({"plan_id": "pro"})

    assert await cache.get_or_load("plan:t1", 60, load) == {"plan_id": "pro"}
    assert await cache.get_or_load("plan:t1", 60, load) == {"plan_id": "pro"}

    assert len(calls) == 1
    assert cache.stats["hits"] == 1
    assert cache.stats["misses"] == 1


@pytest.mark.asyncio
async def test_entry_expires_after_ttl(cache, clock):
    load, calls = counting_loader("v")
    await cache.get_or_load("plan:t1", 60, load)

    clock.now += 61
    await cache.get_or_load("plan:t1", 60, load)

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalidate_forces_reload(cache):
    load, calls = counting_loader("v")
    await cache.get_or_load("plan:t1", 60, load)

    await cache.invalidate("plan:t1")
    await cache.get_or_load("plan:t1", 60, load)

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_none_is_cached(cache):
    load, calls = counting_loader(None)
    assert await cache.get_or_load("subscription:t1", 60, load) is None
    assert await cache.get_or_load("subscription:t1", 60, load) is None
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_invalidate_tenant_covers_sub_keys(cache):
    load, _ = counting_loader(1)
    for key in ("plan:t1", "subscription:t1", "quota:t1:max_campaigns", "quota:t1:max_reports", "quota:t2:max_reports"):
        await cache.get_or_load(key, 60, load)

    await cache.invalidate_tenant("t1", domains=("subscription", "plan", "quota"))

    assert len(cache.backend) == 1
    assert await cache.backend.get("quota:t2:max_reports") is not None


@pytest.mark.asyncio
async def test_invalidate_prefix_only_matches_prefix(cache):
    load, _ = counting_loader(1)
    await cache.get_or_load("quota:t1:a", 60, load)
    await cache.get_or_load("quota:t10:a", 60, load)

    removed = await cache.invalidate_prefix("quota:t1:")

    assert removed == 1
    assert await cache.backend.get("quota:t10:a") is not None


@pytest.mark.asyncio
async def test_load_overlapping_invalidation_is_not_stored(cache):
    """A value read before an invalidation must not repopulate the cache."""
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_load():
        started.set()
        await release.wait()
        return "stale"

    task = asyncio.create_task(cache.get_or_load("plan:t1", 60, slow_load))
    await started.wait()
    await cache.invalidate("plan:t1")
    release.set()

    assert await task == "stale"
    assert await cache.backend.get("plan:t1") is None


@pytest.mark.asyncio
async def test_backend_outage_falls_back_to_loader():
    backend = MagicMock(spec=CacheBackend)
    backend.get = AsyncMock(side_effect=ConnectionError("redis down"))
    backend.set = AsyncMock(side_effect=ConnectionError("redis down"))
    backend.delete = AsyncMock(side_effect=ConnectionError("redis down"))
    cache = CacheLayer(backend)
    load, calls = counting_loader({"plan_id": "free"})

    assert await cache.get_or_load("plan:t1", 60, load) == {"plan_id": "free"}
    await cache.invalidate("plan:t1")

    assert len(calls) == 1
    assert cache.stats["errors"] == 3


@pytest.mark.asyncio
async def test_loader_errors_propagate(cache):
    async def failing_load():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        await cache.get_or_load("plan:t1", 60, failing_load)
    assert await cache.backend.get("plan:t1") is None


@pytest.mark.asyncio
async def test_set_overwrites(cache):
    load, calls = counting_loader("old")
    await cache.get_or_load("plan:t1", 60, load)
    await cache.set("plan:t1", "new", 60)

    assert await cache.get_or_load("plan:t1", 60, load) == "new"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_redis_backend_round_trip():
    client = MagicMock()
    client.set = AsyncMock()
    backend = RedisCacheBackend(client, namespace="tj")

    await backend.set("plan:t1", {"plan_id": "pro"}, ttl=30, version=4)

    key, body = client.set.call_args.args
    assert key == "tj:plan:t1"
    assert client.set.call_args.kwargs["px"] == 30000

    client.get = AsyncMock(return_value=body)
    entry = await backend.get("plan:t1")
    assert entry.value == {"plan_id": "pro"}
    assert entry.version == 4
    client.get.assert_awaited_once_with("tj:plan:t1")


@pytest.mark.asyncio
async def test_redis_backend_delete_prefix():
    async def scan_iter(match, count):
        assert match == "tj:quota:t1:*"
        for key in ("tj:quota:t1:a", "tj:quota:t1:b"):
            yield key

    client = MagicMock()
    client.scan_iter = scan_iter
    client.delete = AsyncMock(return_value=2)
    backend = RedisCacheBackend(client, namespace="tj")

    assert await backend.delete_prefix("quota:t1:") == 2
    client.delete.assert_awaited_once_with("tj:quota:t1:a", "tj:quota:t1:b")


def test_empty_backend_is_used():
    backend = MemoryCacheBackend()
    assert len(backend) == 0
    assert CacheLayer(backend).backend is backend


@pytest.mark.asyncio
async def test_memory_backend_evicts_least_recently_used(clock):
    backend = MemoryCacheBackend(maxsize=2, clock=clock)
    await backend.set("plan:t1", 1, ttl=60, version=0)
    await backend.set("plan:t2", 2, ttl=60, version=0)
    await backend.get("plan:t1")
    await backend.set("plan:t3", 3, ttl=60, version=0)

    assert len(backend) == 2
    assert await backend.get("plan:t2") is None
    assert (await backend.get("plan:t1")).value == 1


@pytest.mark.asyncio
async def test_memory_backend_drops_expired_entries(clock):
    backend = MemoryCacheBackend(clock=clock)
    for n in range(100):
        await backend.set(f"quota:t{n}:max_reports", n, ttl=1, version=0)

    clock.now += 2
    await backend.set("plan:t1", "live", ttl=60, version=0)

    assert len(backend) == 1
    assert await backend.get("quota:t0:max_reports") is None


@pytest.mark.asyncio
async def test_memory_backend_skips_zero_ttl(clock):
    backend = MemoryCacheBackend(clock=clock)
    await backend.set("plan:t1", "v", ttl=0, version=0)
    assert await backend.get("plan:t1") is None


@pytest.mark.asyncio
async def test_invalidating_another_key_keeps_load(cache):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_load():
        started.set()
        await release.wait()
        return {"plan_id": "pro"}

    task = asyncio.create_task(cache.get_or_load("plan:t1", 60, slow_load))
    await started.wait()
    await cache.invalidate("quota:t1:max_reports")
    await cache.invalidate_prefix("quota:t1:")
    release.set()

    await task
    assert (await cache.backend.get("plan:t1")).value == {"plan_id": "pro"}


@pytest.mark.asyncio
async def test_prefix_invalidation_overlapping_load_is_not_stored(cache):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_load():
        started.set()
        await release.wait()
        return 5

    task = asyncio.create_task(cache.get_or_load("quota:t1:max_reports", 60, slow_load))
    await started.wait()
    await cache.invalidate_tenant("t1", domains=("quota",))
    release.set()

    assert await task == 5
    assert await cache.backend.get("quota:t1:max_reports") is None


@pytest.mark.asyncio
async def test_load_bookkeeping_is_cleared(cache):
    load, _ = counting_loader(1)
    await cache.get_or_load("plan:t1", 60, load)

    async def failing_load():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        await cache.get_or_load("plan:t2", 60, failing_load)

    assert cache._loading == {}
    assert cache._generations == {}
