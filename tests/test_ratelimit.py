import fakeredis
import pytest

from giftpay.model.ratelimit import new_store
from giftpay.model.ratelimit._memory import RateLimitStore


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


async def test_memory_window_allows_max_then_blocks():
    clock = Clock()
    store = RateLimitStore(clock=clock)
    results = [await store.check("1.2.3.4", 3, 60_000) for _ in range(5)]
    assert [r.allowed for r in results] == [True, True, True, False, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0, 0]


async def test_memory_window_resets_after_expiry():
    clock = Clock()
    store = RateLimitStore(clock=clock)
    for _ in range(3):
        await store.check("a", 3, 60_000)
    assert not (await store.check("a", 3, 60_000)).allowed

    clock.now += 60_001
    r = await store.check("a", 3, 60_000)
    assert r.allowed and r.remaining == 2


async def test_memory_identifiers_are_independent():
    store = RateLimitStore(clock=Clock())
    assert (await store.check("a", 1)).allowed
    assert not (await store.check("a", 1)).allowed
    assert (await store.check("b", 1)).allowed


async def test_memory_sweep_only_above_threshold():
    clock = Clock()
    store = RateLimitStore(sweep_threshold=3, clock=clock)
    for ident in "abcd":
        await store.check(ident, 10, 1_000)
    clock.now += 2_000
    # still four records: the sweep runs lazily on the next check
    assert len(store.records) == 4
    await store.check("e", 10, 1_000)
    assert set(store.records) == {"e"}


async def test_memory_reset():
    store = new_store("memory")
    await store.check("a", 1)
    await store.reset()
    assert (await store.check("a", 1)).allowed


def test_factory_rejects_unknown_backend():
    with pytest.raises(RuntimeError):
        new_store("memcached")
    with pytest.raises(RuntimeError):
        new_store("redis")


@pytest.fixture
async def redis_store():
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    store = new_store("redis", r=r)
    yield store, r
    await store.close()


async def test_redis_window_allows_max_then_blocks(redis_store):
    store, r = redis_store
    results = [await store.check("1.2.3.4", 3, 60_000) for _ in range(5)]
    assert [r_.allowed for r_ in results] == [True, True, True, False, False]
    assert results[0].remaining == 2

    ttl = await r.pttl("rl:1.2.3.4")
    assert 0 < ttl <= 60_000


async def test_redis_window_is_not_extended_by_later_hits(redis_store):
    store, r = redis_store
    await store.check("a", 5, 60_000)
    await r.pexpire("rl:a", 500)
    await store.check("a", 5, 60_000)
    assert await r.pttl("rl:a") <= 500


async def test_redis_reset_clears_only_rate_limit_keys(redis_store):
    store, r = redis_store
    await r.set("other", "1")
    await store.check("a", 1)
    await store.check("b", 1)
    await store.reset()
    assert await r.get("other") == "1"
    assert (await store.check("a", 1)).allowed
