import asyncio

import pytest
from redis.exceptions import WatchError

from domain.payment.enums import TradeStatus
from domain.payment.order_state import can_transition
from infrastructure.repositories.order_state_store import InMemoryOrderStateStore, RedisOrderStateStore


def test_transition_rules():
    assert can_transition(None, TradeStatus.NOTPAY)
    assert can_transition(TradeStatus.NOTPAY, TradeStatus.SUCCESS)
    assert can_transition(TradeStatus.SUCCESS, TradeStatus.REFUND)
    assert not can_transition(TradeStatus.SUCCESS, TradeStatus.SUCCESS)
    assert not can_transition(TradeStatus.SUCCESS, TradeStatus.NOTPAY)
    assert not can_transition(TradeStatus.CLOSED, TradeStatus.SUCCESS)


def test_final_states_accept_nothing():
    for final in (TradeStatus.CLOSED, TradeStatus.REVOKED, TradeStatus.REFUND):
        assert not any(can_transition(final, target) for target in TradeStatus)


@pytest.mark.asyncio
async def test_concurrent_duplicates_apply_once():
    store = InMemoryOrderStateStore()
    results = await asyncio.gather(*(store.transition("T-1", TradeStatus.SUCCESS) for _ in range(10)))
    assert results.count(True) == 1
    assert await store.get("T-1") is TradeStatus.SUCCESS


@pytest.mark.asyncio
async def test_orders_are_independent():
    store = InMemoryOrderStateStore()
    assert await store.transition("T-1", TradeStatus.CLOSED)
    assert await store.transition("T-2", TradeStatus.SUCCESS)
    assert await store.get("T-1") is TradeStatus.CLOSED
    assert await store.get("T-3") is None


@pytest.mark.asyncio
async def test_order_locks_are_released():
    store = InMemoryOrderStateStore()
    await asyncio.gather(*(store.transition(f"T-{i % 3}", TradeStatus.SUCCESS) for i in range(30)))
    assert not await store.transition("T-0", TradeStatus.NOTPAY)
    assert store._locks == {}
    assert store._lock_users == {}


class _FakeRedis:
    """Optimistic transactions as redis.asyncio.Redis runs them: WATCH, MULTI, EXEC."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.versions = {}
        self.conflicts = 0
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    def pipeline(self, transaction=True):
        assert transaction
        return _FakePipeline(self)

    async def aclose(self):
        self.closed = True


class _FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._watched = {}
        self._queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._watched.clear()
        self._queued.clear()

    async def watch(self, key):
        self._watched[key] = self._redis.versions.get(key, 0)

    async def get(self, key):
        value = self._redis.data.get(key)
        # Yield so concurrent transactions interleave between read and write
        await asyncio.sleep(0)
        return value

    def multi(self):
        self._queued = []

    def set(self, key, value, ex=None):
        self._queued.append((key, value, ex))

    async def execute(self):
        watched, self._watched = self._watched, {}
        queued, self._queued = self._queued, []
        if any(self._redis.versions.get(key, 0) != version for key, version in watched.items()):
            self._redis.conflicts += 1
            raise WatchError("Watched variable changed.")
        for key, value, ex in queued:
            self._redis.data[key] = value
            self._redis.expiry[key] = ex
            self._redis.versions[key] = self._redis.versions.get(key, 0) + 1
        return [True] * len(queued)


@pytest.fixture
def redis_client():
    return _FakeRedis()


@pytest.fixture
def redis_store(redis_client):
    return RedisOrderStateStore(redis_client, key_prefix="test:order", ttl_seconds=3600)


@pytest.mark.asyncio
async def test_redis_transition_writes_with_ttl(redis_store, redis_client):
    assert await redis_store.transition("T-1", TradeStatus.SUCCESS)
    assert redis_client.data == {"test:order:T-1": "SUCCESS"}
    assert redis_client.expiry["test:order:T-1"] == 3600
    assert await redis_store.get("T-1") is TradeStatus.SUCCESS
    assert await redis_store.get("T-2") is None


@pytest.mark.asyncio
async def test_redis_duplicate_and_regression_are_ignored(redis_store, redis_client):
    assert await redis_store.transition("T-1", TradeStatus.SUCCESS)
    assert not await redis_store.transition("T-1", TradeStatus.SUCCESS)
    assert not await redis_store.transition("T-1", TradeStatus.NOTPAY)
    assert await redis_store.get("T-1") is TradeStatus.SUCCESS
    assert redis_client.versions["test:order:T-1"] == 1

    assert await redis_store.transition("T-1", TradeStatus.REFUND)
    assert await redis_store.get("T-1") is TradeStatus.REFUND


@pytest.mark.asyncio
async def test_redis_concurrent_duplicates_apply_once(redis_store, redis_client):
    results = await asyncio.gather(*(redis_store.transition("T-1", TradeStatus.SUCCESS) for _ in range(10)))

    assert results.count(True) == 1
    assert redis_client.conflicts > 0
    assert redis_client.versions["test:order:T-1"] == 1
    assert await redis_store.get("T-1") is TradeStatus.SUCCESS


@pytest.mark.asyncio
async def test_redis_store_closes_client(redis_store, redis_client):
    await redis_store.aclose()
    assert redis_client.closed
