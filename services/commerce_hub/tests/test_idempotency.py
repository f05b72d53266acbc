"""Idempotency keys in Redis: first writer wins, keys expire."""
import asyncio
import logging
from unittest.mock import AsyncMock

from app.idempotency import DEFAULT_TTL_SECONDS, IdempotencyStore


class FakeRedis:
    """Just enough of redis.asyncio.Redis for SET NX EX and GET."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True


def test_unknown_key_has_no_order():
    store = IdempotencyStore(FakeRedis())

    assert asyncio.run(store.get_order_id("idem-001")) is None


def test_stored_key_maps_to_order():
    store = IdempotencyStore(FakeRedis())

    assert asyncio.run(store.store("idem-001", "order-1")) is True
    assert asyncio.run(store.get_order_id("idem-001")) == "order-1"


def test_first_writer_wins(caplog):
    store = IdempotencyStore(FakeRedis())
    asyncio.run(store.store("idem-001", "order-1"))

    with caplog.at_level(logging.WARNING):
        stored = asyncio.run(store.store("idem-001", "order-2"))

    assert stored is False
    assert asyncio.run(store.get_order_id("idem-001")) == "order-1"
    assert "idem-001" in caplog.text


def test_keys_are_prefixed_and_expire_after_a_day():
    redis = FakeRedis()

    asyncio.run(IdempotencyStore(redis).store("idem-001", "order-1"))

    assert redis.ttls == {"idempotency:idem-001": 86400}
    assert DEFAULT_TTL_SECONDS == 86400


def test_ttl_and_prefix_are_configurable():
    redis = AsyncMock()
    redis.set.return_value = True
    store = IdempotencyStore(redis, ttl_seconds=60, prefix="checkout")

    asyncio.run(store.store("idem-001", "order-1"))

    redis.set.assert_awaited_once_with("checkout:idem-001", "order-1", nx=True, ex=60)


def test_overwrite_reassigns_a_taken_key():
    redis = FakeRedis()
    store = IdempotencyStore(redis)
    asyncio.run(store.store("idem-001", "order-gone"))

    stored = asyncio.run(store.store("idem-001", "order-2", overwrite=True))

    assert stored is True
    assert asyncio.run(store.get_order_id("idem-001")) == "order-2"
    assert redis.ttls["idempotency:idem-001"] == 86400
