"""
Tests for the Redis-backed distributed tier.

Uses fakeredis so no real Redis server is required.
"""
from unittest.mock import MagicMock

import fakeredis
import pytest
import redis

from axiom_cache.cache.core import CacheEntry, TierName
from axiom_cache.cache.distributed import RedisTier
from axiom_cache.errors import TierUnavailable


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis()


@pytest.fixture
def tier(redis_client, clock):
    return RedisTier(client=redis_client, key_prefix="test:artifact", clock=clock)


def test_put_then_get(tier, clock):
    tier.put(CacheEntry.create("https://example.com/a", b"\x00payload\xff", 60, now=clock()))

    got = tier.get("https://example.com/a")
    assert got.value == b"\x00payload\xff"
    assert got.origin_tier == TierName.DISTRIBUTED
    assert got.expires_at == pytest.approx(clock() + 60)


def test_get_miss(tier):
    assert tier.get("missing") is None


def test_entries_are_namespaced_and_expire_server_side(tier, redis_client, clock):
    tier.put(CacheEntry.create("k", b"v", 60, now=clock()))

    assert redis_client.exists("test:artifact:k")
    ttl_ms = redis_client.pttl("test:artifact:k")
    assert 0 < ttl_ms <= 60_000


def test_expired_entry_is_a_miss(tier, clock):
    tier.put(CacheEntry.create("k", b"v", 10, now=clock()))
    clock.advance(11)
    assert tier.get("k") is None


def test_already_expired_entry_is_not_written(tier, redis_client, clock):
    stale = CacheEntry.create("k", b"v", 10, now=clock())
    clock.advance(20)
    tier.put(stale)
    assert not redis_client.exists("test:artifact:k")


def test_delete(tier, clock):
    tier.put(CacheEntry.create("k", b"v", 60, now=clock()))
    assert tier.delete("k") is True
    assert tier.delete("k") is False
    assert tier.get("k") is None


def test_ping(tier):
    assert tier.ping() is True


def test_redis_errors_become_tier_unavailable(clock):
    client = MagicMock()
    client.hgetall.side_effect = redis.ConnectionError("connection refused")
    client.delete.side_effect = redis.ConnectionError("connection refused")
    client.pipeline.return_value.execute.side_effect = redis.TimeoutError("timed out")
    client.ping.side_effect = redis.ConnectionError("connection refused")
    tier = RedisTier(client=client, clock=clock)

    with pytest.raises(TierUnavailable):
        tier.get("k")
    with pytest.raises(TierUnavailable):
        tier.put(CacheEntry.create("k", b"v", 60, now=clock()))
    with pytest.raises(TierUnavailable):
        tier.delete("k")
    assert tier.ping() is False


def test_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisTier()
