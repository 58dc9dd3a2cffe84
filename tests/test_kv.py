"""
Tests for the KV layer and typed pulse persistence.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import make_snapshot
from grok_pulse.kv import (
    CONTEXT_TTL_SECONDS,
    DAILY_COUNTER_TTL_SECONDS,
    GLOBAL_LIST_KEY,
    META_LAST_RUN_KEY,
    SNAPSHOT_TTL_SECONDS,
    PulseStore,
    RedisKVStore,
    daily_counter_key,
)
from grok_pulse.schemas import DeltaEvent, HistoryEntry, RunMeta, Token


@pytest.mark.asyncio
async def test_snapshot_expires_after_ttl(store, kv, clock):
    await store.set_current_snapshot("addr", make_snapshot(score=42))

    assert kv.ttl("sentiment:addr") == SNAPSHOT_TTL_SECONDS
    assert (await store.get_current_snapshot("addr")).score == 42

    clock.advance(SNAPSHOT_TTL_SECONDS)
    assert await store.get_current_snapshot("addr") is None


@pytest.mark.asyncio
async def test_empty_address_reads_nothing(store):
    assert await store.get_current_snapshot("") is None
    assert await store.get_history("") == []


@pytest.mark.asyncio
async def test_history_is_trimmed_to_most_recent_entries(kv):
    store = PulseStore(kv, max_history=50)
    for i in range(55):
        await store.append_history("addr", HistoryEntry(ts=i, score=i))

    history = await store.get_history("addr")
    assert len(history) == 50
    assert history[0].ts == 5
    assert history[-1].ts == 54


@pytest.mark.asyncio
async def test_context_cache_round_trip_and_expiry(store, clock):
    await store.cache_token_context("addr", "Token: BONK (addr)")
    assert await store.get_cached_token_context("addr") == "Token: BONK (addr)"

    clock.advance(CONTEXT_TTL_SECONDS + 1)
    assert await store.get_cached_token_context("addr") is None


@pytest.mark.asyncio
async def test_global_list_and_watchlist(store, kv):
    tokens = [Token(address="a1", symbol="ONE"), Token(address="a2", symbol="TWO")]
    await store.set_global_list(tokens)
    await store.set_watchlist_tokens(tokens[:1])

    assert await store.get_global_list() == tokens
    assert await store.get_watchlist_tokens() == tokens[:1]
    assert kv.ttl(GLOBAL_LIST_KEY) is not None


@pytest.mark.asyncio
async def test_meta_last_run_has_no_expiry(store, kv, clock):
    await store.set_meta_last_run(RunMeta(ts=1, success=2, failed=1, total_calls=3))

    assert kv.ttl(META_LAST_RUN_KEY) is None
    clock.advance(365 * 24 * 60 * 60)
    meta = await store.get_meta_last_run()
    assert meta == RunMeta(ts=1, success=2, failed=1, total_calls=3)


@pytest.mark.asyncio
async def test_delta_events_queue_in_push_order(store):
    first = DeltaEvent(address="a", symbol="A", previous_score=10, new_score=50, delta=40, ts=1)
    second = DeltaEvent(address="b", symbol="B", previous_score=0, new_score=-35, delta=-35, ts=2)
    await store.push_delta_event(first)
    await store.push_delta_event(second)

    assert await store.get_delta_events() == [first, second]
    # Reading does not consume
    assert len(await store.get_delta_events()) == 2


@pytest.mark.asyncio
async def test_daily_counter_sets_expiry_once(store, kv, clock):
    now = datetime(2024, 3, 9, 23, 59, tzinfo=timezone.utc)
    key = daily_counter_key(now)
    assert key == "pulse:meta:daily_calls:2024-03-09"

    assert await store.get_and_increment_daily_call_counter(now) == 1
    assert kv.ttl(key) == DAILY_COUNTER_TTL_SECONDS

    clock.advance(60)
    assert await store.get_and_increment_daily_call_counter(now) == 2
    # Second increment keeps the original deadline
    assert kv.ttl(key) == DAILY_COUNTER_TTL_SECONDS - 60

    next_day = datetime(2024, 3, 10, 0, 1, tzinfo=timezone.utc)
    assert await store.get_and_increment_daily_call_counter(next_day) == 1


@pytest.mark.asyncio
async def test_redis_store_serializes_json():
    client = AsyncMock()
    client.get.return_value = '{"ts": 1, "score": 2}'
    client.incr.return_value = 3
    client.lrange.return_value = ['{"a": 1}', '{"b": 2}']
    kv = RedisKVStore(client=client)

    await kv.set("k", {"x": 1}, ex=10)
    client.set.assert_awaited_once_with("k", '{"x": 1}', ex=10)
    assert await kv.get("k") == {"ts": 1, "score": 2}
    assert await kv.incr("counter") == 3
    assert await kv.lrange("list") == [{"a": 1}, {"b": 2}]
    client.lrange.assert_awaited_once_with("list", 0, -1)

    await kv.close()
    client.aclose.assert_awaited_once()
