"""
Key-value persistence for pulse state.

`KVStore` is the minimal async interface the pipeline needs (get/set with
TTL, atomic incr, expire, list push). `PulseStore` layers the typed pulse
operations (snapshots, history, run meta, delta queue, daily counter) on top
of any store, so the engine never talks to a module-level client.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis

from .schemas import (
    DeltaEvent,
    HistoryEntry,
    RunMeta,
    SentimentSnapshot,
    Token,
)

logger = logging.getLogger(__name__)

SNAPSHOT_TTL_SECONDS = 45 * 60
HISTORY_TTL_SECONDS = 7 * 24 * 60 * 60
GLOBAL_LIST_TTL_SECONDS = 30 * 60
CONTEXT_TTL_SECONDS = 20 * 60
WATCHLIST_TTL_SECONDS = 15 * 60
DAILY_COUNTER_TTL_SECONDS = 48 * 60 * 60
MAX_HISTORY_ENTRIES = 50

GLOBAL_LIST_KEY = "pulse:global_list"
WATCHLIST_KEY = "pulse:watchlist:tokens"
META_LAST_RUN_KEY = "pulse:meta:last_run"
DELTA_EVENTS_KEY = "pulse:events:queue"
DAILY_CALLS_KEY_PREFIX = "pulse:meta:daily_calls"


class KVStore(ABC):
    """Async key-value store with JSON values"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer key, creating it at 1"""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        ...

    @abstractmethod
    async def rpush(self, key: str, value: Any) -> int:
        ...

    @abstractmethod
    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        ...

    async def close(self) -> None:
        pass


class InMemoryKVStore(KVStore):
    """
    Process-local store with TTL semantics.

    Used for local development and tests. The clock is injectable so expiry
    can be exercised without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> Optional[Any]:
        item = self._live(key)
        if item is None:
            return None
        # Round-trip through JSON so callers never share mutable state
        return json.loads(item[0])

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        expires_at = self._clock() + ex if ex else None
        self._data[key] = (json.dumps(value), expires_at)

    async def incr(self, key: str) -> int:
        item = self._live(key)
        if item is None:
            count, expires_at = 1, None
        else:
            count, expires_at = int(json.loads(item[0])) + 1, item[1]
        self._data[key] = (json.dumps(count), expires_at)
        return count

    async def expire(self, key: str, seconds: int) -> None:
        item = self._live(key)
        if item is not None:
            self._data[key] = (item[0], self._clock() + seconds)

    async def rpush(self, key: str, value: Any) -> int:
        item = self._live(key)
        items = json.loads(item[0]) if item else []
        items.append(value)
        self._data[key] = (json.dumps(items), item[1] if item else None)
        return len(items)

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        item = self._live(key)
        if item is None:
            return []
        items = json.loads(item[0])
        stop = None if end == -1 else end + 1
        return items[start:stop]

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, or None when the key is missing or persistent"""
        item = self._live(key)
        if item is None or item[1] is None:
            return None
        return item[1] - self._clock()


class RedisKVStore(KVStore):
    """Redis-backed store; values are stored as JSON strings"""

    def __init__(self, url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None):
        self._redis = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        await self._redis.set(key, json.dumps(value), ex=ex)

    async def incr(self, key: str) -> int:
        return int(await self._redis.incr(key))

    async def expire(self, key: str, seconds: int) -> None:
        await self._redis.expire(key, seconds)

    async def rpush(self, key: str, value: Any) -> int:
        return int(await self._redis.rpush(key, json.dumps(value)))

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        raw_items = await self._redis.lrange(key, start, end)
        return [json.loads(item) for item in raw_items]

    async def close(self) -> None:
        await self._redis.aclose()


def daily_counter_key(now: Optional[datetime] = None) -> str:
    """Counter key for the current UTC calendar date"""
    now = now or datetime.now(timezone.utc)
    return f"{DAILY_CALLS_KEY_PREFIX}:{now.strftime('%Y-%m-%d')}"


class PulseStore:
    """Typed pulse operations over a `KVStore`"""

    def __init__(self, kv: KVStore, max_history: int = MAX_HISTORY_ENTRIES):
        self.kv = kv
        self.max_history = max_history

    # --- Snapshots ---

    async def get_current_snapshot(self, address: str) -> Optional[SentimentSnapshot]:
        if not address:
            return None
        data = await self.kv.get(f"sentiment:{address}")
        if data is None:
            return None
        return SentimentSnapshot.model_validate(data)

    async def set_current_snapshot(self, address: str, snapshot: SentimentSnapshot) -> None:
        await self.kv.set(f"sentiment:{address}", snapshot.to_dict(), ex=SNAPSHOT_TTL_SECONDS)

    # --- History ---

    async def get_history(self, address: str) -> List[HistoryEntry]:
        if not address:
            return []
        data = await self.kv.get(f"sentiment:history:{address}")
        return [HistoryEntry.model_validate(item) for item in data or []]

    async def append_history(self, address: str, entry: HistoryEntry) -> None:
        """Append an entry, keeping only the most recent `max_history` items"""
        history = await self.get_history(address)
        history.append(entry)
        trimmed = history[-self.max_history:]
        await self.kv.set(
            f"sentiment:history:{address}",
            [item.model_dump() for item in trimmed],
            ex=HISTORY_TTL_SECONDS,
        )

    # --- Token context cache ---

    async def cache_token_context(self, address: str, context: str) -> None:
        await self.kv.set(f"sentiment:context:{address}", context, ex=CONTEXT_TTL_SECONDS)

    async def get_cached_token_context(self, address: str) -> Optional[str]:
        cached = await self.kv.get(f"sentiment:context:{address}")
        return cached if isinstance(cached, str) and cached else None

    # --- Token lists ---

    async def set_global_list(self, tokens: List[Token]) -> None:
        await self.kv.set(
            GLOBAL_LIST_KEY,
            [token.model_dump() for token in tokens],
            ex=GLOBAL_LIST_TTL_SECONDS,
        )

    async def get_global_list(self) -> List[Token]:
        data = await self.kv.get(GLOBAL_LIST_KEY)
        return [Token.model_validate(item) for item in data or []]

    async def set_watchlist_tokens(self, tokens: List[Token]) -> None:
        await self.kv.set(
            WATCHLIST_KEY,
            [token.model_dump() for token in tokens],
            ex=WATCHLIST_TTL_SECONDS,
        )

    async def get_watchlist_tokens(self) -> List[Token]:
        data = await self.kv.get(WATCHLIST_KEY)
        return [Token.model_validate(item) for item in data or []]

    # --- Run meta ---

    async def set_meta_last_run(self, meta: RunMeta) -> None:
        await self.kv.set(META_LAST_RUN_KEY, meta.model_dump())

    async def get_meta_last_run(self) -> Optional[RunMeta]:
        data = await self.kv.get(META_LAST_RUN_KEY)
        if data is None:
            return None
        return RunMeta.model_validate(data)

    # --- Delta events ---

    async def push_delta_event(self, event: DeltaEvent) -> None:
        await self.kv.rpush(DELTA_EVENTS_KEY, event.model_dump(by_alias=True))

    async def get_delta_events(self) -> List[DeltaEvent]:
        """Read the queue without consuming it"""
        items = await self.kv.lrange(DELTA_EVENTS_KEY, 0, -1)
        return [DeltaEvent.model_validate(item) for item in items]

    # --- Daily call counter ---

    async def get_and_increment_daily_call_counter(self, now: Optional[datetime] = None) -> int:
        """
        Atomically bump today's Grok call counter.

        The 48h expiry is attached only on the first increment of the day.

        Returns:
            The counter value after incrementing
        """
        key = daily_counter_key(now)
        count = await self.kv.incr(key)
        if count == 1:
            await self.kv.expire(key, DAILY_COUNTER_TTL_SECONDS)
        return count
