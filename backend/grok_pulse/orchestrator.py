"""
Pulse Orchestrator: Coordinates the scheduled sentiment run.

Flow:
1. Build and persist the deduplicated token universe
2. Check the daily Grok call ceiling
3. Score tokens in sequential batches of concurrent requests
4. Compare against prior state, push delta events, persist snapshots
5. Persist run meta and return counters
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

import httpx

from .config import PulseSettings
from .context_builder import build_enhanced_grok_context, build_minimal_context
from .fallback import build_keyword_sentiment_fallback
from .grok_client import GrokClient, fetch_and_validate_grok_sentiment
from .kv import PulseStore
from .schemas import (
    DeltaEvent,
    EnhancedContext,
    GrokTokenContext,
    HistoryEntry,
    RunMeta,
    RunResult,
    SentimentSnapshot,
    Token,
)
from .sources import build_global_token_list, fetch_watchlist_tokens

logger = logging.getLogger(__name__)

SentimentFetcher = Callable[[GrokTokenContext], Awaitable[Optional[SentimentSnapshot]]]


class RunState(str, Enum):
    IDLE = "idle"
    BUILDING_UNIVERSE = "building_universe"
    RUNNING_BATCHES = "running_batches"
    FINALIZING = "finalizing"


class _Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


async def record_snapshot(
    store: PulseStore,
    token: Token,
    snapshot: SentimentSnapshot,
    delta_threshold: Optional[float] = None,
) -> Optional[DeltaEvent]:
    """
    Stamp the delta against the previous reading and persist the snapshot.

    The baseline is the live snapshot's score, else the last history entry.
    If neither can be read the snapshot is stored without a delta.
    A delta event is pushed only when `delta_threshold` is given and
    |delta| reaches it.

    Returns:
        The pushed DeltaEvent, if any
    """
    try:
        previous = await store.get_current_snapshot(token.address)
        if previous is not None:
            previous_score = previous.score
        else:
            history = await store.get_history(token.address)
            previous_score = history[-1].score if history else None
    except Exception as e:
        logger.warning(f"[grokPulse] failed to read previous score for {token.address}: {e}")
        previous_score = None

    event = None
    if previous_score is not None:
        delta = snapshot.score - previous_score
        snapshot.delta = delta
        if delta_threshold is not None and abs(delta) >= delta_threshold:
            event = DeltaEvent(
                address=token.address,
                symbol=token.symbol,
                previous_score=previous_score,
                new_score=snapshot.score,
                delta=delta,
                ts=snapshot.ts,
            )
            await store.push_delta_event(event)

    await store.set_current_snapshot(token.address, snapshot)
    await store.append_history(token.address, HistoryEntry(ts=snapshot.ts, score=snapshot.score))
    return event


class PulseOrchestrator:
    """Orchestrates one Grok pulse cron run"""

    def __init__(
        self,
        store: PulseStore,
        settings: Optional[PulseSettings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        sentiment_fetcher: Optional[SentimentFetcher] = None,
        fallback_on_failure: bool = False,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Pulse persistence
            settings: Settings (defaults to env)
            http_client: Client for the data providers (created per run if omitted)
            sentiment_fetcher: Replacement for the Grok call
            fallback_on_failure: Score failed tokens with the keyword fallback
                instead of counting them as failed
        """
        self.store = store
        self.settings = settings or PulseSettings.from_env()
        self.http_client = http_client
        self.sentiment_fetcher = sentiment_fetcher or self._default_sentiment_fetcher()
        self.fallback_on_failure = fallback_on_failure
        self.state = RunState.IDLE

    def _default_sentiment_fetcher(self) -> SentimentFetcher:
        api_key = self.settings.grok_api_key

        async def fetch(ctx: GrokTokenContext) -> Optional[SentimentSnapshot]:
            if not api_key:
                return await fetch_and_validate_grok_sentiment(ctx)
            client = GrokClient(
                api_key=api_key,
                api_url=self.settings.grok_api_url,
                model=self.settings.grok_model,
            )
            return await fetch_and_validate_grok_sentiment(ctx, client)

        return fetch

    async def run(self) -> RunResult:
        """
        Complete run: Universe → Daily cap → Batches → Meta.

        Returns:
            RunResult counters
        """
        try:
            if self.http_client is not None:
                return await self._run(self.http_client)
            async with httpx.AsyncClient() as client:
                return await self._run(client)
        finally:
            self.state = RunState.IDLE

    async def _run(self, client: httpx.AsyncClient) -> RunResult:
        run_start = int(time.time())
        result = RunResult()
        settings = self.settings

        # ====================================================================
        # STEP 1: Universe
        # ====================================================================
        self.state = RunState.BUILDING_UNIVERSE
        try:
            tokens = await build_global_token_list(
                settings.sources,
                client,
                max_unique=settings.max_calls_per_run,
                store=self.store,
                settings=settings,
            )
            await self.store.set_global_list(tokens)
        except Exception as e:
            logger.error(f"[grokPulse] universe build failed, aborting run: {e}", exc_info=True)
            return result
        logger.info(f"[grokPulse] universe built: {len(tokens)} tokens")

        try:
            watchlist = await fetch_watchlist_tokens(self.store, settings)
        except Exception as e:
            logger.warning(f"[grokPulse] failed to load watchlist tokens: {e}")
            watchlist = []

        # ====================================================================
        # STEP 2: Daily ceiling
        # ====================================================================
        daily_count = await self.store.get_and_increment_daily_call_counter()
        if daily_count > settings.max_daily_calls:
            logger.warning(
                f"[grokPulse] daily cap reached ({daily_count}/{settings.max_daily_calls}), skipping run"
            )
            result.skipped_by_daily_cap = len(tokens)
            await self._finalize(run_start, result)
            return result

        # ====================================================================
        # STEP 3: Batches
        # ====================================================================
        self.state = RunState.RUNNING_BATCHES
        reserved_calls = 0

        async def process(token: Token) -> _Outcome:
            nonlocal reserved_calls
            # Reserve before the first await so a batch cannot overshoot the run ceiling
            if reserved_calls >= settings.max_calls_per_run:
                return _Outcome.SKIPPED
            reserved_calls += 1

            try:
                count = await self.store.get_and_increment_daily_call_counter()
            except Exception as e:
                logger.error(f"[grokPulse] failed to increment daily counter: {e}")
                result.tokens_processed += 1
                return _Outcome.FAILED

            if count > settings.max_daily_calls:
                reserved_calls -= 1
                return _Outcome.SKIPPED

            return await self._process_token(token, client, watchlist, result)

        for start in range(0, len(tokens), settings.max_concurrency):
            batch = tokens[start:start + settings.max_concurrency]
            outcomes = await asyncio.gather(*(process(token) for token in batch))
            for outcome in outcomes:
                if outcome is _Outcome.SUCCESS:
                    result.success += 1
                elif outcome is _Outcome.FAILED:
                    result.failed += 1
                else:
                    result.skipped_by_daily_cap += 1

        # ====================================================================
        # STEP 4: Finalize
        # ====================================================================
        await self._finalize(run_start, result)
        logger.info(
            f"[grokPulse] run complete: success={result.success} failed={result.failed} "
            f"calls={result.total_calls} skipped={result.skipped_by_daily_cap}"
        )
        return result

    async def _process_token(
        self,
        token: Token,
        client: httpx.AsyncClient,
        watchlist: Sequence[Token],
        result: RunResult,
    ) -> _Outcome:
        try:
            context = await build_enhanced_grok_context(
                token, self.settings.sources, client, watchlist_tokens=watchlist
            )
        except Exception as e:
            logger.warning(f"[grokPulse] context builder failed for {token.address}: {e}")
            context = build_minimal_context(token)

        snapshot = await self._fetch_sentiment(token, context)
        result.total_calls += 1
        result.tokens_processed += 1

        if snapshot is None and self.fallback_on_failure:
            snapshot = build_keyword_sentiment_fallback(token, context.context)
        if snapshot is None:
            return _Outcome.FAILED

        try:
            await record_snapshot(
                self.store, token, snapshot, delta_threshold=self.settings.delta_threshold
            )
        except Exception as e:
            logger.error(f"[grokPulse] failed to persist token {token.address}: {e}", exc_info=True)
            return _Outcome.FAILED
        return _Outcome.SUCCESS

    async def _fetch_sentiment(
        self, token: Token, context: EnhancedContext
    ) -> Optional[SentimentSnapshot]:
        try:
            return await self.sentiment_fetcher(
                GrokTokenContext(symbol=token.symbol, address=token.address, context=context.context)
            )
        except Exception as e:
            logger.error(f"[grokPulse] sentiment fetch raised for {token.address}: {e}", exc_info=True)
            return None

    async def _finalize(self, run_start: int, result: RunResult) -> None:
        self.state = RunState.FINALIZING
        try:
            await self.store.set_meta_last_run(RunMeta(
                ts=run_start,
                success=result.success,
                failed=result.failed,
                total_calls=result.total_calls,
            ))
        finally:
            self.state = RunState.IDLE


async def run_grok_pulse_cron(
    store: PulseStore,
    settings: Optional[PulseSettings] = None,
    **kwargs,
) -> RunResult:
    """Run one pulse cron cycle with a fresh orchestrator"""
    return await PulseOrchestrator(store, settings, **kwargs).run()
