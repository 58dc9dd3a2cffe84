"""
Per-token context aggregation.

Fans out to two on-chain detail providers and two social search providers,
then renders a fixed-order text block for Grok. Given identical adapter
responses the output is byte-identical.
"""

import asyncio
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import SourceArgs
from .schemas import (
    EnhancedContext,
    OnchainSnapshot,
    OnchainSource,
    SocialContext,
    SocialEntry,
    Token,
    sanitize_symbol,
)
from .sources import birdeye_base_url, dexscreener_base_url, provider_headers

logger = logging.getLogger(__name__)

MAX_SOCIAL_ENTRIES = 4
MAX_SNIPPET_LENGTH = 220
DETAIL_TIMEOUT = 10.0
SOCIAL_TIMEOUT = 8.0

DEFAULT_ONCHAIN_PRIORITY = (OnchainSource.DEXSCREENER, OnchainSource.BIRDEYE)

ONCHAIN_MISSING_LINE = "On-chain: missing live market metrics; treat confidence conservatively."
WATCHLIST_LINE = "Watchlist: token is tracked by watchlist users."
SOCIAL_MISSING_LINE = (
    "Social: No live mentions fetched; rely on on-chain momentum and general sentiment keywords."
)
GUIDANCE_LINE = "Guidance: Prioritize meme/retail sentiment. If context is thin, lower confidence to 70-75."


def to_number(value: Any) -> Optional[float]:
    """Coerce numbers and numeric strings; anything non-finite becomes None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value):
        return None
    return value


def first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def format_large_number(value: float) -> str:
    if value >= 1_000_000_000:
        return f"{value / 1_000_000_000:.1f}B"
    if value >= 1_000_000:
        return f"{value / 1_000_000:.1f}M"
    if value >= 1_000:
        return f"{value / 1_000:.1f}K"
    return f"{value:.0f}"


def truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[:max_length - 3]}..."


def format_social_entry(entry: SocialEntry) -> str:
    snippet = truncate(entry.text, MAX_SNIPPET_LENGTH)
    if entry.score is not None:
        return f"{snippet} (score:{entry.score:.2f})"
    return snippet


def normalize_social_entry(raw: Any) -> Optional[SocialEntry]:
    if not isinstance(raw, dict):
        return None
    text = first_present(raw, "text", "snippet", "summary")
    if not isinstance(text, str) or not text.strip():
        return None
    score = raw.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        score = None
    return SocialEntry(text=text.strip(), score=score)


# ============================================================================
# On-chain detail adapters
# ============================================================================

async def fetch_dexscreener_snapshot(
    token: Token,
    args: SourceArgs,
    client: httpx.AsyncClient,
) -> Optional[OnchainSnapshot]:
    """Metrics from the most liquid DexScreener pair for the token"""
    url = f"{dexscreener_base_url(args)}/tokens/{token.address}"
    try:
        response = await client.get(
            url,
            headers=provider_headers(args.dexscreener_api_key),
            timeout=DETAIL_TIMEOUT,
        )
        if not response.is_success:
            logger.warning(
                f"[grokPulse] DexScreener detail failed: {response.status_code} {response.reason_phrase}"
            )
            return None
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"[grokPulse] DexScreener detail error: {e}")
        return None

    pairs = data.get("pairs") if isinstance(data, dict) else None
    if not isinstance(pairs, list):
        return None
    pairs = [pair for pair in pairs if isinstance(pair, dict)]
    if not pairs:
        return None

    def liquidity_of(pair: Dict[str, Any]) -> float:
        liquidity = pair.get("liquidity")
        value = to_number(liquidity.get("usd")) if isinstance(liquidity, dict) else None
        return value or 0.0

    # Ties keep the earliest pair
    primary = pairs[0]
    for pair in pairs[1:]:
        if liquidity_of(pair) > liquidity_of(primary):
            primary = pair

    volume = primary.get("volume") if isinstance(primary.get("volume"), dict) else {}
    txns = primary.get("txns") if isinstance(primary.get("txns"), dict) else {}
    txns_h24 = txns.get("h24") if isinstance(txns.get("h24"), dict) else {}
    liquidity = primary.get("liquidity") if isinstance(primary.get("liquidity"), dict) else {}
    price_change = primary.get("priceChange") if isinstance(primary.get("priceChange"), dict) else {}

    h24_volume = volume.get("h24")
    h24_change = price_change.get("h24")
    return OnchainSnapshot(
        price_usd=to_number(primary.get("priceUsd")),
        volume_24h_usd=to_number(h24_volume if h24_volume is not None else txns_h24.get("volumeUSD")),
        liquidity_usd=to_number(liquidity.get("usd")),
        price_change_24h_pct=to_number(h24_change if h24_change is not None else primary.get("priceChange24h")),
        source=OnchainSource.DEXSCREENER,
    )


async def fetch_birdeye_snapshot(
    token: Token,
    args: SourceArgs,
    client: httpx.AsyncClient,
) -> Optional[OnchainSnapshot]:
    """Metrics from Birdeye's token overview"""
    url = f"{birdeye_base_url(args)}/public/token"
    try:
        response = await client.get(
            url,
            params={"address": token.address},
            headers=provider_headers(args.birdeye_api_key),
            timeout=DETAIL_TIMEOUT,
        )
        if not response.is_success:
            logger.warning(f"[grokPulse] Birdeye detail failed: {response.status_code}")
            return None
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"[grokPulse] Birdeye detail error: {e}")
        return None

    token_data = data.get("data") if isinstance(data, dict) else None
    if not isinstance(token_data, dict):
        logger.warning("[grokPulse] Birdeye detail returned no data object")
        return None

    snapshot = OnchainSnapshot(
        price_usd=to_number(first_present(token_data, "price", "value", "priceUsd")),
        volume_24h_usd=to_number(first_present(token_data, "v24hUSD", "v24h", "volume24hUsd")),
        liquidity_usd=to_number(first_present(token_data, "liquidity", "liquidityUsd")),
        price_change_24h_pct=to_number(
            first_present(token_data, "priceChange24hPercent", "priceChange24hPct")
        ),
        source=OnchainSource.BIRDEYE,
    )
    if all(
        value is None
        for value in (
            snapshot.price_usd,
            snapshot.volume_24h_usd,
            snapshot.liquidity_usd,
            snapshot.price_change_24h_pct,
        )
    ):
        return None
    return snapshot


# ============================================================================
# Social adapters
# ============================================================================

async def _search_mentions(
    label: str,
    base_url: Optional[str],
    path: str,
    api_key: Optional[str],
    token: Token,
    client: httpx.AsyncClient,
) -> List[SocialEntry]:
    if not base_url:
        return []

    params = {
        "symbol": sanitize_symbol(token.symbol),
        "address": token.address,
        "limit": str(MAX_SOCIAL_ENTRIES),
    }
    try:
        response = await client.get(
            f"{base_url.rstrip('/')}{path}",
            params=params,
            headers=provider_headers(
                f"Bearer {api_key}" if api_key else None, header="authorization"
            ),
            timeout=SOCIAL_TIMEOUT,
        )
        if not response.is_success:
            logger.warning(
                f"[grokPulse] {label} context failed: {response.status_code} {response.reason_phrase}"
            )
            return []
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"[grokPulse] {label} context error: {e}")
        return []

    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, list):
        return []
    return [entry for entry in (normalize_social_entry(item) for item in results) if entry]


async def fetch_social_mentions(
    token: Token,
    args: SourceArgs,
    client: httpx.AsyncClient,
) -> List[SocialEntry]:
    return await _search_mentions(
        "Social", args.social_base_url, "/v1/search", args.social_api_key, token, client
    )


async def fetch_twitter_mentions(
    token: Token,
    args: SourceArgs,
    client: httpx.AsyncClient,
) -> List[SocialEntry]:
    return await _search_mentions(
        "Twitter", args.twitter_base_url, "/v1/twitter/search", args.twitter_api_key, token, client
    )


# ============================================================================
# Context assembly
# ============================================================================

def is_watchlist_hit(token: Token, watchlist_tokens: Optional[Sequence[Token]]) -> bool:
    if not watchlist_tokens:
        return False
    symbol = sanitize_symbol(token.symbol)
    return any(
        candidate.address == token.address or sanitize_symbol(candidate.symbol) == symbol
        for candidate in watchlist_tokens
    )


def format_onchain_line(onchain: OnchainSnapshot) -> str:
    price = f"${onchain.price_usd:.6f}" if onchain.price_usd else "n/a"
    change = (
        f"{onchain.price_change_24h_pct:.2f}%"
        if onchain.price_change_24h_pct is not None
        else "n/a"
    )
    volume = f"${format_large_number(onchain.volume_24h_usd)}" if onchain.volume_24h_usd else "n/a"
    liquidity = f"${format_large_number(onchain.liquidity_usd)}" if onchain.liquidity_usd else "n/a"
    return " | ".join([
        f"On-chain ({onchain.source.value}): price {price}",
        f"24h change {change}",
        f"24h vol {volume}",
        f"liquidity {liquidity}",
    ])


def render_context(
    token: Token,
    onchain: Optional[OnchainSnapshot],
    social_entries: Sequence[SocialEntry],
    watchlist_hit: bool,
) -> str:
    """Render the fixed-order context block"""
    lines = [f"Token: {sanitize_symbol(token.symbol)} ({token.address})"]

    lines.append(format_onchain_line(onchain) if onchain else ONCHAIN_MISSING_LINE)

    if watchlist_hit:
        lines.append(WATCHLIST_LINE)

    if social_entries:
        snippets = " | ".join(
            snippet
            for snippet in (format_social_entry(e) for e in social_entries[:MAX_SOCIAL_ENTRIES])
            if snippet
        )
        lines.append(f"Social ({len(social_entries)}): {snippets or 'unable to parse snippets'}")
    else:
        lines.append(SOCIAL_MISSING_LINE)

    lines.append(GUIDANCE_LINE)
    return "\n".join(lines)


async def build_enhanced_grok_context(
    token: Token,
    args: SourceArgs,
    client: httpx.AsyncClient,
    watchlist_tokens: Optional[Sequence[Token]] = None,
    onchain_priority: Sequence[OnchainSource] = DEFAULT_ONCHAIN_PRIORITY,
) -> EnhancedContext:
    """
    Build the Grok context for a single token.

    Args:
        token: Token being scored
        args: Provider settings
        client: Shared HTTP client
        watchlist_tokens: Tokens that count as watchlist hits
        onchain_priority: Which on-chain provider wins when both respond

    Returns:
        EnhancedContext with the text block and its structured inputs
    """
    dex_snapshot, birdeye_snapshot, social_mentions, twitter_mentions = await asyncio.gather(
        fetch_dexscreener_snapshot(token, args, client),
        fetch_birdeye_snapshot(token, args, client),
        fetch_social_mentions(token, args, client),
        fetch_twitter_mentions(token, args, client),
    )

    by_source = {
        OnchainSource.DEXSCREENER: dex_snapshot,
        OnchainSource.BIRDEYE: birdeye_snapshot,
    }
    onchain = next(
        (by_source[source] for source in onchain_priority if by_source.get(source) is not None),
        None,
    )

    watchlist_hit = is_watchlist_hit(token, watchlist_tokens)
    social_entries = [*social_mentions, *twitter_mentions]

    return EnhancedContext(
        context=render_context(token, onchain, social_entries, watchlist_hit),
        onchain=onchain,
        social=SocialContext(
            entries=social_mentions,
            twitter_entries=twitter_mentions,
            total=len(social_entries),
        ),
        watchlist_hit=watchlist_hit,
    )


async def build_token_context(
    token: Token,
    args: SourceArgs,
    client: httpx.AsyncClient,
    watchlist_tokens: Optional[Sequence[Token]] = None,
) -> str:
    enhanced = await build_enhanced_grok_context(token, args, client, watchlist_tokens)
    return enhanced.context


def build_minimal_context(token: Token) -> EnhancedContext:
    """Degraded context used when context building itself blows up"""
    return EnhancedContext(
        context=(
            f"Token: {sanitize_symbol(token.symbol)} ({token.address})\n"
            "No live context; return low confidence score."
        ),
    )
