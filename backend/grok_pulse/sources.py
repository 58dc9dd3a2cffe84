"""
Token discovery: listing adapters, watchlist loading and the deduplicated
global token list.

Every adapter degrades to an empty list on failure and logs a warning; none
of them raise.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import (
    DEFAULT_BIRDEYE_BASE_URL,
    DEFAULT_DEXSCREENER_BASE_URL,
    PulseSettings,
    SourceArgs,
)
from .example_tokens import DEFAULT_WATCHLIST_TOKENS
from .kv import PulseStore
from .schemas import Token, sanitize_symbol

logger = logging.getLogger(__name__)

LISTING_TIMEOUT = 10.0
DEXSCREENER_GAINERS_PATH = "/solana/gainers"
DEXSCREENER_NEW_PAIRS_PATH = "/solana/new-pairs"

# Merge priority for the global list: earlier sources win on duplicate addresses
SOURCE_WATCHLIST = "watchlist"
SOURCE_DEXSCREENER_GAINERS = "dexscreener_gainers"
SOURCE_DEXSCREENER_NEW_PAIRS = "dexscreener_new_pairs"
SOURCE_BIRDEYE_VOLUME = "birdeye_volume"

DEFAULT_SOURCE_ORDER = (
    SOURCE_WATCHLIST,
    SOURCE_DEXSCREENER_GAINERS,
    SOURCE_DEXSCREENER_NEW_PAIRS,
    SOURCE_BIRDEYE_VOLUME,
)


def provider_headers(api_key: Optional[str], header: str = "x-api-key") -> Dict[str, str]:
    headers = {"accept": "application/json"}
    if api_key:
        headers[header] = api_key
    return headers


def dexscreener_base_url(args: SourceArgs) -> str:
    return (args.dexscreener_base_url or DEFAULT_DEXSCREENER_BASE_URL).rstrip("/")


def birdeye_base_url(args: SourceArgs) -> str:
    return (args.birdeye_base_url or DEFAULT_BIRDEYE_BASE_URL).rstrip("/")


def dedupe_tokens(tokens: Sequence[Token]) -> List[Token]:
    """Keep the first token seen for each non-empty address"""
    deduped: Dict[str, Token] = {}
    for token in tokens:
        address = token.address.strip()
        if not address or address in deduped:
            continue
        deduped[address] = Token(address=address, symbol=sanitize_symbol(token.symbol))
    return list(deduped.values())


def normalize_dexscreener_pair(pair: Any) -> Optional[Token]:
    if not isinstance(pair, dict):
        return None
    base_token = pair.get("baseToken")
    if not isinstance(base_token, dict):
        return None
    address = base_token.get("address")
    if not isinstance(address, str) or not address.strip():
        return None
    return Token(address=address.strip(), symbol=sanitize_symbol(base_token.get("symbol")))


async def fetch_dexscreener_listing(
    path: str,
    args: SourceArgs,
    client: httpx.AsyncClient,
) -> List[Token]:
    """
    Fetch one DexScreener listing endpoint (gainers or new pairs).

    Args:
        path: Endpoint path under the DexScreener base URL
        args: Provider settings
        client: Shared HTTP client

    Returns:
        Deduplicated tokens, or [] on any failure
    """
    url = f"{dexscreener_base_url(args)}{path}"
    try:
        response = await client.get(
            url,
            headers=provider_headers(args.dexscreener_api_key),
            timeout=LISTING_TIMEOUT,
        )
        if not response.is_success:
            logger.warning(
                f"[grokPulse] DexScreener request failed: {response.status_code} {response.reason_phrase} ({path})"
            )
            return []
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"[grokPulse] DexScreener request error ({path}): {e}")
        return []

    pairs = data.get("pairs") if isinstance(data, dict) else None
    if not isinstance(pairs, list):
        return []

    tokens = [token for token in (normalize_dexscreener_pair(pair) for pair in pairs) if token]
    return dedupe_tokens(tokens)


async def fetch_dexscreener_gainers(args: SourceArgs, client: httpx.AsyncClient) -> List[Token]:
    return await fetch_dexscreener_listing(DEXSCREENER_GAINERS_PATH, args, client)


async def fetch_dexscreener_new_pairs(args: SourceArgs, client: httpx.AsyncClient) -> List[Token]:
    return await fetch_dexscreener_listing(DEXSCREENER_NEW_PAIRS_PATH, args, client)


async def fetch_dexscreener_top_gainers(args: SourceArgs, client: httpx.AsyncClient) -> List[Token]:
    """Gainers followed by new pairs, deduplicated"""
    gainers, new_pairs = await asyncio.gather(
        fetch_dexscreener_gainers(args, client),
        fetch_dexscreener_new_pairs(args, client),
    )
    return dedupe_tokens([*gainers, *new_pairs])


async def fetch_birdeye_top_volume(args: SourceArgs, client: httpx.AsyncClient) -> List[Token]:
    """Top 50 tokens by 24h USD volume from Birdeye"""
    url = f"{birdeye_base_url(args)}/public/tokenlist"
    params = {"sort_by": "vol24hUSD", "sort_type": "desc", "limit": "50"}
    try:
        response = await client.get(
            url,
            params=params,
            headers=provider_headers(args.birdeye_api_key),
            timeout=LISTING_TIMEOUT,
        )
        if not response.is_success:
            logger.warning(
                f"[grokPulse] Birdeye request failed: {response.status_code} {response.reason_phrase}"
            )
            return []
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"[grokPulse] Birdeye request error: {e}")
        return []

    payload = data.get("data") if isinstance(data, dict) else None
    entries = payload.get("tokens") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        return []

    tokens: List[Token] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        address, symbol = entry.get("address"), entry.get("symbol")
        if not isinstance(address, str) or not isinstance(symbol, str):
            continue
        if not address.strip() or not symbol.strip():
            continue
        tokens.append(Token(address=address.strip(), symbol=sanitize_symbol(symbol)))
    return dedupe_tokens(tokens)


async def fetch_watchlist_tokens(
    store: Optional[PulseStore],
    settings: Optional[PulseSettings] = None,
) -> List[Token]:
    """
    Load the watchlist with fallbacks.

    Order: live watchlist in the store → PULSE_WATCHLIST_TOKENS →
    PULSE_STATIC_TOKENS → hardcoded defaults.
    """
    if store is not None:
        try:
            live = await store.get_watchlist_tokens()
            if live:
                return dedupe_tokens(live)
        except Exception as e:
            logger.warning(f"[grokPulse] failed to load live watchlist: {e}")

    if settings is not None:
        if settings.watchlist_tokens:
            return dedupe_tokens(settings.watchlist_tokens)
        if settings.static_tokens:
            return dedupe_tokens(settings.static_tokens)

    return list(DEFAULT_WATCHLIST_TOKENS)


async def build_global_token_list(
    args: SourceArgs,
    client: httpx.AsyncClient,
    max_unique: int = 120,
    include_static: bool = True,
    *,
    store: Optional[PulseStore] = None,
    settings: Optional[PulseSettings] = None,
    source_order: Sequence[str] = DEFAULT_SOURCE_ORDER,
) -> List[Token]:
    """
    Build the deduplicated token universe for a pulse run.

    All sources are fetched concurrently, then merged in `source_order`.
    The first token seen for an address wins, even if a later source has a
    better symbol for it.

    Args:
        args: Provider settings
        client: Shared HTTP client
        max_unique: Maximum number of tokens returned
        include_static: Whether the watchlist/static tokens are included
        store: Store holding the live watchlist
        settings: Settings carrying env-configured token lists
        source_order: Merge priority by source name

    Returns:
        Unique tokens, at most `max_unique`
    """
    fetchers = {
        SOURCE_DEXSCREENER_GAINERS: fetch_dexscreener_gainers(args, client),
        SOURCE_DEXSCREENER_NEW_PAIRS: fetch_dexscreener_new_pairs(args, client),
        SOURCE_BIRDEYE_VOLUME: fetch_birdeye_top_volume(args, client),
    }
    if include_static:
        fetchers[SOURCE_WATCHLIST] = fetch_watchlist_tokens(store, settings)

    names = list(fetchers)
    results = await asyncio.gather(*fetchers.values())
    by_source = dict(zip(names, results))

    ordered: List[Token] = []
    for name in source_order:
        ordered.extend(by_source.get(name, []))

    return dedupe_tokens(ordered)[:max_unique]
