"""
Environment-driven settings for the pulse pipeline.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .schemas import Token, sanitize_symbol

# Load .env file next to the backend sources
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 20
MAX_GROK_CALLS_PER_RUN = 150
DEFAULT_MAX_DAILY_GROK_CALLS = 900
DELTA_THRESHOLD = 30

DEFAULT_GROK_API_URL = "https://api.x.ai/v1/chat/completions"
DEFAULT_GROK_MODEL = "grok-2-latest"
DEFAULT_DEXSCREENER_BASE_URL = "https://api.dexscreener.com/latest/dex"
DEFAULT_BIRDEYE_BASE_URL = "https://public-api.birdeye.so"


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default


def parse_token_list(raw: Optional[str]) -> List[Token]:
    """
    Parse a ``SYMBOL:ADDRESS,SYMBOL:ADDRESS`` list.

    An entry without a colon is treated as a bare address. Entries with an
    empty address are dropped.
    """
    if not raw:
        return []

    tokens: List[Token] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" in entry:
            symbol, address = entry.split(":", 1)
        else:
            symbol, address = "", entry
        address = address.strip()
        if not address:
            continue
        tokens.append(Token(address=address, symbol=sanitize_symbol(symbol)))
    return tokens


@dataclass
class SourceArgs:
    """Base URLs and API keys for the external data providers"""
    dexscreener_api_key: Optional[str] = None
    dexscreener_base_url: Optional[str] = None
    birdeye_api_key: Optional[str] = None
    birdeye_base_url: Optional[str] = None
    social_api_key: Optional[str] = None
    social_base_url: Optional[str] = None
    twitter_api_key: Optional[str] = None
    twitter_base_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SourceArgs":
        return cls(
            dexscreener_api_key=_env("DEXSCREENER_API_KEY"),
            dexscreener_base_url=_env("DEXSCREENER_BASE_URL"),
            birdeye_api_key=_env("BIRDEYE_API_KEY"),
            birdeye_base_url=_env("BIRDEYE_BASE_URL"),
            social_api_key=_env("PULSE_SOCIAL_API_KEY"),
            social_base_url=_env("PULSE_SOCIAL_API_URL"),
            twitter_api_key=_env("PULSE_TWITTER_API_KEY"),
            twitter_base_url=_env("PULSE_TWITTER_API_URL"),
        )


@dataclass
class PulseSettings:
    """All settings consumed by the engine and the HTTP layer"""
    sources: SourceArgs = field(default_factory=SourceArgs)
    cron_secret: Optional[str] = None
    grok_api_key: Optional[str] = None
    grok_api_url: str = DEFAULT_GROK_API_URL
    grok_model: str = DEFAULT_GROK_MODEL
    max_concurrency: int = MAX_CONCURRENCY
    max_calls_per_run: int = MAX_GROK_CALLS_PER_RUN
    max_daily_calls: int = DEFAULT_MAX_DAILY_GROK_CALLS
    delta_threshold: float = DELTA_THRESHOLD
    static_tokens: List[Token] = field(default_factory=list)
    watchlist_tokens: List[Token] = field(default_factory=list)
    redis_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PulseSettings":
        """
        Build settings from environment variables.

        Returns:
            PulseSettings populated from the process environment
        """
        return cls(
            sources=SourceArgs.from_env(),
            cron_secret=_env("PULSE_CRON_SECRET"),
            grok_api_key=_env("GROK_API_KEY"),
            grok_api_url=_env("GROK_API_URL") or DEFAULT_GROK_API_URL,
            grok_model=_env("GROK_MODEL") or DEFAULT_GROK_MODEL,
            max_daily_calls=_env_int("MAX_DAILY_GROK_CALLS", DEFAULT_MAX_DAILY_GROK_CALLS),
            static_tokens=parse_token_list(_env("PULSE_STATIC_TOKENS")),
            watchlist_tokens=parse_token_list(_env("PULSE_WATCHLIST_TOKENS")),
            redis_url=_env("REDIS_URL"),
        )
