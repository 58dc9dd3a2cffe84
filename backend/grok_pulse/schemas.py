"""
Structured data models for each step of the pulse pipeline.
These define the exact JSON shapes stored in KV and returned over HTTP.
"""

from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SentimentLabel(str, Enum):
    """Sentiment classification returned by Grok"""
    MOON = "MOON"
    STRONG_BULL = "STRONG_BULL"
    BULL = "BULL"
    NEUTRAL = "NEUTRAL"
    BEAR = "BEAR"
    STRONG_BEAR = "STRONG_BEAR"
    RUG = "RUG"
    DEAD = "DEAD"


class CallToAction(str, Enum):
    """Suggested action attached to a sentiment verdict"""
    APE = "APE"
    DCA = "DCA"
    WATCH = "WATCH"
    DUMP = "DUMP"
    AVOID = "AVOID"


class SnapshotSource(str, Enum):
    """Where a snapshot came from"""
    GROK = "grok"
    KEYWORD_FALLBACK = "keyword_fallback"


class OnchainSource(str, Enum):
    DEXSCREENER = "dexscreener"
    BIRDEYE = "birdeye"


# ============================================================================
# STEP 1: Sources → Token Universe
# ============================================================================

MAX_SYMBOL_LENGTH = 12
UNKNOWN_SYMBOL = "UNKNOWN"


def sanitize_symbol(value: Any) -> str:
    """
    Normalize a free-form symbol into the canonical display/dedup key.

    Trimmed, uppercased and cut to 12 characters. Anything that ends up
    empty becomes "UNKNOWN". Never raises.
    """
    if not isinstance(value, str):
        return UNKNOWN_SYMBOL
    cleaned = value.strip()
    if not cleaned:
        return UNKNOWN_SYMBOL
    cleaned = cleaned.upper()[:MAX_SYMBOL_LENGTH].strip()
    return cleaned or UNKNOWN_SYMBOL


class Token(BaseModel):
    """A single token in the pulse universe, keyed by address"""
    model_config = ConfigDict(frozen=True)

    address: str
    symbol: str = "UNKNOWN"

    @field_validator("address")
    @classmethod
    def strip_address(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("token address must not be empty")
        return value


# ============================================================================
# STEP 2: Token → Context
# ============================================================================

class OnchainSnapshot(BaseModel):
    """Normalized market metrics from a single on-chain provider"""
    model_config = ConfigDict(populate_by_name=True)

    price_usd: Optional[float] = Field(None, alias="priceUsd")
    volume_24h_usd: Optional[float] = Field(None, alias="volume24hUsd")
    liquidity_usd: Optional[float] = Field(None, alias="liquidityUsd")
    price_change_24h_pct: Optional[float] = Field(None, alias="priceChange24hPct")
    source: OnchainSource


class SocialEntry(BaseModel):
    """A single social mention snippet"""
    text: str
    score: Optional[float] = None


class SocialContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entries: List[SocialEntry] = Field(default_factory=list)
    twitter_entries: List[SocialEntry] = Field(default_factory=list, alias="twitterEntries")
    total: int = 0


class EnhancedContext(BaseModel):
    """Context text for Grok plus the structured data it was built from"""
    model_config = ConfigDict(populate_by_name=True)

    context: str
    onchain: Optional[OnchainSnapshot] = None
    social: SocialContext = Field(default_factory=SocialContext)
    watchlist_hit: bool = Field(False, alias="watchlistHit")


class GrokTokenContext(BaseModel):
    """Input for a single sentiment request"""
    symbol: str
    address: str
    context: str


# ============================================================================
# STEP 3: Context → Sentiment
# ============================================================================

class SentimentSnapshot(BaseModel):
    """The live sentiment record for one token"""
    score: float = Field(..., ge=-100, le=100)
    label: SentimentLabel
    confidence: float = Field(..., ge=70, le=100)
    one_liner: str = Field(..., min_length=1, max_length=240)
    top_snippet: str = Field(..., min_length=1, max_length=800)
    cta: CallToAction
    validation_hash: str
    ts: int
    delta: Optional[float] = None
    low_confidence: Optional[bool] = None
    source: Optional[SnapshotSource] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ============================================================================
# STEP 4: Persistence & Time-Series Tracking
# ============================================================================

class HistoryEntry(BaseModel):
    """A single point in a token's score history"""
    ts: int
    score: float


class DeltaEvent(BaseModel):
    """A notable score swing between consecutive readings"""
    model_config = ConfigDict(populate_by_name=True)

    address: str
    symbol: str
    previous_score: Optional[float] = Field(None, alias="previousScore")
    new_score: float = Field(..., alias="newScore")
    delta: float
    ts: int


class RunMeta(BaseModel):
    """Summary of the last cron run"""
    ts: int
    success: int
    failed: int
    total_calls: int


class RunResult(BaseModel):
    """Counters returned by a cron run"""
    model_config = ConfigDict(populate_by_name=True)

    success: int = 0
    failed: int = 0
    total_calls: int = Field(0, alias="totalCalls")
    skipped_by_daily_cap: int = Field(0, alias="skippedByDailyCap")
    tokens_processed: int = Field(0, alias="tokensProcessed")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ============================================================================
# Prompts for Grok (structured instructions)
# ============================================================================

SENTIMENT_SYSTEM_PROMPT = "You are a precise crypto sentiment scorer."

SENTIMENT_PROMPT_TEMPLATE = """You are the Grok Pulse worker for Solana meme coins.
Analyze only the supplied context snippet (tweets/news/on-chain) and return compact JSON.
Respond with JSON **only**, no explanations.
Schema:
{{
  "score": number (-100..100)
  "label": one of [MOON, STRONG_BULL, BULL, NEUTRAL, BEAR, STRONG_BEAR, RUG, DEAD]
  "confidence": number (70..100)
  "one_liner": string (<=240 chars)
  "top_snippet": string (<=800 chars)
  "cta": one of [APE, DCA, WATCH, DUMP, AVOID]
  "validation_hash": sha256(JSON without validation_hash, keys sorted alphabetically)
  "low_confidence": boolean (optional)
}}
Context:
Token: {symbol} ({address})
Data: {context}
Notes:
- With weak context: set confidence to 70-75 and low_confidence=true.
- validation_hash = SHA-256 hex over the compact JSON (without validation_hash) with alphabetically sorted keys."""
