"""
Keyword heuristic used when Grok is unavailable or its answer fails
validation. Synchronous, no I/O, same input text → same snapshot fields.
"""

import re
import time
from typing import List, Optional, Tuple

from .grok_client import compute_validation_hash
from .schemas import (
    CallToAction,
    SentimentLabel,
    SentimentSnapshot,
    SnapshotSource,
    Token,
    sanitize_symbol,
)

FALLBACK_CONFIDENCE = 70
MAX_HITS_PER_KEYWORD = 3
SCORE_PER_WEIGHT = 10

# (pattern, weight); patterns are matched case-insensitively on word starts
BULLISH_KEYWORDS: List[Tuple[str, int]] = [
    (r"moon\w*", 3),
    (r"pump\w*", 2),
    (r"viral", 2),
    (r"hype\w*", 2),
    (r"bullish", 2),
    (r"breakout\w*", 2),
    (r"ath", 2),
    (r"gem", 2),
    (r"rally\w*", 2),
    (r"send(s|ing)?", 1),
    (r"ape(d|ing)?", 1),
    (r"buy(s|ing)?", 1),
    (r"green", 1),
    (r"whale\w*", 1),
]

BEARISH_KEYWORDS: List[Tuple[str, int]] = [
    (r"rug\w*", 4),
    (r"honeypot\w*", 4),
    (r"scam\w*", 4),
    (r"exploit\w*", 3),
    (r"hack\w*", 3),
    (r"dump\w*", 3),
    (r"crash\w*", 3),
    (r"bearish", 2),
    (r"sell(s|ing|off)?", 1),
    (r"red", 1),
    (r"fud", 1),
]

DEAD_KEYWORDS: List[str] = [r"dead", r"abandoned", r"no volume"]

_BULLISH = [(re.compile(rf"\b{p}\b", re.IGNORECASE), w) for p, w in BULLISH_KEYWORDS]
_BEARISH = [(re.compile(rf"\b{p}\b", re.IGNORECASE), w) for p, w in BEARISH_KEYWORDS]
_DEAD = [re.compile(rf"\b{p}\b", re.IGNORECASE) for p in DEAD_KEYWORDS]


def _weighted_hits(text: str, patterns: List[Tuple["re.Pattern[str]", int]]) -> Tuple[int, int]:
    """Return (weighted sum, raw hit count)"""
    total, hits = 0, 0
    for pattern, weight in patterns:
        count = min(len(pattern.findall(text)), MAX_HITS_PER_KEYWORD)
        total += count * weight
        hits += count
    return total, hits


def classify_score(score: float, dead: bool = False) -> Tuple[SentimentLabel, CallToAction]:
    """Map a keyword score onto the Grok label/CTA enums"""
    if dead and score <= 0:
        return SentimentLabel.DEAD, CallToAction.AVOID
    if score >= 60:
        return SentimentLabel.MOON, CallToAction.APE
    if score >= 30:
        return SentimentLabel.STRONG_BULL, CallToAction.APE
    if score > 10:
        return SentimentLabel.BULL, CallToAction.DCA
    if score >= -10:
        return SentimentLabel.NEUTRAL, CallToAction.WATCH
    if score > -30:
        return SentimentLabel.BEAR, CallToAction.WATCH
    if score > -60:
        return SentimentLabel.STRONG_BEAR, CallToAction.DUMP
    return SentimentLabel.RUG, CallToAction.AVOID


def build_keyword_sentiment_fallback(
    token: Token,
    context_text: str,
    now: Optional[float] = None,
) -> SentimentSnapshot:
    """
    Score a token from keyword frequencies in its context text.

    Args:
        token: Token being scored
        context_text: The same context that would have been sent to Grok
        now: Unix time used for `ts` (defaults to the current time)

    Returns:
        A low-confidence snapshot with source "keyword_fallback"
    """
    text = context_text or ""
    bullish, bullish_hits = _weighted_hits(text, _BULLISH)
    bearish, bearish_hits = _weighted_hits(text, _BEARISH)
    dead = any(pattern.search(text) for pattern in _DEAD)

    score = max(-100, min(100, (bullish - bearish) * SCORE_PER_WEIGHT))
    label, cta = classify_score(score, dead=dead)

    symbol = sanitize_symbol(token.symbol)
    one_liner = (
        f"{symbol}: keyword fallback, {bullish_hits} bullish vs {bearish_hits} bearish signals "
        f"({label.value})."
    )
    top_snippet = text.strip()[:800] or f"No context available for {symbol}."

    payload = {
        "score": score,
        "label": label.value,
        "confidence": FALLBACK_CONFIDENCE,
        "one_liner": one_liner,
        "top_snippet": top_snippet,
        "cta": cta.value,
        "low_confidence": True,
    }

    return SentimentSnapshot(
        **payload,
        validation_hash=compute_validation_hash(payload),
        ts=int(now if now is not None else time.time()),
        source=SnapshotSource.KEYWORD_FALLBACK,
    )
