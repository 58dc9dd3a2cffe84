"""
Grok API Client for the pulse pipeline.
Handles communication with the Grok chat completions API and the strict
validation of the structured sentiment it returns.

The validation hash only proves the response is self-consistent (nothing was
dropped or altered between the model producing it and us parsing it). It does
not prove that the sentiment judgment itself is correct.
"""

import asyncio
import hashlib
import json
import logging
import math
import os
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from .config import DEFAULT_GROK_API_URL, DEFAULT_GROK_MODEL
from .schemas import (
    CallToAction,
    GrokTokenContext,
    SENTIMENT_PROMPT_TEMPLATE,
    SENTIMENT_SYSTEM_PROMPT,
    SentimentLabel,
    SentimentSnapshot,
    SnapshotSource,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_TEMPERATURE = 0.15
DEFAULT_MAX_TOKENS = 400

VALID_LABELS = {label.value for label in SentimentLabel}
VALID_CTAS = {cta.value for cta in CallToAction}
MAX_ONE_LINER_LENGTH = 240
MAX_TOP_SNIPPET_LENGTH = 800


# --- Singleton httpx.AsyncClient ---
# Reuse connection pool across GrokClient instances for better performance
_shared_http_client: Optional[httpx.AsyncClient] = None
_shared_http_api_key: Optional[str] = None


def _get_shared_http_client(api_key: str) -> httpx.AsyncClient:
    """Get or create shared httpx.AsyncClient with connection pooling."""
    global _shared_http_client, _shared_http_api_key

    # Reinitialize if API key changed or client is closed
    if (_shared_http_client is None or
        _shared_http_api_key != api_key or
        _shared_http_client.is_closed):
        logger.info("Initializing shared Grok httpx.AsyncClient")
        _shared_http_client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=DEFAULT_TIMEOUT,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )
        _shared_http_api_key = api_key

    return _shared_http_client


# ============================================================================
# Validation
# ============================================================================

def _js_number(value: float) -> str:
    """
    Format a float the way JavaScript's Number#toString does.

    Digits are the shortest round-trip repr; 1e-6 <= |x| < 1e21 is written
    out in full, anything else in exponent notation.
    """
    if not math.isfinite(value):
        return json.dumps(value)
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))

    sign, digit_tuple, exponent = Decimal(repr(value)).as_tuple()
    digits = "".join(str(d) for d in digit_tuple).rstrip("0") or "0"
    exponent += len(digit_tuple) - len(digits)
    # value == 0.<digits> * 10**point
    point = len(digits) + exponent
    prefix = "-" if sign else ""

    if len(digits) <= point <= 21:
        return f"{prefix}{digits}{'0' * (point - len(digits))}"
    if 0 < point <= 21:
        return f"{prefix}{digits[:point]}.{digits[point:]}"
    if -6 < point <= 0:
        return f"{prefix}0.{'0' * -point}{digits}"

    shown = point - 1
    mantissa = digits if len(digits) == 1 else f"{digits[0]}.{digits[1:]}"
    return f"{prefix}{mantissa}e{'+' if shown >= 0 else '-'}{abs(shown)}"


def _js_dumps(value: Any) -> str:
    """Compact, key-sorted JSON with numbers printed as JSON.stringify prints them"""
    if isinstance(value, dict):
        keys = sorted(str(k) for k in value)
        return "{" + ",".join(f"{_js_dumps(k)}:{_js_dumps(value[k])}" for k in keys) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_js_dumps(v) for v in value) + "]"
    if isinstance(value, float):
        return _js_number(value)
    return json.dumps(value, ensure_ascii=False)


def compute_validation_hash(payload: Dict[str, Any]) -> str:
    """
    SHA-256 hex digest of the compact, key-sorted JSON of `payload`.

    `validation_hash` itself is excluded if present. The serialization
    matches JavaScript's JSON.stringify over sorted keys, so hashes produced
    by a JS client verify here.
    """
    body = {k: v for k, v in payload.items() if k != "validation_hash"}
    serialized = _js_dumps(body)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_sentiment_payload(parsed: Any) -> bool:
    """
    Check shape, ranges and the self-consistency hash of a Grok payload.

    Logs the first failing rule and returns False; never raises.
    """
    if not isinstance(parsed, dict):
        logger.warning("[grokPulse] Grok payload is not a JSON object")
        return False

    label = parsed.get("label")
    if not isinstance(label, str) or label not in VALID_LABELS:
        logger.warning(f"[grokPulse] Invalid label: {label}")
        return False

    cta = parsed.get("cta")
    if not isinstance(cta, str) or cta not in VALID_CTAS:
        logger.warning(f"[grokPulse] Invalid CTA: {cta}")
        return False

    score = parsed.get("score")
    if not _is_number(score) or not -100 <= score <= 100:
        logger.warning(f"[grokPulse] score out of range: {score}")
        return False

    confidence = parsed.get("confidence")
    if not _is_number(confidence) or not 70 <= confidence <= 100:
        logger.warning(f"[grokPulse] confidence out of range: {confidence}")
        return False

    one_liner = parsed.get("one_liner")
    if not isinstance(one_liner, str) or not 0 < len(one_liner) <= MAX_ONE_LINER_LENGTH:
        logger.warning("[grokPulse] one_liner invalid length")
        return False

    top_snippet = parsed.get("top_snippet")
    if not isinstance(top_snippet, str) or not 0 < len(top_snippet) <= MAX_TOP_SNIPPET_LENGTH:
        logger.warning("[grokPulse] top_snippet invalid length")
        return False

    low_confidence = parsed.get("low_confidence")
    if low_confidence is not None and not isinstance(low_confidence, bool):
        logger.warning(f"[grokPulse] low_confidence is not a boolean: {low_confidence}")
        return False

    supplied_hash = parsed.get("validation_hash")
    if not isinstance(supplied_hash, str):
        logger.warning("[grokPulse] validation_hash missing")
        return False

    computed_hash = compute_validation_hash(parsed)
    if supplied_hash != computed_hash:
        logger.warning(
            f"[grokPulse] validation_hash mismatch (expected={computed_hash}, received={supplied_hash})"
        )
        return False

    return True


def extract_json(text: str) -> Any:
    """
    Grok sometimes wraps JSON in fences; normalize and parse.
    """
    if "```json" in text:
        json_str = text.split("```json", 1)[1].split("```", 1)[0].strip()
    elif "```" in text:
        json_str = text.split("```", 1)[1].split("```", 1)[0].strip()
    else:
        json_str = text.strip()

    if not json_str:
        raise ValueError("No JSON content found in Grok response")

    return json.loads(json_str)


def parse_sentiment_response(raw_text: Any, now: Optional[float] = None) -> Optional[SentimentSnapshot]:
    """
    Turn Grok's message content into a validated snapshot.

    Args:
        raw_text: The assistant message content
        now: Unix time used for `ts` (defaults to the current time)

    Returns:
        SentimentSnapshot with source "grok", or None if anything is off
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        logger.error("[grokPulse] Grok returned empty content")
        return None

    try:
        parsed = extract_json(raw_text)
    except ValueError as e:
        logger.error(f"[grokPulse] Failed to parse Grok JSON: {e}")
        return None

    if not validate_sentiment_payload(parsed):
        return None

    ts = int(now if now is not None else time.time())
    return SentimentSnapshot(
        score=parsed["score"],
        label=parsed["label"],
        confidence=parsed["confidence"],
        one_liner=parsed["one_liner"],
        top_snippet=parsed["top_snippet"],
        cta=parsed["cta"],
        validation_hash=parsed["validation_hash"],
        low_confidence=parsed.get("low_confidence"),
        ts=ts,
        source=SnapshotSource.GROK,
    )


def build_prompt(ctx: GrokTokenContext) -> str:
    return SENTIMENT_PROMPT_TEMPLATE.format(
        symbol=ctx.symbol,
        address=ctx.address,
        context=ctx.context,
    )


# ============================================================================
# Client
# ============================================================================

class GrokClient:
    """Client for calling the Grok chat completions API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        *,
        model: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 2,
        http_client: Optional[httpx.AsyncClient] = None,
        use_shared_client: bool = True,
    ):
        """
        Initialize Grok client.

        Args:
            api_key: xAI API key (defaults to env var GROK_API_KEY)
            api_url: Full chat completions URL (defaults to GROK_API_URL)
            model: Model to use (defaults to GROK_MODEL)
            timeout: Request timeout in seconds
            max_retries: Attempts for network errors
            http_client: Pre-configured client (caller keeps ownership)
            use_shared_client: If True and no client is given, use the pooled singleton
        """
        self.api_key = api_key or os.getenv("GROK_API_KEY")
        if not self.api_key:
            raise ValueError("GROK_API_KEY not found in environment variables")

        self.api_url = api_url or os.getenv("GROK_API_URL", "").strip() or DEFAULT_GROK_API_URL
        self.model = model or os.getenv("GROK_MODEL", "").strip() or DEFAULT_GROK_MODEL
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._owns_client = False

        if http_client is not None:
            self.client = http_client
        elif use_shared_client:
            self.client = _get_shared_http_client(self.api_key)
        else:
            self.client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def _call_grok(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> str:
        """
        Call Grok and return the raw assistant content.

        Network errors are retried with exponential backoff; HTTP status and
        body errors are not.
        """
        payload = {
            "model": self.model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = await self.client.post(
                    self.api_url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                result = response.json()
                return result["choices"][0]["message"]["content"]

            except httpx.HTTPStatusError as e:
                raise RuntimeError(
                    f"Grok API error: {e.response.status_code} {e.response.reason_phrase}"
                )
            except (httpx.ReadError, httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    wait_time = (2 ** attempt) * 0.5
                    logger.warning(
                        f"[grokPulse] Grok network error (attempt {attempt + 1}/{self.max_retries}): {e}; "
                        f"retrying in {wait_time}s"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                raise RuntimeError(f"Grok API network error after {self.max_retries} attempts: {e}")
            except httpx.HTTPError as e:
                raise RuntimeError(f"Grok API error: {e}")
            except ValueError as e:
                raise RuntimeError(f"Failed to parse Grok response body: {e}")
            except (KeyError, IndexError, TypeError) as e:
                raise RuntimeError(f"Unexpected Grok response shape: {e!r}")

        raise RuntimeError(f"Grok API failed after {self.max_retries} attempts: {last_error}")

    async def score_sentiment(self, ctx: GrokTokenContext) -> Optional[SentimentSnapshot]:
        """
        Ask Grok for a sentiment verdict on one token.

        Args:
            ctx: Symbol, address and context text for the token

        Returns:
            Validated SentimentSnapshot, or None
        """
        raw_text = await self._call_grok(
            system_prompt=SENTIMENT_SYSTEM_PROMPT,
            user_prompt=build_prompt(ctx),
        )
        return parse_sentiment_response(raw_text)

    async def close(self):
        """Close the HTTP client (only if we own it, not for shared client)"""
        if self._owns_client and not self.client.is_closed:
            await self.client.aclose()


async def fetch_and_validate_grok_sentiment(
    ctx: GrokTokenContext,
    client: Optional[GrokClient] = None,
) -> Optional[SentimentSnapshot]:
    """
    Fetch a sentiment snapshot for one token, or None on any failure.

    Never raises: a missing API key, transport error, unparseable body or a
    payload failing validation all yield None.
    """
    if client is None:
        try:
            client = GrokClient()
        except ValueError:
            logger.warning("[grokPulse] GROK_API_KEY missing - skipping sentiment fetch")
            return None

    try:
        return await client.score_sentiment(ctx)
    except RuntimeError as e:
        logger.error(f"[grokPulse] Grok request failed: {e}")
        return None
    except Exception as e:
        logger.error(f"[grokPulse] Unexpected error scoring {ctx.address}: {e}", exc_info=True)
        return None
