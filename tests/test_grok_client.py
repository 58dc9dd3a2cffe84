"""
Tests for Grok response validation and the chat completions client.
"""
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import RecordingHandler, make_payload, mock_http_client
from grok_pulse.grok_client import (
    GrokClient,
    _js_dumps,
    _js_number,
    build_prompt,
    compute_validation_hash,
    extract_json,
    fetch_and_validate_grok_sentiment,
    parse_sentiment_response,
    validate_sentiment_payload,
)
from grok_pulse.schemas import GrokTokenContext, SentimentLabel, SnapshotSource

GROK_URL = "https://grok.test/v1/chat/completions"
CTX = GrokTokenContext(symbol="BONK", address="So1Addr", context="Token: BONK (So1Addr)")


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


# --- hashing ---

def test_validation_hash_known_vector():
    payload = {
        "score": 10,
        "label": "BULL",
        "confidence": 80,
        "one_liner": "ok",
        "top_snippet": "ctx",
        "cta": "WATCH",
    }
    expected = "f35dbe957ea0d382aa169c60aa17b664d9fd6cf73cc460d79bb63a6c3aab799a"
    assert compute_validation_hash(payload) == expected
    # Key order, an existing hash and integral floats do not change the digest
    reordered = dict(reversed(list(payload.items())), validation_hash="stale")
    assert compute_validation_hash(reordered) == expected
    assert compute_validation_hash({**payload, "score": 10.0}) == expected


def test_validation_hash_prints_small_floats_like_javascript():
    payload = {
        "score": 5e-05,
        "label": "BULL",
        "confidence": 80,
        "one_liner": "ok",
        "top_snippet": "ctx",
        "cta": "WATCH",
    }
    # sha256 of ...,"score":0.00005,... as produced by JSON.stringify
    expected = "99e320e0bde61cb3cc455c25020e1c6d0f383928aebf5e92b95f9f756e8da2af"
    assert compute_validation_hash(payload) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        (10.0, "10"),
        (-0.0, "0"),
        (0.1, "0.1"),
        (-12.5, "-12.5"),
        (123.456, "123.456"),
        (5e-05, "0.00005"),
        (1e-06, "0.000001"),
        (1e-07, "1e-7"),
        (-1.5e-07, "-1.5e-7"),
        (1.5e20, "150000000000000000000"),
        (1e21, "1e+21"),
        (1.5e22, "1.5e+22"),
    ],
)
def test_js_number_formatting(value, expected):
    assert _js_number(value) == expected


def test_js_dumps_is_compact_sorted_and_keeps_unicode():
    assert _js_dumps({"b": [1, 2.5, True, None], "a": "café"}) == '{"a":"café","b":[1,2.5,true,null]}'


# --- validation ---

def test_valid_payload_passes():
    assert validate_sentiment_payload(make_payload())
    assert validate_sentiment_payload(make_payload(low_confidence=True, score=-100, confidence=100))


def test_hash_mismatch_is_rejected():
    payload = make_payload()
    payload["score"] = 76
    assert not validate_sentiment_payload(payload)


@pytest.mark.parametrize(
    "overrides",
    [
        {"score": 101},
        {"score": -100.5},
        {"score": "75"},
        {"score": True},
        {"confidence": 50},
        {"confidence": 100.1},
        {"label": "bull"},
        {"cta": "HODL"},
        {"one_liner": ""},
        {"one_liner": "x" * 241},
        {"top_snippet": "x" * 801},
        {"low_confidence": "yes"},
    ],
)
def test_invalid_fields_are_rejected_even_with_matching_hash(overrides):
    assert not validate_sentiment_payload(make_payload(**overrides))


@pytest.mark.parametrize(
    "overrides",
    [{"label": ["BULL"]}, {"label": {"a": 1}}, {"cta": ["WATCH"]}, {"cta": {"a": 1}}],
)
def test_container_label_or_cta_is_rejected_not_raised(overrides):
    assert validate_sentiment_payload(make_payload(**overrides)) is False


def test_length_limits_are_inclusive():
    assert validate_sentiment_payload(make_payload(one_liner="x" * 240, top_snippet="y" * 800))


def test_missing_hash_and_non_objects_are_rejected():
    payload = make_payload()
    del payload["validation_hash"]
    assert not validate_sentiment_payload(payload)
    assert not validate_sentiment_payload([make_payload()])
    assert not validate_sentiment_payload(None)


# --- parsing ---

def test_extract_json_strips_code_fences():
    payload = make_payload()
    assert extract_json(f"```json\n{json.dumps(payload)}\n```") == payload
    assert extract_json(f"Here you go:\n```\n{json.dumps(payload)}\n```") == payload
    with pytest.raises(ValueError):
        extract_json("```json\n```")


def test_parse_sentiment_response():
    payload = make_payload(low_confidence=True)
    snapshot = parse_sentiment_response(json.dumps(payload), now=1_700_000_123.9)

    assert snapshot.score == 75
    assert snapshot.label is SentimentLabel.BULL
    assert snapshot.ts == 1_700_000_123
    assert snapshot.low_confidence is True
    assert snapshot.source is SnapshotSource.GROK
    assert snapshot.delta is None


@pytest.mark.parametrize("raw", ["", "   ", None, "not json at all", "[1, 2]", '{"score": 10}'])
def test_parse_sentiment_response_rejects_garbage(raw):
    assert parse_sentiment_response(raw) is None


def test_build_prompt_embeds_token_and_context():
    prompt = build_prompt(CTX)
    assert "Token: BONK (So1Addr)" in prompt
    assert "Data: Token: BONK (So1Addr)" in prompt
    assert '"validation_hash"' in prompt
    assert "{symbol}" not in prompt


# --- client ---

@pytest.mark.asyncio
async def test_score_sentiment_posts_chat_completion():
    handler = RecordingHandler({"grok.test": completion(json.dumps(make_payload()))})
    async with mock_http_client(handler) as http_client:
        client = GrokClient(api_key="k", api_url=GROK_URL, model="grok-test", http_client=http_client)
        snapshot = await client.score_sentiment(CTX)

    assert snapshot is not None
    assert snapshot.cta.value == "WATCH"
    request = handler.requests[0]
    assert request.method == "POST"
    assert request.headers["authorization"] == "Bearer k"
    body = json.loads(request.content)
    assert body["model"] == "grok-test"
    assert body["temperature"] == 0.15
    assert body["max_tokens"] == 400
    assert [m["role"] for m in body["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_fetch_returns_none_on_http_error_status():
    handler = RecordingHandler({"grok.test": 500})
    async with mock_http_client(handler) as http_client:
        client = GrokClient(api_key="k", api_url=GROK_URL, http_client=http_client)
        assert await fetch_and_validate_grok_sentiment(CTX, client) is None
    assert len(handler.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [b"<html>oops</html>", json.dumps({"choices": []}).encode(), json.dumps(completion("nope")).encode()],
)
async def test_fetch_returns_none_on_malformed_body(body):
    handler = RecordingHandler({"grok.test": body})
    async with mock_http_client(handler) as http_client:
        client = GrokClient(api_key="k", api_url=GROK_URL, http_client=http_client)
        assert await fetch_and_validate_grok_sentiment(CTX, client) is None


@pytest.mark.asyncio
async def test_network_errors_are_retried_then_give_up():
    handler = RecordingHandler({"grok.test": httpx.ConnectError("refused")})
    async with mock_http_client(handler) as http_client:
        client = GrokClient(api_key="k", api_url=GROK_URL, http_client=http_client, max_retries=2)
        assert await fetch_and_validate_grok_sentiment(CTX, client) is None
    assert len(handler.requests) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"label": ["BULL"]}, {"label": {"a": 1}}, {"cta": ["WATCH"]}, {"cta": {"a": 1}}],
)
async def test_fetch_returns_none_for_container_label_or_cta(overrides):
    handler = RecordingHandler({"grok.test": completion(json.dumps(make_payload(**overrides)))})
    async with mock_http_client(handler) as http_client:
        client = GrokClient(api_key="k", api_url=GROK_URL, http_client=http_client)
        assert await fetch_and_validate_grok_sentiment(CTX, client) is None
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_fetch_swallows_unexpected_errors():
    client = GrokClient(api_key="k", api_url=GROK_URL, use_shared_client=False)
    with patch.object(client, "score_sentiment", new=AsyncMock(side_effect=TypeError("boom"))):
        assert await fetch_and_validate_grok_sentiment(CTX, client) is None
    await client.close()


@pytest.mark.asyncio
async def test_missing_api_key_yields_none(monkeypatch):
    monkeypatch.delenv("GROK_API_KEY", raising=False)
    with pytest.raises(ValueError):
        GrokClient()
    assert await fetch_and_validate_grok_sentiment(CTX) is None


@pytest.mark.asyncio
async def test_close_leaves_injected_client_open():
    async with mock_http_client(RecordingHandler({})) as http_client:
        client = GrokClient(api_key="k", http_client=http_client)
        await client.close()
        assert not http_client.is_closed

    owned = GrokClient(api_key="k", use_shared_client=False)
    await owned.close()
    assert owned.client.is_closed
