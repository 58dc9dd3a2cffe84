"""
Shared fixtures for the pulse test suite.
"""
from typing import Any, Callable, Dict, List

import httpx
import pytest

from grok_pulse.config import PulseSettings, SourceArgs
from grok_pulse.grok_client import compute_validation_hash
from grok_pulse.kv import InMemoryKVStore, PulseStore
from grok_pulse.schemas import SentimentSnapshot, SnapshotSource


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv(clock) -> InMemoryKVStore:
    return InMemoryKVStore(clock=clock)


@pytest.fixture
def store(kv) -> PulseStore:
    return PulseStore(kv)


@pytest.fixture
def settings() -> PulseSettings:
    """Settings that never read the process environment"""
    return PulseSettings(
        sources=SourceArgs(),
        cron_secret="s3cret",
        grok_api_key="test-key",
        grok_api_url="https://grok.test/v1/chat/completions",
    )


def make_payload(**overrides: Any) -> Dict[str, Any]:
    """A Grok payload with a matching validation hash"""
    payload = {
        "score": 75,
        "label": "BULL",
        "confidence": 90,
        "one_liner": "Strong retail momentum",
        "top_snippet": "Volume up, mentions up",
        "cta": "WATCH",
    }
    payload.update(overrides)
    payload["validation_hash"] = compute_validation_hash(payload)
    return payload


def make_snapshot(score: float = 75, ts: int = 1_700_000_000) -> SentimentSnapshot:
    payload = make_payload(score=score)
    return SentimentSnapshot(**payload, ts=ts, source=SnapshotSource.GROK)


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class RecordingHandler:
    """
    MockTransport handler routing by URL substring and recording requests.

    Route values: dict/list → 200 JSON, int → that status, bytes → 200 raw
    body, Exception → raised.
    """

    def __init__(self, routes: Dict[str, Any]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for fragment, route in self.routes.items():
            if fragment not in url:
                continue
            if isinstance(route, Exception):
                raise route
            if isinstance(route, int):
                return httpx.Response(route, json={})
            if isinstance(route, bytes):
                return httpx.Response(200, content=route)
            return httpx.Response(200, json=route)
        return httpx.Response(404, json={})

    def urls(self) -> List[str]:
        return [str(request.url) for request in self.requests]
