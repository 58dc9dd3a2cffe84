"""
Pulse Server - FastAPI surface for the Grok Pulse sentiment pipeline

Routes:
  POST /api/grok-pulse?action=cron                  → Cron run (Bearer auth)
  GET  /api/grok-pulse?action=state[&addresses=X,Y] → Sentiments + history
  POST /api/grok-pulse?action=sentiment             → Score a single token
  GET  /api/grok-pulse?action=context&address=X     → Get/build context for a token
"""

# Standard library
import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

# Third-party
import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Local - pulse pipeline
from grok_pulse.config import PulseSettings
from grok_pulse.context_builder import build_enhanced_grok_context, build_minimal_context
from grok_pulse.fallback import build_keyword_sentiment_fallback
from grok_pulse.grok_client import GrokClient, fetch_and_validate_grok_sentiment
from grok_pulse.kv import InMemoryKVStore, PulseStore, RedisKVStore
from grok_pulse.orchestrator import record_snapshot, run_grok_pulse_cron
from grok_pulse.schemas import EnhancedContext, GrokTokenContext, Token, sanitize_symbol
from grok_pulse.sources import fetch_watchlist_tokens

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("pulse_server")


# --- App state ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = PulseSettings.from_env()
    if settings.redis_url:
        logger.info("💾 Using Redis KV store")
        kv = RedisKVStore(settings.redis_url)
    else:
        logger.warning("💾 REDIS_URL not set, using in-memory KV store")
        kv = InMemoryKVStore()
    app.state.store = PulseStore(kv)
    app.state.http_client = httpx.AsyncClient()
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        await kv.close()


def get_settings() -> PulseSettings:
    return PulseSettings.from_env()


def get_store(request: Request) -> PulseStore:
    return request.app.state.store


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


# --- FastAPI App ---

app = FastAPI(
    title="Grok Pulse Server",
    description="Scheduled Grok sentiment for Solana tokens",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def json_response(data: Dict[str, Any], status: int = 200) -> JSONResponse:
    return JSONResponse(content=data, status_code=status)


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    logger.info(f"📥 {request.method} {request.url.path} from {request.client.host if request.client else 'unknown'}")
    response = await call_next(request)
    logger.info(f"📤 {request.method} {request.url.path} -> {response.status_code}")
    return response


@app.api_route("/api/grok-pulse", methods=["GET", "POST"])
async def grok_pulse(
    request: Request,
    settings: PulseSettings = Depends(get_settings),
    store: PulseStore = Depends(get_store),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    """Dispatch on the `action` query parameter"""
    action = request.query_params.get("action")
    try:
        if action == "cron":
            return await handle_cron(request, settings, store, http_client)
        if action == "state":
            return await handle_state(request, store)
        if action == "sentiment":
            return await handle_sentiment(request, settings, store, http_client)
        if action == "context":
            return await handle_context(request, settings, store, http_client)
        return json_response(
            {"ok": False, "error": "Unknown action. Use ?action=cron|state|sentiment|context"},
            400,
        )
    except Exception as e:
        logger.error(f"❌ [grok-pulse] Handler error: {e}", exc_info=True)
        return json_response({"ok": False, "error": str(e) or "Internal error"}, 500)


# ============================================================================
# CRON
# ============================================================================

async def handle_cron(
    request: Request,
    settings: PulseSettings,
    store: PulseStore,
    http_client: httpx.AsyncClient,
) -> JSONResponse:
    if request.method != "POST":
        return json_response({"ok": False, "error": "Method not allowed"}, 405)

    secret = settings.cron_secret
    if not secret:
        logger.error("❌ [cron] PULSE_CRON_SECRET not configured")
        return json_response({"ok": False, "error": "PULSE_CRON_SECRET not configured"}, 500)

    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or token.strip() != secret:
        logger.warning("⚠️ [cron] Unauthorized cron trigger")
        return json_response({"ok": False, "error": "Unauthorized"}, 401)

    try:
        result = await run_grok_pulse_cron(store, settings, http_client=http_client)
    except Exception as e:
        logger.error(f"❌ [cron] Cron execution failed: {e}", exc_info=True)
        return json_response({"ok": False, "error": "Cron execution failed"}, 500)

    return json_response({"ok": True, **result.to_dict()})


# ============================================================================
# STATE
# ============================================================================

async def handle_state(request: Request, store: PulseStore) -> JSONResponse:
    addresses_param = (request.query_params.get("addresses") or "").strip()
    if addresses_param:
        addresses = [addr.strip() for addr in addresses_param.split(",") if addr.strip()]
    else:
        addresses = [token.address for token in await store.get_global_list()]

    sentiments_by_address: Dict[str, Optional[Dict[str, Any]]] = {}
    history_by_address: Dict[str, List[Dict[str, Any]]] = {}

    for address in addresses:
        try:
            snapshot = await store.get_current_snapshot(address)
            history = await store.get_history(address)
            sentiments_by_address[address] = snapshot.to_dict() if snapshot else None
            history_by_address[address] = [entry.model_dump() for entry in history]
        except Exception as e:
            logger.error(f"[grokPulse] failed to read state for {address}: {e}")
            sentiments_by_address[address] = None
            history_by_address[address] = []

    meta = await store.get_meta_last_run()
    return json_response({
        "sentimentsByAddress": sentiments_by_address,
        "historyByAddress": history_by_address,
        "lastPulseTs": meta.ts if meta else None,
    })


# ============================================================================
# SENTIMENT
# ============================================================================

async def _load_watchlist(store: PulseStore, settings: PulseSettings) -> List[Token]:
    try:
        return await fetch_watchlist_tokens(store, settings)
    except Exception as e:
        logger.warning(f"[grokPulse] watchlist unavailable: {e}")
        return []


def _grok_client(settings: PulseSettings) -> Optional[GrokClient]:
    if not settings.grok_api_key:
        return None
    return GrokClient(
        api_key=settings.grok_api_key,
        api_url=settings.grok_api_url,
        model=settings.grok_model,
    )


async def handle_sentiment(
    request: Request,
    settings: PulseSettings,
    store: PulseStore,
    http_client: httpx.AsyncClient,
) -> JSONResponse:
    if request.method != "POST":
        return json_response({"ok": False, "error": "Method not allowed"}, 405)

    try:
        payload = await request.json()
    except ValueError:
        return json_response({"ok": False, "error": "Invalid JSON"}, 400)
    if not isinstance(payload, dict):
        payload = {}

    address = payload.get("address")
    address = address.strip() if isinstance(address, str) else ""
    if not address:
        return json_response({"ok": False, "error": "address is required"}, 400)

    token = Token(address=address, symbol=sanitize_symbol(payload.get("symbol")))

    cached_context = await store.get_cached_token_context(address)
    if cached_context:
        context = EnhancedContext(context=cached_context)
    else:
        watchlist = await _load_watchlist(store, settings)
        try:
            context = await build_enhanced_grok_context(
                token, settings.sources, http_client, watchlist_tokens=watchlist
            )
        except Exception as e:
            logger.warning(f"[grokPulse] sentiment context builder failed: {e}")
            context = build_minimal_context(token)
        await store.cache_token_context(address, context.context)

    snapshot = await fetch_and_validate_grok_sentiment(
        GrokTokenContext(symbol=token.symbol, address=token.address, context=context.context),
        _grok_client(settings),
    )
    if snapshot is None:
        logger.info(f"🔁 [sentiment] Grok unavailable for {address}, using keyword fallback")
        snapshot = build_keyword_sentiment_fallback(token, context.context)

    await record_snapshot(store, token, snapshot)

    return json_response({"ok": True, "snapshot": snapshot.to_dict(), "context": context.context})


# ============================================================================
# CONTEXT
# ============================================================================

async def handle_context(
    request: Request,
    settings: PulseSettings,
    store: PulseStore,
    http_client: httpx.AsyncClient,
) -> JSONResponse:
    address = (request.query_params.get("address") or "").strip()
    if not address:
        return json_response({"ok": False, "error": "address is required"}, 400)

    token = Token(address=address, symbol=sanitize_symbol(request.query_params.get("symbol")))

    async def load_global_list() -> List[Token]:
        try:
            return await store.get_global_list()
        except Exception as e:
            logger.warning(f"[grokPulse] global list unavailable: {e}")
            return []

    watchlist, global_list = await asyncio.gather(
        _load_watchlist(store, settings),
        load_global_list(),
    )

    cached = await store.get_cached_token_context(address)
    if cached:
        return json_response({
            "ok": True,
            "context": cached,
            "source": "cache",
            "meta": {"inGlobalList": any(item.address == address for item in global_list)},
        })

    try:
        context = await build_enhanced_grok_context(
            token, settings.sources, http_client, watchlist_tokens=watchlist
        )
    except Exception as e:
        logger.error(f"❌ [context] build failed for {address}: {e}", exc_info=True)
        return json_response({"ok": False, "error": "Context build failed"}, 500)

    await store.cache_token_context(address, context.context)

    return json_response({
        "ok": True,
        "context": context.context,
        "social": context.social.total,
        "watchlist": context.watchlist_hit,
        "source": context.onchain.source.value if context.onchain else None,
    })


# --- Main ---

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    print(f"🚀 Starting Grok Pulse Server on port {port}")
    print(f"⏰ Cron endpoint: POST http://localhost:{port}/api/grok-pulse?action=cron")

    uvicorn.run(app, host="0.0.0.0", port=port)
