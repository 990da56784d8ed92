# app_bridge.py - v6.0.0
# Bridge de Purchase: Pixel (browser) x CAPI (servidor) com dedupe por event_id,
# timeouts, safe background tasks e logs JSON.
import os
import json
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable

from fastapi import FastAPI, Request, Header, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, ConfigDict
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, Counter
from sqlalchemy.exc import SQLAlchemyError

from purchase_tracking.db import DedupStore, make_engine, init_db, DATABASE_URL
from purchase_tracking.fb_capi import PurchaseTracker, RecentEventCache
from purchase_tracking.sanitizer import CallSanitizer
from purchase_tracking.tracking_cookies import parse_cookies, resolve_fbp, resolve_fbc, capture_utms
from purchase_tracking.utils import generate_event_id, PURCHASE_EVENT

# -----------------------
# JSON logger
# -----------------------
class JSONFormatter(logging.Formatter):
    def format(self, record):
        log = {
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "level": record.levelname,
            "message": record.getMessage(),
            "name": record.name,
        }
        if record.exc_info:
            log["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False)

LOG_LEVEL = os.getenv("BRIDGE_LOG_LEVEL", "INFO")
logger = logging.getLogger("bridge")
logger.setLevel(LOG_LEVEL)
_ch = logging.StreamHandler()
_ch.setFormatter(JSONFormatter())
logger.handlers = []
logger.addHandler(_ch)

# -----------------------
# ENV / tunables
# -----------------------
BRIDGE_API_KEY  = os.getenv("BRIDGE_API_KEY", "")
ALLOWED_ORIGINS = [o.strip() for o in (os.getenv("ALLOWED_ORIGINS", "") or "").split(",") if o.strip()]
BRIDGE_TASK_TIMEOUT = float(os.getenv("BRIDGE_TASK_TIMEOUT", "15"))

BRIDGE_REQUESTS = Counter("bridge_requests_total", "Requisições por rota e status", ["route", "status"])

def _mask(v: str) -> str:
    if not v:
        return ""
    if len(v) <= 6:
        return "***"
    return v[:3] + "***" + v[-3:]

# -----------------------
# Estado explícito (sem globais mutáveis)
# -----------------------
@dataclass
class BridgeState:
    store: Optional[DedupStore] = None
    tracker: Optional[PurchaseTracker] = None
    sanitizer: CallSanitizer = field(default_factory=CallSanitizer)
    cache: Optional[RecentEventCache] = None
    tasks: set = field(default_factory=set)

    @classmethod
    def from_env(cls) -> "BridgeState":
        state = cls()
        if not DATABASE_URL:
            logger.warning(json.dumps({"event": "DB_DISABLED", "reason": "DATABASE_URL missing"}))
            return state
        engine = make_engine()
        init_db(engine)
        state.store = DedupStore(engine)
        state.cache = RecentEventCache.from_env()
        state.tracker = PurchaseTracker(state.store, cache=state.cache)
        return state

    def require_tracker(self) -> PurchaseTracker:
        if not self.tracker or not self.store:
            raise HTTPException(status_code=503, detail="dedup store unavailable")
        return self.tracker

# -----------------------
# Pydantic schemas (v2)
# -----------------------
class PurchasePayload(BaseModel):
    model_config = ConfigDict(
        protected_namespaces=(),
        populate_by_name=True,
        extra="allow"
    )

    transaction_id: Optional[str] = None
    event_id: Optional[str] = None
    event_time: Optional[int] = None

    value: Optional[float] = None
    price_cents: Optional[int] = None
    currency: Optional[str] = None

    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    payer_name: Optional[str] = None
    payer_cpf: Optional[str] = None
    external_id: Optional[str] = None

    fbp: Optional[str] = Field(default=None, alias="_fbp")
    fbc: Optional[str] = Field(default=None, alias="_fbc")
    fbclid: Optional[str] = None

    event_source_url: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

class EventIdRequest(BaseModel):
    kind: str = PURCHASE_EVENT
    transaction_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: Optional[int] = None

class PixelCallRequest(BaseModel):
    args: List[Any]

# -----------------------
# auth / request helpers
# -----------------------
def _parse_authorization(header_val: Optional[str]) -> Optional[str]:
    if not header_val:
        return None
    parts = header_val.strip().split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None

def _auth_guard(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    authorization: Optional[str] = Header(default=None),
):
    if not BRIDGE_API_KEY:
        return
    supplied = x_api_key or _parse_authorization(authorization)
    if supplied != BRIDGE_API_KEY:
        logger.warning(json.dumps({"event": "AUTH_FAIL", "reason": "token_mismatch"}))
        raise HTTPException(status_code=401, detail="Unauthorized")

def _extract_client_ip(req: Request) -> Optional[str]:
    for h in ("CF-Connecting-IP", "X-Real-IP", "X-Forwarded-For", "X-Client-IP"):
        v = req.headers.get(h)
        if v:
            return v.split(",")[0].strip()
    return req.client.host if req.client else None

def _enrich_purchase(data: Dict[str, Any], req: Request) -> Dict[str, Any]:
    """Completa fbp/fbc/ip/ua/url/UTMs a partir da requisição, sem sobrescrever o body."""
    data = dict(data or {})
    ck = parse_cookies(req.headers.get("cookie"))
    qs = dict(req.query_params) if req.query_params else {}

    fbp = resolve_fbp(ck, data)
    fbc = resolve_fbc(ck, data, fbclid=qs.get("fbclid"))
    if fbp:
        data["fbp"] = fbp
    if fbc:
        data["fbc"] = fbc

    data.setdefault("client_ip_address", _extract_client_ip(req))
    data.setdefault("client_user_agent", req.headers.get("user-agent"))

    referer = req.headers.get("Referer") or req.headers.get("referer")
    if not data.get("event_source_url") and referer:
        data["event_source_url"] = referer

    for k, v in capture_utms(qs).items():
        if not data.get(k):
            data[k] = v

    logger.info(json.dumps({
        "event": "PURCHASE_ENRICHED",
        "transaction_id": data.get("transaction_id"),
        "has_fbp": bool(data.get("fbp")),
        "has_fbc": bool(data.get("fbc")),
        "has_ip": bool(data.get("client_ip_address")),
    }))
    return data

# -----------------------
# safe background runner
# -----------------------
async def _safe_background_runner(coro_fn: Callable, *args, timeout: float = BRIDGE_TASK_TIMEOUT, tag: str = "task"):
    try:
        return await asyncio.wait_for(coro_fn(*args), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(json.dumps({"event": "TASK_TIMEOUT", "tag": tag, "timeout": timeout}))
    except Exception as e:
        logger.exception(json.dumps({"event": "TASK_ERROR", "tag": tag, "error": str(e)}))
    return None

# -----------------------
# App factory
# -----------------------
def create_app(state: Optional[BridgeState] = None) -> FastAPI:
    app = FastAPI(title="Purchase Dedup Bridge", version="6.0.0")
    app.state.bridge = state
    if ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _state() -> BridgeState:
        if app.state.bridge is None:
            app.state.bridge = BridgeState.from_env()
        return app.state.bridge

    @app.on_event("startup")
    async def _on_startup():
        _state()
        logger.info(json.dumps({
            "event": "BRIDGE_STARTUP",
            "has_api_key": bool(BRIDGE_API_KEY),
            "api_key_masked": _mask(BRIDGE_API_KEY),
            "allowed_origins": ALLOWED_ORIGINS,
        }))

    @app.get("/health")
    async def health():
        st = _state()
        db_status = "disabled"
        if st.store:
            try:
                await asyncio.get_running_loop().run_in_executor(None, st.store.ping)
                db_status = "ok"
            except SQLAlchemyError as e:
                db_status = f"error: {e}"
        redis_status = "unavailable"
        if st.cache and st.cache.redis is not None:
            redis_status = "ok"
        return {"status": "ok", "db": db_status, "redis": redis_status}

    @app.post("/purchase/event-id", dependencies=[Depends(_auth_guard)])
    async def event_id(body: EventIdRequest):
        payload = body.model_dump(exclude_none=True)
        return {"event_id": generate_event_id(body.kind, payload)}

    @app.post("/purchase/pixel", dependencies=[Depends(_auth_guard)])
    async def purchase_pixel(req: Request, body: PurchasePayload):
        tracker = _state().require_tracker()
        data = _enrich_purchase(body.model_dump(exclude_none=True), req)
        res = await tracker.register_pixel_dispatch(data)
        BRIDGE_REQUESTS.labels(route="pixel", status=res["status"]).inc()
        return {"send": res["send"], "event_id": res["event_id"], "status": res["status"]}

    @app.post("/purchase/capi", dependencies=[Depends(_auth_guard)])
    async def purchase_capi(req: Request, body: PurchasePayload, wait: bool = False):
        st = _state()
        tracker = st.require_tracker()
        data = _enrich_purchase(body.model_dump(exclude_none=True), req)
        event_id = tracker.event_id_for(data)
        data["event_id"] = event_id

        if wait:
            res = await tracker.track_purchase(data)
            BRIDGE_REQUESTS.labels(route="capi", status=res["status"]).inc()
            return res

        # fire-and-forget: tracking nunca segura a resposta ao usuário
        task = asyncio.create_task(_safe_background_runner(tracker.track_purchase, data, tag="track_purchase"))
        st.tasks.add(task)
        task.add_done_callback(st.tasks.discard)
        BRIDGE_REQUESTS.labels(route="capi", status="queued").inc()
        return {"status": "queued", "event_id": event_id}

    @app.post("/pixel/sanitize", dependencies=[Depends(_auth_guard)])
    async def pixel_sanitize(body: PixelCallRequest):
        return {"args": _state().sanitizer.sanitize(body.args)}

    @app.get("/dedup/stats", dependencies=[Depends(_auth_guard)])
    async def dedup_stats():
        st = _state()
        st.require_tracker()
        return await st.store.astats()

    @app.post("/dedup/purge", dependencies=[Depends(_auth_guard)])
    async def dedup_purge():
        st = _state()
        st.require_tracker()
        deleted = await st.store.apurge_expired()
        return {"deleted": deleted}

    @app.get("/dedup/transaction/{transaction_id}", dependencies=[Depends(_auth_guard)])
    async def dedup_by_transaction(transaction_id: str):
        st = _state()
        st.require_tracker()
        rows = await st.store.aget_by_transaction_id(transaction_id)
        if not rows:
            raise HTTPException(status_code=404, detail="transaction not found")
        return {"transaction_id": transaction_id, "records": rows}

    @app.get("/dedup/{event_id}", dependencies=[Depends(_auth_guard)])
    async def dedup_by_event(event_id: str):
        st = _state()
        st.require_tracker()
        row = await st.store.aget_by_event_id(event_id)
        if not row:
            raise HTTPException(status_code=404, detail="event not found")
        return row

    @app.get("/metrics")
    async def metrics():
        return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app

app = create_app()
