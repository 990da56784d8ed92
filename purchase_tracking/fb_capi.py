# fb_capi.py - v2.0
# (Purchase via Conversions API; dedupe Pixel x CAPI por event_id; logs sem segredos)
# - event_id = "pur:<transaction_id>" (mesmo id que o Pixel usa no browser).
# - Cache rápido "visto recentemente": Redis (SET NX EX) com fallback em memória.
# - Fonte da verdade: DedupStore (UNIQUE event_id). Só envia se inseriu.
# - Retry exponencial com jitter apenas para rede/5xx.
# - Falha de banco/rede NUNCA sobe para o fluxo do usuário: loga e devolve status.

import os, json, time, random, asyncio, logging
from typing import Dict, Any, Optional, Callable, Awaitable

import aiohttp
from redis import Redis, RedisError
from sqlalchemy.exc import SQLAlchemyError

from purchase_tracking.db import DedupStore, DedupRecord
from purchase_tracking.utils import (
    PURCHASE_EVENT,
    generate_event_id,
    clamp_event_time,
    normalize_url,
    normalize_user_fields,
    build_advanced_matching,
    normalization_snapshot,
    strip_empty,
)

# ============================
# Configurações de ENV
# ============================
REDIS_URL = os.getenv("REDIS_URL", "")
FB_DEDUP_TTL_SEC = int(os.getenv("FB_DEDUP_TTL_SEC", "600"))
FB_DEDUP_PREFIX = os.getenv("FB_DEDUP_PREFIX", "capi:pur:")

FB_API_VERSION = os.getenv("FB_API_VERSION", "v20.0")
FB_PIXEL_ID = os.getenv("FB_PIXEL_ID", "")
FB_ACCESS_TOKEN = os.getenv("FB_ACCESS_TOKEN", "")
FB_TEST_EVENT_CODE = (os.getenv("FB_TEST_EVENT_CODE") or "").strip()
ACTION_SOURCE = os.getenv("FB_ACTION_SOURCE", "website")

HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "10"))
FB_RETRY_MAX = int(os.getenv("FB_RETRY_MAX", "3"))
FB_RETRY_BACKOFF_SEC = float(os.getenv("FB_RETRY_BACKOFF_SEC", "0.3"))
FB_RETRY_JITTER_SEC = float(os.getenv("FB_RETRY_JITTER_SEC", "0.25"))
FB_DEDUP_MEM_MAX = int(os.getenv("FB_DEDUP_MEM_MAX", "1000"))
FB_LOG_PAYLOAD_ON_ERROR = os.getenv("FB_LOG_PAYLOAD_ON_ERROR", "0") == "1"

logger = logging.getLogger("fb_capi")

# ============================
# Cache "visto recentemente"
# ============================
class RecentEventCache:
    """
    Atalho antes do banco. check_and_mark:
    True => não visto (marca e segue); False => visto dentro do TTL.
    forget desfaz a marca quando o registro no banco não se confirmou.
    """

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        ttl_sec: int = FB_DEDUP_TTL_SEC,
        prefix: str = FB_DEDUP_PREFIX,
        max_size: int = FB_DEDUP_MEM_MAX,
    ):
        self.redis = redis_client
        self.ttl_sec = ttl_sec
        self.prefix = prefix
        self.max_size = max_size
        self._mem: Dict[str, float] = {}  # {event_id: expires_ts}, ordem de inserção

    @classmethod
    def from_env(cls) -> "RecentEventCache":
        client = None
        if REDIS_URL:
            try:
                client = Redis.from_url(
                    REDIS_URL,
                    socket_timeout=1.5,
                    socket_connect_timeout=1.5,
                    decode_responses=True,
                )
                client.ping()
                logger.info(json.dumps({"event": "REDIS_OK"}))
            except RedisError as e:
                logger.warning(json.dumps({"event": "REDIS_FAIL", "error": str(e)}))
                client = None
        return cls(redis_client=client)

    def check_and_mark(self, event_id: str) -> bool:
        if self.redis is not None:
            try:
                return bool(self.redis.set(self.prefix + event_id, "1", nx=True, ex=self.ttl_sec))
            except RedisError as e:
                logger.warning(json.dumps({"event": "REDIS_SETNX_FAIL", "error": str(e)}))

        now = time.time()
        # limpeza rápida
        for k in [k for k, exp in self._mem.items() if exp <= now]:
            self._mem.pop(k, None)
        if self._mem.get(event_id, 0) > now:
            return False
        while self.max_size > 0 and len(self._mem) >= self.max_size:
            # descarta o mais antigo
            self._mem.pop(next(iter(self._mem)))
        self._mem[event_id] = now + self.ttl_sec
        return True

    def forget(self, event_id: str) -> None:
        if self.redis is not None:
            try:
                self.redis.delete(self.prefix + event_id)
            except RedisError as e:
                logger.warning(json.dumps({"event": "REDIS_DEL_FAIL", "error": str(e)}))
        self._mem.pop(event_id, None)

# ============================
# Payload
# ============================
def _build_fb_url() -> str:
    return f"https://graph.facebook.com/{FB_API_VERSION}/{FB_PIXEL_ID}/events"

def _purchase_value(purchase: Dict[str, Any]) -> Optional[float]:
    if purchase.get("value") is not None:
        try:
            return round(float(purchase["value"]), 2)
        except (TypeError, ValueError):
            return None
    if purchase.get("price_cents") is not None:
        try:
            return round(int(purchase["price_cents"]) / 100, 2)
        except (TypeError, ValueError):
            return None
    return None

def build_purchase_payload(purchase: Dict[str, Any], event_id: str) -> Dict[str, Any]:
    """
    Monta o corpo da CAPI para Purchase.
    - user_data: hashes SHA256 (em/ph/fn/ln/external_id) + fbp/fbc/ip/ua em claro
    - custom_data: valor/moeda/transaction_id/UTMs
    """
    normalized = normalize_user_fields(purchase)
    user_data = build_advanced_matching(normalized)
    user_data.update(strip_empty({
        "fbp": purchase.get("fbp"),
        "fbc": purchase.get("fbc"),
        "client_ip_address": purchase.get("client_ip_address") or purchase.get("ip_address"),
        "client_user_agent": purchase.get("client_user_agent") or purchase.get("user_agent"),
    }))

    value = _purchase_value(purchase)
    custom_data = strip_empty({
        "value": value,
        "currency": (purchase.get("currency") or "BRL") if value is not None else None,
        "transaction_id": purchase.get("transaction_id"),
        "utm_source": purchase.get("utm_source"),
        "utm_medium": purchase.get("utm_medium"),
        "utm_campaign": purchase.get("utm_campaign"),
        "utm_term": purchase.get("utm_term"),
        "utm_content": purchase.get("utm_content"),
    })

    event = {
        "event_name": purchase.get("event_name") or PURCHASE_EVENT,
        "event_time": clamp_event_time(purchase.get("event_time")),
        "event_id": event_id,
        "action_source": ACTION_SOURCE,
        "user_data": user_data,
        "custom_data": custom_data,
    }
    url = normalize_url(purchase.get("event_source_url"))
    if url:
        event["event_source_url"] = url

    payload: Dict[str, Any] = {"data": [event]}
    if FB_TEST_EVENT_CODE:
        payload["test_event_code"] = FB_TEST_EVENT_CODE

    logger.info(json.dumps({
        "event": "CAPI_PAYLOAD",
        "event_id": event_id,
        "transaction_id": purchase.get("transaction_id"),
        "normalization": normalization_snapshot(normalized),
        "user_data_fields": sorted(user_data.keys()),
    }))
    return payload

# ============================
# HTTP
# ============================
def _scrub_token(text: Optional[str]) -> Optional[str]:
    if text and FB_ACCESS_TOKEN:
        return text.replace(FB_ACCESS_TOKEN, "***")
    return text

async def _post_with_retry(url: str, payload: Dict[str, Any], retries: int = FB_RETRY_MAX) -> Dict[str, Any]:
    """
    POST com retry exponencial + jitter (só rede/5xx). 4xx não adianta repetir.
    Retorna: {ok, status, body|error, attempt}; o token nunca entra no log.
    """
    retries = max(1, retries)
    last_err = None
    status = None
    timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SEC)
    params = {"access_token": FB_ACCESS_TOKEN}

    async with aiohttp.ClientSession(timeout=timeout) as session:
        for attempt in range(1, retries + 1):
            try:
                async with session.post(url, params=params, json=payload) as resp:
                    text = await resp.text()
                    status = resp.status
                    if 200 <= resp.status < 300:
                        return {"ok": True, "status": resp.status, "body": text, "attempt": attempt}
                    last_err = f"{resp.status}: {text}"
                    if resp.status < 500:
                        break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_err = str(e)
                status = None

            if attempt < retries:
                await asyncio.sleep(FB_RETRY_BACKOFF_SEC * (2 ** (attempt - 1)) + random.random() * FB_RETRY_JITTER_SEC)

    meta = {}
    data = payload.get("data") or [{}]
    if data:
        meta = {"event_name": data[0].get("event_name"), "event_id": data[0].get("event_id")}
    log_body = {
        "event": "POST_RETRY_FAILED",
        "url": url,
        "status_or_error": _scrub_token(last_err),
        "attempts": attempt,
        "payload_meta": meta,
    }
    if FB_LOG_PAYLOAD_ON_ERROR:
        log_body["payload"] = payload  # token vai em params, não no body
    logger.warning(json.dumps(log_body))
    return {"ok": False, "status": status, "error": _scrub_token(last_err), "attempt": attempt}

async def send_purchase_capi(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not FB_PIXEL_ID or not FB_ACCESS_TOKEN:
        return {"ok": False, "skip": True, "reason": "fb creds missing"}
    res = await _post_with_retry(_build_fb_url(), payload)
    logger.info(json.dumps({
        "event": "CAPI_SEND",
        "event_id": (payload.get("data") or [{}])[0].get("event_id"),
        "status": res.get("status"),
        "ok": res.get("ok"),
        "error": res.get("error"),
    }))
    return res

# ============================
# Orquestração Pixel x CAPI
# ============================
Sender = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

class PurchaseTracker:
    """
    Fluxo: event_id → cache rápido → insert_if_absent(source) → envio (só CAPI).
    Os dois canais calculam o MESMO event_id sem coordenação; o UNIQUE do
    banco decide quem chegou primeiro.
    """

    def __init__(self, store: DedupStore, cache: Optional[RecentEventCache] = None, sender: Sender = send_purchase_capi):
        self.store = store
        self.cache = cache
        self.sender = sender

    @staticmethod
    def event_id_for(purchase: Dict[str, Any]) -> str:
        return purchase.get("event_id") or generate_event_id(PURCHASE_EVENT, purchase)

    def _record(self, purchase: Dict[str, Any], event_id: str, source: str) -> DedupRecord:
        normalized = normalize_user_fields(purchase)
        return DedupRecord(
            event_id=event_id,
            transaction_id=purchase.get("transaction_id"),
            source=source,
            event_name=purchase.get("event_name") or PURCHASE_EVENT,
            value=_purchase_value(purchase),
            currency=purchase.get("currency") or "BRL",
            fbp=purchase.get("fbp"),
            fbc=purchase.get("fbc"),
            external_id=normalized.get("external_id"),
            ip_address=purchase.get("client_ip_address") or purchase.get("ip_address"),
            user_agent=purchase.get("client_user_agent") or purchase.get("user_agent"),
        )

    async def _claim(self, purchase: Dict[str, Any], source: str) -> Dict[str, Any]:
        event_id = self.event_id_for(purchase)
        base = {"event_id": event_id, "source": source}

        if self.cache is not None and not self.cache.check_and_mark(event_id):
            logger.info(json.dumps({"event": "DEDUP_CACHE_SKIP", **base}))
            return {**base, "status": "duplicate", "inserted": False}

        try:
            res = await self.store.ainsert_if_absent(self._record(purchase, event_id, source))
        except SQLAlchemyError as e:
            # estado de dedupe desconhecido: at-most-once => não envia, libera o cache
            if self.cache is not None:
                self.cache.forget(event_id)
            logger.error(json.dumps({"event": "DEDUP_STORE_ERROR", **base, "error": str(e)}))
            return {**base, "status": "error", "inserted": False, "error": str(e)}

        if not res.inserted:
            return {**base, "status": "duplicate", "inserted": False}
        return {**base, "status": "registered", "inserted": True}

    async def register_pixel_dispatch(self, purchase: Dict[str, Any]) -> Dict[str, Any]:
        """Canal browser: o Pixel só deve disparar se send=True."""
        out = await self._claim(purchase, "pixel")
        out["send"] = out["inserted"]
        return out

    async def track_purchase(self, purchase: Dict[str, Any]) -> Dict[str, Any]:
        """
        Canal servidor (CAPI). Nunca lança: falhas viram status no retorno.
        ok=True só quando ESTA chamada entregou o evento; duplicate/error => ok=False.
        """
        out = await self._claim(purchase, "capi")
        if not out["inserted"]:
            out["ok"] = False
            return out

        try:
            payload = build_purchase_payload(purchase, out["event_id"])
            res = await self.sender(payload)
        except Exception as e:
            logger.exception(json.dumps({"event": "CAPI_DISPATCH_ERROR", "event_id": out["event_id"], "error": str(e)}))
            res = {"ok": False, "error": str(e)}

        out["delivery"] = res
        out["ok"] = bool(res.get("ok"))
        out["status"] = "sent" if out["ok"] else "failed"
        return out
