# utils.py - v1.2 (event_id estável; normalização sem exceções)
# - event_id de Purchase = "pur:<transaction_id>" (Pixel e CAPI convergem no mesmo id).
# - Sem transaction_id: "pur:<ms>" (não deduplicável, loga WARNING).
# - Demais eventos: hash rolante 32-bit (h*31 + c) → "e<hex>".
# - Normalizadores puros: nunca lançam, retornam None para vazio/inválido.
# - URL: remove fragmento e parâmetros sensíveis (token/password/secret/key/auth).
# - Hash SHA256 para Advanced Matching (em/ph/fn/ln/external_id).

import os, re, time, json, hashlib, logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

logger = logging.getLogger("utils")

# ==============================
# Config
# ==============================
DROP_OLD_DAYS = int(os.getenv("FB_DROP_OLDER_THAN_DAYS", "7"))   # janela máx aceita pelo FB

PURCHASE_EVENT = "Purchase"
PURCHASE_PREFIX = "pur:"
SENSITIVE_QUERY_KEYS = frozenset({"token", "password", "secret", "key", "auth"})

# ==============================
# Helpers básicos
# ==============================
def _only_digits(s: str) -> str:
    return re.sub(r"\D+", "", s)

def _base(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None

def now_ms() -> int:
    return int(time.time() * 1000)

def now_ts() -> int:
    return int(time.time())

def clamp_event_time(ts: Optional[int]) -> int:
    """
    Mantém event_time dentro da janela aceita pelo Facebook CAPI.
    - Máx. passado: DROP_OLD_DAYS
    - Futuro: corta em "agora"
    """
    now = now_ts()
    try:
        base = int(ts) if ts is not None else now
    except (TypeError, ValueError):
        base = now
    min_ts = int((datetime.now(timezone.utc) - timedelta(days=DROP_OLD_DAYS)).timestamp())
    if base < min_ts:
        return min_ts
    if base > now:
        return now
    return base

# ==============================
# Event ID
# ==============================
def rolling_hash32(text: str) -> int:
    """
    Hash rolante clássico (h = h*31 + c) sobre unidades UTF-16,
    truncado para inteiro 32-bit COM sinal.
    """
    raw = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(raw), 2):
        h = (h * 31 + (raw[i] | (raw[i + 1] << 8))) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h

def generic_event_id(event_name: str, user_id: str = "", timestamp: Optional[int] = None) -> str:
    ts = now_ms() if timestamp is None else timestamp
    h = rolling_hash32(f"{event_name}_{user_id}_{ts}")
    return "e" + format(h & 0xFFFFFFFF, "x")

def generate_event_id(kind: str, payload: Optional[Dict[str, Any]] = None) -> str:
    """
    Gera o event_id usado em Pixel + CAPI.
    - Purchase com transaction_id: "pur:<transaction_id>" (determinístico).
    - Purchase sem transaction_id: "pur:<ms>" (degradado, sem dedupe real).
    - Outros eventos: hash de (event_name, user_id, timestamp). Para dedupe
      entre retries o chamador precisa repetir o MESMO timestamp.
    """
    payload = payload or {}
    if kind == PURCHASE_EVENT:
        tx = payload.get("transaction_id")
        if tx not in (None, ""):
            return f"{PURCHASE_PREFIX}{tx}"
        fallback = f"{PURCHASE_PREFIX}{now_ms()}"
        logger.warning(json.dumps({
            "event": "EVENT_ID_FALLBACK",
            "reason": "transaction_id missing",
            "event_id": fallback,
        }))
        return fallback

    user_id = payload.get("user_id")
    return generic_event_id(
        kind,
        "" if user_id is None else str(user_id),
        payload.get("timestamp"),
    )

# ==============================
# Normalizações (puras, nunca lançam)
# ==============================
def normalize_email(value: Any) -> Optional[str]:
    s = _base(value)
    if not s or "@" not in s:
        return None
    return s.lower()

def normalize_phone(value: Any) -> Optional[str]:
    s = _base(value)
    if not s:
        return None
    return _only_digits(s) or None

def normalize_name(value: Any) -> Optional[str]:
    s = _base(value)
    return s.lower() if s else None

def normalize_external_id(value: Any) -> Optional[str]:
    """CPF/external_id: só dígitos."""
    s = _base(value)
    if not s:
        return None
    return _only_digits(s) or None

def normalize_url(value: Any) -> Optional[str]:
    """
    event_source_url: remove #fragmento e parâmetros sensíveis da query.
    Melhor esforço: se não der para parsear, devolve a string original.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parts = urlsplit(value.strip())
        query = [
            (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k.lower() not in SENSITIVE_QUERY_KEYS
        ]
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), ""))
    except ValueError:
        return value

# ==============================
# Advanced Matching
# ==============================
def sha256_hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    return hashlib.sha256(s.encode("utf-8")).hexdigest()

def split_name(full_name: Any) -> Tuple[Optional[str], Optional[str]]:
    s = _base(full_name)
    if not s:
        return None, None
    parts = s.split()
    if len(parts) == 1:
        return parts[0], None
    return parts[0], " ".join(parts[1:])

def normalize_user_fields(raw: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Normaliza os campos de identidade do comprador.
    Aceita first_name/last_name ou payer_name (nome completo do PIX);
    external_id cai para payer_cpf quando ausente.
    """
    first, last = raw.get("first_name"), raw.get("last_name")
    if not first and not last and raw.get("payer_name"):
        first, last = split_name(raw.get("payer_name"))
    return {
        "email": normalize_email(raw.get("email")),
        "phone": normalize_phone(raw.get("phone")),
        "first_name": normalize_name(first),
        "last_name": normalize_name(last),
        "external_id": normalize_external_id(raw.get("external_id") or raw.get("payer_cpf")),
    }

_AM_KEYS = (
    ("email", "em"),
    ("phone", "ph"),
    ("first_name", "fn"),
    ("last_name", "ln"),
    ("external_id", "external_id"),
)

def build_advanced_matching(normalized: Dict[str, Optional[str]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for src, dst in _AM_KEYS:
        hashed = sha256_hex(normalized.get(src))
        if hashed:
            out[dst] = hashed
    return out

def normalization_snapshot(normalized: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Resumo ok/skip por campo (seguro para log, sem PII)."""
    return {dst: ("ok" if normalized.get(src) else "skip") for src, dst in _AM_KEYS}

def strip_empty(d: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in d.items():
        if v is None:
            continue
        if isinstance(v, str) and v.strip() == "":
            continue
        out[k] = v
    return out
