# tracking_cookies.py - v1.0
# - Lê _fbp/_fbc de cookies/body (strings opacas; NÃO inventa cookie).
# - fbc só é derivado de fbclid real (fb.1.<ts>.<fbclid>).
# - UTMs por sessão num contexto explícito (UtmStore), sem estado global.

import re, time
from typing import Dict, Any, Optional, Mapping
from urllib.parse import unquote

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")

_FBC_RE = re.compile(r"^fb\.\d+\.\d+\.\S+$")

def parse_cookies(header_cookie: Optional[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not header_cookie:
        return out
    for pair in header_cookie.split(";"):
        if "=" not in pair:
            continue
        k, v = pair.split("=", 1)
        k = k.strip()
        if k:
            out[k] = unquote(v.strip())
    return out

def is_valid_fbc(value: Any) -> bool:
    return isinstance(value, str) and bool(_FBC_RE.match(value.strip()))

def _first(*vals) -> Optional[str]:
    for v in vals:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None

def resolve_fbp(cookies: Mapping[str, str], body: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    body = body or {}
    return _first(body.get("fbp"), body.get("_fbp"), cookies.get("_fbp"), cookies.get("fbp"))

def resolve_fbc(
    cookies: Mapping[str, str],
    body: Optional[Mapping[str, Any]] = None,
    fbclid: Optional[str] = None,
    ts: Optional[int] = None,
) -> Optional[str]:
    """
    Prioriza fbc válido vindo do body/cookie; senão deriva de fbclid (se houver).
    Sem fbclid real => None.
    """
    body = body or {}
    candidate = _first(body.get("fbc"), body.get("_fbc"), cookies.get("_fbc"), cookies.get("fbc"))
    if is_valid_fbc(candidate):
        return candidate
    clid = _first(fbclid, body.get("fbclid"), cookies.get("fbclid"))
    if not clid:
        return None
    return f"fb.1.{int(ts or time.time())}.{clid}"

def capture_utms(params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k in UTM_KEYS:
        v = (params or {}).get(k)
        if isinstance(v, str) and v.strip():
            out[k] = v.strip()
    return out

class UtmStore:
    """UTMs por sessão; última captura não-vazia vence campo a campo."""

    def __init__(self):
        self._sessions: Dict[str, Dict[str, str]] = {}

    def capture(self, session_id: str, params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        found = capture_utms(params)
        if found:
            self._sessions.setdefault(session_id, {}).update(found)
        return self.get(session_id)

    def get(self, session_id: str) -> Dict[str, str]:
        return dict(self._sessions.get(session_id) or {})

    def clear(self, session_id: Optional[str] = None) -> None:
        if session_id is None:
            self._sessions.clear()
        else:
            self._sessions.pop(session_id, None)
