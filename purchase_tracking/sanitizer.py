# sanitizer.py - v1.1 (chamadas do pixel sempre limpas; nunca derruba o envio)
# - Enrichers registrados rodam em ordem; lista => substitui args, None => mantém.
# - Enricher que lança é ignorado (log DEBUG).
# - set userData: remove pixel_id/pixelId/pid/id (case-insensitive) e corta em 3 args.
# - init: tira aspas do pixel id e limpa advancedMatching.
# - external_id já hasheado volta para o último texto puro visto neste contexto.
# - Qualquer falha na sanitização => envia a chamada ORIGINAL.
# - Instalação idempotente por contexto; readiness via awaitable (sem polling).

import re, json, logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger("sanitizer")

BANNED_USER_DATA_KEYS = frozenset({"pixel_id", "pixelid", "pid", "id"})
USER_DATA_MAX_ARGS = 3
_HEX64_RE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)

Enricher = Callable[[List[Any]], Optional[List[Any]]]

def _is_set_user_data(args: Sequence[Any]) -> bool:
    return len(args) >= 2 and args[0] == "set" and args[1] == "userData"

def is_hashed_external_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX64_RE.match(value.strip()))

def _strip_quotes(s: str) -> str:
    return s.strip("'\"")

def remove_banned_keys(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    return {k: v for k, v in data.items() if str(k).lower() not in BANNED_USER_DATA_KEYS}

def sanitize_user_data(data: Any, resolve_external_id: Optional[Callable[[Any], Optional[str]]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in remove_banned_keys(data if isinstance(data, dict) else {}).items():
        if v is None:
            continue
        if isinstance(v, str):
            v = v.strip()
            if not v:
                continue
        if k == "external_id" and resolve_external_id is not None:
            v = resolve_external_id(v)
            if not v:
                continue
        out[k] = v
    return out

class CallSanitizer:
    """
    Contexto explícito que envolve a superfície `send(*args)` do pixel.

    Dono: o processo que compõe a página/serviço. `install` é idempotente
    e `teardown` desfaz a instalação.
    """

    def __init__(self):
        self._enrichers: List[Tuple[str, Enricher]] = []
        self._installed: Optional[Callable[..., Any]] = None
        self._last_external_id: Optional[str] = None

    # ---------- registro ----------
    def register(self, fn: Enricher, label: Optional[str] = None) -> None:
        if not callable(fn):
            raise TypeError("enricher precisa ser chamável")
        self._enrichers.append((label or getattr(fn, "__name__", "anonymous"), fn))

    @property
    def enrichers(self) -> List[str]:
        return [label for label, _ in self._enrichers]

    # ---------- sanitização ----------
    def resolve_external_id(self, raw: Any) -> Optional[str]:
        """
        Texto puro é memorizado e devolvido como veio. Um hash (64 hex)
        vira o último texto puro conhecido, se houver.
        """
        if raw is None:
            return None
        s = str(raw).strip()
        if not s:
            return None
        if is_hashed_external_id(s):
            if self._last_external_id and self._last_external_id != s:
                return self._last_external_id
            return s
        self._last_external_id = s
        return s

    def _run_enrichers(self, args: List[Any]) -> List[Any]:
        for label, fn in self._enrichers:
            try:
                result = fn(args)
            except Exception as e:
                logger.debug(json.dumps({"event": "ENRICHER_ERROR", "enricher": label, "error": str(e)}))
                continue
            if isinstance(result, list):
                args = result
        return args

    def sanitize(self, args: Sequence[Any]) -> List[Any]:
        a = self._run_enrichers(list(args))

        if _is_set_user_data(a):
            user_data = a[2] if len(a) >= 3 else {}
            if len(a) > USER_DATA_MAX_ARGS:
                logger.debug(json.dumps({"event": "USER_DATA_EXTRA_ARGS", "count": len(a)}))
            a = [a[0], a[1], sanitize_user_data(user_data, self.resolve_external_id)]

        elif a and a[0] == "init":
            if len(a) >= 2 and isinstance(a[1], str):
                a[1] = _strip_quotes(a[1])
            if len(a) >= 3 and isinstance(a[2], dict):
                a[2] = remove_banned_keys(a[2])
                if "external_id" in a[2]:
                    resolved = self.resolve_external_id(a[2]["external_id"])
                    if resolved:
                        a[2]["external_id"] = resolved
                    else:
                        del a[2]["external_id"]

        return a

    def wrap(self, send: Callable[..., Any]) -> Callable[..., Any]:
        """Decorator: a chamada original é entregue se a sanitização falhar."""
        def sanitized_send(*args):
            try:
                clean = self.sanitize(args)
            except Exception as e:
                logger.warning(json.dumps({"event": "SANITIZE_FALLBACK", "error": str(e)}))
                return send(*args)
            return send(*clean)

        sanitized_send.__wrapped__ = send
        return sanitized_send

    # ---------- instalação ----------
    @property
    def installed(self) -> bool:
        return self._installed is not None

    def install(self, target: Callable[..., Any]) -> Callable[..., Any]:
        if self._installed is not None:
            return self._installed
        self._installed = self.wrap(target)
        logger.info(json.dumps({"event": "SANITIZER_INSTALLED", "enrichers": self.enrichers}))
        return self._installed

    async def install_when_ready(self, ready: Awaitable[Callable[..., Any]]) -> Callable[..., Any]:
        """Aguarda UMA vez a superfície do pixel ficar disponível e instala."""
        target = await ready
        return self.install(target)

    def teardown(self) -> None:
        self._installed = None
        self._enrichers.clear()
        self._last_external_id = None

class SanitizedPixel:
    """Fachada init/track/set sobre a superfície `send` já sanitizada."""

    def __init__(self, send: Callable[..., Any], sanitizer: Optional[CallSanitizer] = None):
        self.sanitizer = sanitizer or CallSanitizer()
        self._send = self.sanitizer.install(send)

    def __call__(self, *args):
        return self._send(*args)

    def init(self, pixel_id: str, advanced_matching: Optional[Dict[str, Any]] = None):
        if advanced_matching is None:
            return self._send("init", pixel_id)
        return self._send("init", pixel_id, advanced_matching)

    def track(self, event_name: str, data: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None):
        return self._send("track", event_name, data or {}, options or {})

    def set_user_data(self, data: Dict[str, Any]):
        return self._send("set", "userData", data)
