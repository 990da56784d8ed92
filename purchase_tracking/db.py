# db.py - v2.1
# (dedupe Pixel x CAPI por event_id; TTL 24h; limpeza oportunista)
# - UNIQUE apenas em event_id: o segundo canal (pixel ou capi) colide e vira "já enviado".
# - Colisão de UNIQUE NÃO é erro: vira InsertResult(inserted=False).
# - Demais falhas de persistência sobem para o chamador (ele decide dropar/logar).
# - Registro vencido (expires_at < agora) é logicamente inexistente.
# - Limpeza a cada N inserções (DEDUP_PURGE_EVERY) + worker periódico opcional.
# - ip_address/user_agent cifrados com Fernet quando CRYPTO_KEY existir.

import os, math, json, asyncio, hashlib, base64, logging, threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import List, Optional, Dict, Any

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, Numeric, Text, Index,
    select, delete, func, case
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy import text as _sql_text
from prometheus_client import Counter

# ==============================
# Logging
# ==============================
logger = logging.getLogger("db")

# ==============================
# Config
# ==============================
DATABASE_URL = (
    os.getenv("DATABASE_URL")
    or os.getenv("POSTGRES_URL")
    or os.getenv("POSTGRESQL_URL")
)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DEDUP_TTL_HOURS = float(os.getenv("DEDUP_TTL_HOURS", "24"))
DEDUP_PURGE_EVERY = int(os.getenv("DEDUP_PURGE_EVERY", "100"))

SOURCES = ("pixel", "capi")

# ==============================
# Métricas
# ==============================
DEDUP_INSERTED = Counter("dedup_inserted_total", "Eventos registrados pela primeira vez", ["source"])
DEDUP_DUPLICATE = Counter("dedup_duplicate_total", "Eventos já registrados (dedupe)", ["source"])
DEDUP_PURGED = Counter("dedup_purged_total", "Registros vencidos removidos")

# ==============================
# Criptografia (ip/ua)
# ==============================
CRYPTO_KEY = os.getenv("CRYPTO_KEY")
_fernet = None
if CRYPTO_KEY:
    from cryptography.fernet import Fernet, InvalidToken
    derived = base64.urlsafe_b64encode(hashlib.sha256(CRYPTO_KEY.encode()).digest())
    _fernet = Fernet(derived)
    logger.info(json.dumps({"event": "CRYPTO_ENABLED"}))

def _encrypt_value(s: Optional[str]) -> Optional[str]:
    if s is None or not _fernet:
        return s
    return _fernet.encrypt(str(s).encode()).decode()

def _decrypt_value(s: Optional[str]) -> Optional[str]:
    if s is None or not _fernet:
        return s
    try:
        return _fernet.decrypt(str(s).encode()).decode()
    except InvalidToken:
        # gravado antes da chave existir
        return s

# ==============================
# Modelo
# ==============================
Base = declarative_base()

class PurchaseEventDedup(Base):
    __tablename__ = "purchase_event_dedup"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    transaction_id = Column(String(255), nullable=False, index=True)
    event_name = Column(String(50), nullable=False, default="Purchase")
    value = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="BRL")
    source = Column(String(20), nullable=False, index=True)   # 'pixel' | 'capi'

    fbp = Column(String(255), nullable=True)
    fbc = Column(String(255), nullable=True)
    external_id = Column(String(255), nullable=True)
    ip_address = Column(Text, nullable=True)                   # cifrado
    user_agent = Column(Text, nullable=True)                   # cifrado

    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("idx_purchase_dedup_event_source", "event_id", "source"),
    )

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite devolve datetime naive (gravamos sempre em UTC)
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)

# ==============================
# Registro / resultado
# ==============================
@dataclass
class DedupRecord:
    event_id: str
    transaction_id: str
    source: str
    event_name: str = "Purchase"
    value: Optional[float] = None
    currency: str = "BRL"
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    external_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if self.source not in SOURCES:
            raise ValueError(f"source inválido: {self.source!r} (esperado pixel|capi)")
        if not self.event_id:
            raise ValueError("event_id é obrigatório")
        # NOT NULL no schema; Purchase sem transação grava vazio
        self.transaction_id = "" if self.transaction_id is None else str(self.transaction_id)
        if isinstance(self.value, float) and math.isnan(self.value):
            self.value = None

@dataclass
class InsertResult:
    inserted: bool
    event_id: str
    purged: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

def _row_to_dict(row: PurchaseEventDedup) -> Dict[str, Any]:
    return {
        "event_id": row.event_id,
        "transaction_id": row.transaction_id,
        "event_name": row.event_name,
        "value": float(row.value) if row.value is not None else None,
        "currency": row.currency,
        "source": row.source,
        "fbp": row.fbp,
        "fbc": row.fbc,
        "external_id": row.external_id,
        "ip_address": _decrypt_value(row.ip_address),
        "user_agent": _decrypt_value(row.user_agent),
        "created_at": _as_utc(row.created_at).isoformat(),
        "expires_at": _as_utc(row.expires_at).isoformat(),
    }

# ==============================
# Engine + init
# ==============================
def make_engine(url: Optional[str] = None, **kwargs) -> Engine:
    url = url or DATABASE_URL
    if not url:
        raise RuntimeError("DATABASE_URL não configurado")
    if url.startswith("postgres"):
        kwargs.setdefault("pool_size", DB_POOL_SIZE)
        kwargs.setdefault("max_overflow", DB_MAX_OVERFLOW)
        kwargs.setdefault("pool_recycle", 1800)
    return create_engine(url, pool_pre_ping=True, future=True, **kwargs)

def _ensure_postgres_extras(engine: Engine) -> None:
    """Função SQL de limpeza para operadores + value NULLABLE (bancos antigos)."""
    if engine.dialect.name != "postgresql":
        return
    try:
        with engine.begin() as conn:
            conn.execute(_sql_text(
                "ALTER TABLE purchase_event_dedup ALTER COLUMN value DROP NOT NULL"
            ))
            conn.execute(_sql_text("""
                CREATE OR REPLACE FUNCTION cleanup_expired_purchase_events()
                RETURNS INTEGER AS $$
                DECLARE
                  deleted_count INTEGER;
                BEGIN
                  DELETE FROM purchase_event_dedup WHERE expires_at < CURRENT_TIMESTAMP;
                  GET DIAGNOSTICS deleted_count = ROW_COUNT;
                  RETURN deleted_count;
                END;
                $$ LANGUAGE plpgsql;
            """))
        logger.info("🗃️ Extras PostgreSQL verificados (cleanup function / value nullable).")
    except SQLAlchemyError as e:
        logger.warning(f"⚠️ Falha ao criar extras PostgreSQL: {e}")

def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    _ensure_postgres_extras(engine)
    logger.info("✅ DB inicializado e tabela purchase_event_dedup sincronizada")

# ==============================
# Store
# ==============================
class DedupStore:
    """
    Tabela de dedupe Pixel x CAPI.

    A unicidade é garantida só pelo UNIQUE(event_id): inserts concorrentes dos
    dois canais se resolvem no banco, sem lock na aplicação.
    """

    def __init__(self, engine: Engine, ttl: Optional[timedelta] = None, purge_every: int = DEDUP_PURGE_EVERY):
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
        self.ttl = ttl if ttl is not None else timedelta(hours=DEDUP_TTL_HOURS)
        self.purge_every = purge_every
        self._inserts = 0
        self._inserts_lock = threading.Lock()

    # ---------- insert ----------
    def _build_row(self, record: DedupRecord) -> PurchaseEventDedup:
        created = _as_utc(record.created_at) or _utcnow()
        expires = _as_utc(record.expires_at) or created + self.ttl
        return PurchaseEventDedup(
            event_id=record.event_id,
            transaction_id=record.transaction_id,
            event_name=record.event_name or "Purchase",
            value=record.value,
            currency=record.currency or "BRL",
            source=record.source,
            fbp=record.fbp,
            fbc=record.fbc,
            external_id=record.external_id,
            ip_address=_encrypt_value(record.ip_address),
            user_agent=_encrypt_value(record.user_agent),
            created_at=created,
            expires_at=expires,
        )

    def _try_insert(self, record: DedupRecord) -> bool:
        session = self.SessionLocal()
        try:
            session.add(self._build_row(record))
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        finally:
            session.close()

    def _drop_if_expired(self, event_id: str) -> bool:
        session = self.SessionLocal()
        try:
            res = session.execute(
                delete(PurchaseEventDedup)
                .where(PurchaseEventDedup.event_id == event_id)
                .where(PurchaseEventDedup.expires_at < _utcnow())
            )
            session.commit()
            return bool(res.rowcount)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def insert_if_absent(self, record: DedupRecord) -> InsertResult:
        """
        Tenta registrar o evento. inserted=False => event_id já visto
        (por qualquer canal) e ainda dentro do TTL.
        """
        inserted = self._try_insert(record)
        if not inserted and self._drop_if_expired(record.event_id):
            logger.info(json.dumps({"event": "DEDUP_EXPIRED_REPLACED", "event_id": record.event_id}))
            inserted = self._try_insert(record)

        if not inserted:
            DEDUP_DUPLICATE.labels(source=record.source).inc()
            logger.info(json.dumps({
                "event": "DEDUP_DUPLICATE",
                "event_id": record.event_id,
                "source": record.source,
            }))
            return InsertResult(inserted=False, event_id=record.event_id)

        DEDUP_INSERTED.labels(source=record.source).inc()
        logger.info(json.dumps({
            "event": "DEDUP_INSERT",
            "event_id": record.event_id,
            "transaction_id": record.transaction_id,
            "source": record.source,
        }))

        purged = 0
        # inserts chegam de várias threads do executor
        with self._inserts_lock:
            self._inserts += 1
            due = self.purge_every > 0 and self._inserts % self.purge_every == 0
        if due:
            try:
                purged = self.purge_expired()
            except SQLAlchemyError as e:
                logger.warning(json.dumps({"event": "DEDUP_PURGE_FAILED", "error": str(e)}))
        return InsertResult(inserted=True, event_id=record.event_id, purged=purged)

    # ---------- expiry ----------
    def purge_expired(self) -> int:
        session = self.SessionLocal()
        try:
            res = session.execute(
                delete(PurchaseEventDedup).where(PurchaseEventDedup.expires_at < _utcnow())
            )
            session.commit()
            count = res.rowcount or 0
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

        if count:
            DEDUP_PURGED.inc(count)
            logger.info(json.dumps({"event": "DEDUP_PURGE", "deleted": count}))
        return count

    # ---------- leitura ----------
    def is_already_sent(self, event_id: str, source: Optional[str] = None) -> bool:
        session = self.SessionLocal()
        try:
            q = (
                select(PurchaseEventDedup.id)
                .where(PurchaseEventDedup.event_id == event_id)
                .where(PurchaseEventDedup.expires_at >= _utcnow())
            )
            if source:
                q = q.where(PurchaseEventDedup.source == source)
            return session.execute(q).first() is not None
        finally:
            session.close()

    def get_by_event_id(self, event_id: str) -> Optional[Dict[str, Any]]:
        session = self.SessionLocal()
        try:
            row = session.execute(
                select(PurchaseEventDedup).where(PurchaseEventDedup.event_id == event_id)
            ).scalar_one_or_none()
            return _row_to_dict(row) if row else None
        finally:
            session.close()

    def get_by_transaction_id(self, transaction_id: str) -> List[Dict[str, Any]]:
        session = self.SessionLocal()
        try:
            rows = session.execute(
                select(PurchaseEventDedup)
                .where(PurchaseEventDedup.transaction_id == transaction_id)
                .order_by(PurchaseEventDedup.created_at.asc())
            ).scalars().all()
            return [_row_to_dict(r) for r in rows]
        finally:
            session.close()

    def stats(self) -> Dict[str, int]:
        session = self.SessionLocal()
        try:
            row = session.execute(select(
                func.count(PurchaseEventDedup.id),
                func.count(func.distinct(PurchaseEventDedup.event_id)),
                func.sum(case((PurchaseEventDedup.source == "pixel", 1), else_=0)),
                func.sum(case((PurchaseEventDedup.source == "capi", 1), else_=0)),
                func.sum(case((PurchaseEventDedup.expires_at < _utcnow(), 1), else_=0)),
            )).one()
        finally:
            session.close()
        total, unique, pixel, capi, expired = row
        return {
            "total_events": int(total or 0),
            "unique_events": int(unique or 0),
            "pixel_events": int(pixel or 0),
            "capi_events": int(capi or 0),
            "expired_events": int(expired or 0),
        }

    # ---------- async (não bloqueia o loop) ----------
    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def ainsert_if_absent(self, record: DedupRecord) -> InsertResult:
        return await self._run(self.insert_if_absent, record)

    async def apurge_expired(self) -> int:
        return await self._run(self.purge_expired)

    async def ais_already_sent(self, event_id: str, source: Optional[str] = None) -> bool:
        return await self._run(self.is_already_sent, event_id, source)

    async def aget_by_event_id(self, event_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self.get_by_event_id, event_id)

    async def aget_by_transaction_id(self, transaction_id: str) -> List[Dict[str, Any]]:
        return await self._run(self.get_by_transaction_id, transaction_id)

    async def astats(self) -> Dict[str, int]:
        return await self._run(self.stats)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(_sql_text("SELECT 1"))
        return True
