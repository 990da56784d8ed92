import pytest
from sqlalchemy.pool import StaticPool

from purchase_tracking.db import Base, DedupStore, make_engine, init_db


@pytest.fixture
def db_engine():
    """SQLite em memória compartilhado entre threads (run_in_executor)."""
    engine = make_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return DedupStore(db_engine)


@pytest.fixture
def sent_payloads():
    return []


@pytest.fixture
def fake_sender(sent_payloads):
    async def _send(payload):
        sent_payloads.append(payload)
        return {"ok": True, "status": 200, "body": '{"events_received":1}'}
    return _send
