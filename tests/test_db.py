import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from purchase_tracking.db import Base, DedupRecord, DedupStore, init_db, make_engine


def _record(event_id="pur:TX1", source="capi", **kw):
    kw.setdefault("transaction_id", event_id.split(":", 1)[-1])
    return DedupRecord(event_id=event_id, source=source, **kw)


def _expired(event_id, source="capi"):
    past = datetime.now(timezone.utc) - timedelta(hours=48)
    return _record(event_id, source, created_at=past, expires_at=past + timedelta(hours=24))


# ----------------------------
# insert_if_absent
# ----------------------------
def test_first_insert_wins_and_second_channel_collides(store):
    first = store.insert_if_absent(_record(source="capi", value=97.0))
    second = store.insert_if_absent(_record(source="pixel", value=97.0))

    assert first.inserted is True
    assert second.inserted is False
    assert second.event_id == "pur:TX1"
    assert store.stats()["total_events"] == 1


def test_same_channel_retry_is_duplicate(store):
    assert store.insert_if_absent(_record()).inserted
    assert not store.insert_if_absent(_record()).inserted


def test_expired_collision_is_replaced(store):
    store.insert_if_absent(_expired("pur:OLD"))
    res = store.insert_if_absent(_record("pur:OLD", source="pixel"))

    assert res.inserted is True
    row = store.get_by_event_id("pur:OLD")
    assert row["source"] == "pixel"
    assert datetime.fromisoformat(row["expires_at"]) > datetime.now(timezone.utc)


def test_purge_then_reinsert(store):
    store.insert_if_absent(_expired("pur:A"))
    store.insert_if_absent(_record("pur:B"))

    assert store.purge_expired() == 1
    assert store.get_by_event_id("pur:A") is None
    assert store.insert_if_absent(_record("pur:A")).inserted


def test_opportunistic_purge_every_n_inserts(db_engine):
    store = DedupStore(db_engine, purge_every=2)
    first = store.insert_if_absent(_expired("pur:A"))
    second = store.insert_if_absent(_record("pur:B"))

    assert first.purged == 0
    assert second.purged == 1


def test_purge_disabled_when_zero(db_engine):
    store = DedupStore(db_engine, purge_every=0)
    store.insert_if_absent(_expired("pur:A"))
    assert store.insert_if_absent(_record("pur:B")).purged == 0
    assert store.stats()["expired_events"] == 1


def test_custom_ttl(db_engine):
    store = DedupStore(db_engine, ttl=timedelta(minutes=5))
    store.insert_if_absent(_record())
    row = store.get_by_event_id("pur:TX1")
    span = datetime.fromisoformat(row["expires_at"]) - datetime.fromisoformat(row["created_at"])
    assert span == timedelta(minutes=5)


def test_storage_failure_propagates(db_engine, store):
    Base.metadata.drop_all(bind=db_engine)
    with pytest.raises(SQLAlchemyError):
        store.insert_if_absent(_record())


# ----------------------------
# leitura
# ----------------------------
def test_is_already_sent_ignores_expired(store):
    store.insert_if_absent(_expired("pur:OLD"))
    store.insert_if_absent(_record("pur:NEW", source="pixel"))

    assert store.is_already_sent("pur:NEW") is True
    assert store.is_already_sent("pur:NEW", "pixel") is True
    assert store.is_already_sent("pur:NEW", "capi") is False
    assert store.is_already_sent("pur:OLD") is False
    assert store.is_already_sent("pur:MISSING") is False


def test_lookup_by_transaction(store):
    store.insert_if_absent(_record("pur:T9", transaction_id="T9", value=10.5, fbp="fb.1.1.abc"))

    rows = store.get_by_transaction_id("T9")
    assert len(rows) == 1
    assert rows[0]["value"] == 10.5
    assert rows[0]["fbp"] == "fb.1.1.abc"
    assert rows[0]["currency"] == "BRL"
    assert store.get_by_transaction_id("nope") == []


def test_stats_counts_sources(store):
    store.insert_if_absent(_record("pur:1", source="pixel"))
    store.insert_if_absent(_record("pur:2", source="capi"))
    store.insert_if_absent(_record("pur:3", source="capi"))
    store.insert_if_absent(_record("pur:3", source="pixel"))

    assert store.stats() == {
        "total_events": 3,
        "unique_events": 3,
        "pixel_events": 1,
        "capi_events": 2,
        "expired_events": 0,
    }


def test_ping(store):
    assert store.ping() is True


# ----------------------------
# DedupRecord
# ----------------------------
def test_record_rejects_unknown_source():
    with pytest.raises(ValueError):
        DedupRecord(event_id="pur:1", transaction_id="1", source="email")


def test_record_requires_event_id():
    with pytest.raises(ValueError):
        DedupRecord(event_id="", transaction_id="1", source="capi")


def test_record_nan_value_and_missing_transaction():
    rec = DedupRecord(event_id="pur:1", transaction_id=None, source="capi", value=float("nan"))
    assert rec.value is None
    assert rec.transaction_id == ""


def test_nullable_value_is_stored(store):
    assert store.insert_if_absent(_record("pur:free", value=None)).inserted
    assert store.get_by_event_id("pur:free")["value"] is None


# ----------------------------
# async
# ----------------------------
@pytest.mark.asyncio
async def test_async_wrappers(store):
    res = await store.ainsert_if_absent(_record("pur:AS"))
    dup = await store.ainsert_if_absent(_record("pur:AS", source="pixel"))

    assert res.inserted and not dup.inserted
    assert await store.ais_already_sent("pur:AS")
    assert (await store.aget_by_event_id("pur:AS"))["source"] == "capi"
    assert len(await store.aget_by_transaction_id("AS")) == 1
    assert (await store.astats())["total_events"] == 1
    assert await store.apurge_expired() == 0


@pytest.fixture
def file_store(tmp_path):
    engine = make_engine(
        f"sqlite:///{tmp_path / 'dedup.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(engine)
    yield DedupStore(engine)
    engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_channels_only_one_wins(file_store):
    event_ids = [f"pur:C{i}" for i in range(5)]
    attempts = [
        file_store.ainsert_if_absent(_record(event_id, source))
        for event_id in event_ids
        for source in ("pixel", "capi")
    ]
    results = await asyncio.gather(*attempts)

    for event_id in event_ids:
        won = [r for r in results if r.event_id == event_id and r.inserted]
        assert len(won) == 1
    assert file_store.stats()["total_events"] == len(event_ids)


def test_purge_counter_is_thread_safe(file_store):
    store = DedupStore(file_store.engine, purge_every=10)
    purges = []
    real_purge = store.purge_expired
    store.purge_expired = lambda: purges.append(1) or real_purge()

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: store.insert_if_absent(_record(f"pur:T{i}")), range(40)))

    assert len(purges) == 4
