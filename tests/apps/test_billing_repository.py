from __future__ import annotations

import asyncio
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterator

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config
from sqlalchemy.engine import Engine

from backend.apps.billing.repository import SqlBillingRecordStore, SqlCounterStore, create_schema
from billing.dto import BillingRecord, DocumentKind, DocumentStatus
from billing.numbering import SequenceAllocator

ROOT = Path(__file__).resolve().parents[2]

KEY_A = "1710202601179001234500110010020000000071234567811"
KEY_B = "1710202601179001234500110010020000000078765432112"


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'billing.db'}", future=True)
    create_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


def _record(**overrides) -> BillingRecord:
    fields = dict(
        id="rec-1",
        kind=DocumentKind.INVOICE,
        status=DocumentStatus.PENDING,
        emission_date=date(2026, 10, 17),
        access_key=KEY_A,
        sequence="000000007",
        document_number="001-002-000000007",
        buyer_identification="1712345678",
        total=Decimal("19.30"),
        messages=[],
        payload={"kind": "01", "sequence": "000000007"},
    )
    fields.update(overrides)
    return BillingRecord(**fields)


def _row_count(engine: Engine) -> int:
    with engine.begin() as conn:
        return conn.execute(sa.text("SELECT COUNT(*) FROM billing_records")).scalar()


@pytest.mark.anyio
async def test_upsert_inserts_then_updates_by_access_key(engine: Engine) -> None:
    store = SqlBillingRecordStore(engine)

    await store.upsert(_record())
    stored = await store.upsert(_record(id="another-id", status=DocumentStatus.SENT, messages=["[70] EN PROCESO"]))

    assert _row_count(engine) == 1
    assert stored.id == "rec-1"
    assert stored.status is DocumentStatus.SENT
    assert stored.messages == ["[70] EN PROCESO"]
    assert stored.total == Decimal("19.30")


@pytest.mark.anyio
async def test_key_change_updates_the_same_row(engine: Engine) -> None:
    # Arrange
    store = SqlBillingRecordStore(engine)
    await store.upsert(_record())

    # Act
    record = _record(access_key=KEY_B, status=DocumentStatus.RETRY_PENDING)
    await store.upsert(record)

    # Assert
    assert record.id == "rec-1"
    assert _row_count(engine) == 1
    assert await store.find_by_access_key(KEY_A) is None
    found = await store.find_by_access_key(KEY_B)
    assert found.status is DocumentStatus.RETRY_PENDING
    assert found.payload == {"kind": "01", "sequence": "000000007"}


@pytest.mark.anyio
async def test_authorization_fields_round_trip(engine: Engine) -> None:
    store = SqlBillingRecordStore(engine)
    stamp = datetime(2026, 10, 17, 12, 30)

    await store.upsert(
        _record(
            status=DocumentStatus.AUTHORIZED,
            authorization_number=KEY_A,
            authorization_timestamp=stamp,
            signed_xml="<factura><ds:Signature/></factura>",
            authorized_xml="<factura/>",
        )
    )
    found = await store.find_by_id("rec-1")

    assert found.authorization_number == KEY_A
    assert found.authorization_timestamp.replace(tzinfo=None) == stamp
    assert found.signed_xml == "<factura><ds:Signature/></factura>"
    assert found.authorized_xml == "<factura/>"
    assert found.cancelled is False


@pytest.mark.anyio
async def test_mark_cancelled_survives_later_upserts(engine: Engine) -> None:
    store = SqlBillingRecordStore(engine)
    await store.upsert(_record(status=DocumentStatus.AUTHORIZED))

    await store.mark_cancelled("rec-1")
    await store.upsert(_record(status=DocumentStatus.AUTHORIZED, messages=["reenviado"]))

    found = await store.find_by_id("rec-1")
    assert found.cancelled is True


@pytest.mark.anyio
async def test_highest_sequence_and_unfinished_listing(engine: Engine) -> None:
    store = SqlBillingRecordStore(engine)
    await store.upsert(_record(status=DocumentStatus.AUTHORIZED))
    await store.upsert(_record(id="rec-2", access_key=KEY_B, sequence="000000012", status=DocumentStatus.TIMEOUT))
    await store.upsert(
        _record(id="rec-3", access_key=None, kind=DocumentKind.CREDIT_NOTE, sequence="000000003")
    )

    assert await store.highest_sequence(DocumentKind.INVOICE) == 12
    assert await store.highest_sequence(DocumentKind.CREDIT_NOTE) == 3
    unfinished = await store.list_unfinished()
    assert [record.id for record in unfinished] == ["rec-2"]


@pytest.mark.anyio
async def test_purge_all(engine: Engine) -> None:
    store = SqlBillingRecordStore(engine)
    await store.upsert(_record())
    await store.upsert(_record(id="rec-2", access_key=KEY_B))

    assert await store.purge_all() == 2
    assert _row_count(engine) == 0


@pytest.mark.anyio
async def test_counter_increments_from_missing_row(engine: Engine) -> None:
    counters = SqlCounterStore(engine)

    assert await counters.increment("invoice") == 1
    assert await counters.increment("invoice") == 2
    assert await counters.increment("credit_note") == 1


@pytest.mark.anyio
async def test_concurrent_allocations_never_repeat(engine: Engine) -> None:
    counters = SqlCounterStore(engine)
    await counters.reset(["invoice"])
    allocator = SequenceAllocator(counters)

    values = await asyncio.gather(*(allocator.next(DocumentKind.INVOICE) for _ in range(10)))

    assert sorted(values) == list(range(1, 11))


@pytest.mark.anyio
async def test_counter_raise_and_reset(engine: Engine) -> None:
    counters = SqlCounterStore(engine)
    await counters.increment("invoice")

    assert await counters.raise_to("invoice", 40) == 40
    assert await counters.raise_to("invoice", 10) == 40
    assert await counters.raise_to("credit_note", 5) == 5

    await counters.reset(["invoice", "credit_note"])

    assert await counters.increment("invoice") == 1
    assert await counters.increment("credit_note") == 1


@pytest.mark.anyio
async def test_migration_creates_seeded_counters(tmp_path: Path) -> None:
    # Arrange
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "ops" / "alembic"))
    cfg.set_main_option("sqlalchemy.url", url)

    # Act
    command.upgrade(cfg, "head")

    # Assert
    engine = sa.create_engine(url, future=True)
    try:
        with engine.begin() as conn:
            rows = dict(conn.execute(sa.text("SELECT name, value FROM sequence_counters")).fetchall())
        assert rows == {"invoice": 0, "credit_note": 0}
        assert await SqlCounterStore(engine).increment("invoice") == 1
        await SqlBillingRecordStore(engine).upsert(_record())
        assert _row_count(engine) == 1
    finally:
        engine.dispose()
