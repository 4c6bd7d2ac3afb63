"""SQLAlchemy Core persistence for billing records and sequence counters."""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from functools import lru_cache
from typing import Any, List, Optional

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql import func

from backend.core.config import settings
from billing.dto import BillingRecord, DocumentKind, DocumentStatus
from billing.errors import PersistenceError

_METADATA = MetaData()


def get_tables(metadata: MetaData) -> tuple[Table, Table]:
    """Return Table objects for billing_records and sequence_counters."""
    billing_records = Table(
        "billing_records",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("kind", String(2), nullable=False),
        Column("status", String(16), nullable=False),
        Column("access_key", String(49), unique=True),
        Column("sequence", String(9)),
        Column("document_number", String(17)),
        Column("emission_date", Date, nullable=False),
        Column("buyer_identification", String(20), nullable=False, server_default=""),
        Column("total", Numeric(14, 2), nullable=False, server_default="0"),
        Column("authorization_number", String(64)),
        Column("authorization_timestamp", DateTime(timezone=True)),
        Column("messages_json", Text, nullable=False, server_default="[]"),
        Column("payload_json", Text, nullable=False, server_default="{}"),
        Column("signed_xml", Text),
        Column("authorized_xml", Text),
        Column("original_id", String(64)),
        Column("cancelled", Boolean, nullable=False, server_default=sa.false()),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
        Column(
            "updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
        ),
        extend_existing=True,
    )

    sequence_counters = Table(
        "sequence_counters",
        metadata,
        Column("name", String(32), primary_key=True),
        Column("value", Integer, nullable=False, server_default="0"),
        extend_existing=True,
    )

    return billing_records, sequence_counters


BILLING_RECORDS, SEQUENCE_COUNTERS = get_tables(_METADATA)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create (and cache) the engine for the configured database."""
    return sa.create_engine(settings.database_url, future=True)


def create_schema(engine: Engine) -> None:
    """Create tables directly; production databases use the Alembic migration."""
    _METADATA.create_all(engine)


def _values(record: BillingRecord) -> dict[str, Any]:
    return {
        "kind": record.kind.value,
        "status": record.status.value,
        "access_key": record.access_key,
        "sequence": record.sequence,
        "document_number": record.document_number,
        "emission_date": record.emission_date,
        "buyer_identification": record.buyer_identification,
        "total": record.total,
        "authorization_number": record.authorization_number,
        "authorization_timestamp": record.authorization_timestamp,
        "messages_json": json.dumps(record.messages),
        "payload_json": json.dumps(record.payload),
        "signed_xml": record.signed_xml,
        "authorized_xml": record.authorized_xml,
        "original_id": record.original_id,
    }


def _to_record(row) -> BillingRecord:
    return BillingRecord(
        id=row.id,
        kind=DocumentKind(row.kind),
        status=DocumentStatus(row.status),
        emission_date=row.emission_date,
        access_key=row.access_key,
        sequence=row.sequence,
        document_number=row.document_number,
        buyer_identification=row.buyer_identification,
        total=Decimal(str(row.total)).quantize(Decimal("0.01")),
        authorization_number=row.authorization_number,
        authorization_timestamp=row.authorization_timestamp,
        messages=json.loads(row.messages_json or "[]"),
        payload=json.loads(row.payload_json or "{}"),
        signed_xml=row.signed_xml,
        authorized_xml=row.authorized_xml,
        original_id=row.original_id,
        cancelled=bool(row.cancelled),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlBillingRecordStore:
    """Idempotent record store keyed by access key, falling back to id."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self.engine = engine or get_engine()
        self.table = BILLING_RECORDS

    async def upsert(self, record: BillingRecord) -> BillingRecord:
        return await asyncio.to_thread(self._upsert, record)

    def _upsert(self, record: BillingRecord) -> BillingRecord:
        t = self.table
        values = _values(record)
        try:
            with self.engine.begin() as conn:
                target_id = None
                if record.access_key:
                    target_id = conn.execute(
                        select(t.c.id).where(t.c.access_key == record.access_key)
                    ).scalar()
                if target_id is None:
                    target_id = conn.execute(select(t.c.id).where(t.c.id == record.id)).scalar()

                if target_id is None:
                    conn.execute(insert(t).values(id=record.id, cancelled=record.cancelled, **values))
                    target_id = record.id
                else:
                    conn.execute(update(t).where(t.c.id == target_id).values(**values))
                row = conn.execute(select(t).where(t.c.id == target_id)).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"upsert of record {record.id} failed: {exc}") from exc
        record.id = target_id
        return _to_record(row)

    async def find_by_access_key(self, access_key: str) -> Optional[BillingRecord]:
        return await asyncio.to_thread(self._find, self.table.c.access_key == access_key)

    async def find_by_id(self, record_id: str) -> Optional[BillingRecord]:
        return await asyncio.to_thread(self._find, self.table.c.id == record_id)

    def _find(self, condition) -> Optional[BillingRecord]:
        with self.engine.begin() as conn:
            row = conn.execute(select(self.table).where(condition)).fetchone()
        return _to_record(row) if row else None

    async def mark_cancelled(self, record_id: str) -> None:
        def _run() -> None:
            with self.engine.begin() as conn:
                conn.execute(
                    update(self.table).where(self.table.c.id == record_id).values(cancelled=True)
                )

        await asyncio.to_thread(_run)

    async def highest_sequence(self, kind: DocumentKind) -> int:
        def _run() -> int:
            with self.engine.begin() as conn:
                value = conn.execute(
                    select(func.max(self.table.c.sequence)).where(self.table.c.kind == kind.value)
                ).scalar()
            return int(value) if value else 0

        return await asyncio.to_thread(_run)

    async def purge_all(self) -> int:
        def _run() -> int:
            with self.engine.begin() as conn:
                return conn.execute(delete(self.table)).rowcount

        return await asyncio.to_thread(_run)

    async def list_unfinished(self, limit: int = 100) -> List[BillingRecord]:
        """Records left in a resumable state, oldest first."""
        return await asyncio.to_thread(self._list_unfinished, limit)

    def _list_unfinished(self, limit: int) -> List[BillingRecord]:
        resumable = [
            DocumentStatus.PENDING.value,
            DocumentStatus.SENT.value,
            DocumentStatus.PROCESSING.value,
            DocumentStatus.RETRY_PENDING.value,
            DocumentStatus.TIMEOUT.value,
        ]
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(self.table)
                .where(self.table.c.status.in_(resumable))
                .where(self.table.c.access_key.is_not(None))
                .order_by(self.table.c.created_at)
                .limit(limit)
            ).fetchall()
        return [_to_record(row) for row in rows]


class SqlCounterStore:
    """Counter rows incremented with a single UPDATE ... RETURNING."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self.engine = engine or get_engine()
        self.table = SEQUENCE_COUNTERS

    async def increment(self, name: str) -> int:
        return await asyncio.to_thread(self._increment, name)

    def _increment(self, name: str) -> int:
        t = self.table
        stmt = update(t).where(t.c.name == name).values(value=t.c.value + 1).returning(t.c.value)
        with self.engine.begin() as conn:
            value = conn.execute(stmt).scalar()
            if value is not None:
                return int(value)
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(t).values(name=name, value=1))
                return 1
        except IntegrityError:
            # Another writer created the row first
            with self.engine.begin() as conn:
                return int(conn.execute(stmt).scalar())

    async def raise_to(self, name: str, value: int) -> int:
        def _run() -> int:
            t = self.table
            with self.engine.begin() as conn:
                current = conn.execute(select(t.c.value).where(t.c.name == name)).scalar()
                if current is None:
                    conn.execute(insert(t).values(name=name, value=value))
                    return value
                if current < value:
                    conn.execute(update(t).where(t.c.name == name).values(value=value))
                    return value
                return int(current)

        return await asyncio.to_thread(_run)

    async def reset(self, names: List[str]) -> None:
        def _run() -> None:
            t = self.table
            with self.engine.begin() as conn:
                for name in names:
                    updated = conn.execute(update(t).where(t.c.name == name).values(value=0)).rowcount
                    if not updated:
                        conn.execute(insert(t).values(name=name, value=0))

        await asyncio.to_thread(_run)
