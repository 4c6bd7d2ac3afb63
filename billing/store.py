"""Billing record storage boundary and the in-memory implementation."""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from billing.dto import BillingRecord, DocumentKind, DocumentStatus


class BillingRecordStore(Protocol):
    async def upsert(self, record: BillingRecord) -> BillingRecord: ...

    async def find_by_access_key(self, access_key: str) -> Optional[BillingRecord]: ...

    async def find_by_id(self, record_id: str) -> Optional[BillingRecord]: ...

    async def mark_cancelled(self, record_id: str) -> None: ...

    async def highest_sequence(self, kind: DocumentKind) -> int: ...

    async def purge_all(self) -> int: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryBillingRecordStore:
    """Keyed upsert over a dict; ``audit_log`` records every write."""

    def __init__(self) -> None:
        self._rows: Dict[str, BillingRecord] = {}
        self._lock = threading.Lock()
        self.audit_log: List[Dict[str, object]] = []

    async def upsert(self, record: BillingRecord) -> BillingRecord:
        with self._lock:
            existing = self._locate(record)
            stored = copy.deepcopy(record)
            now = _now()
            if existing is not None:
                stored.id = existing.id
                stored.created_at = existing.created_at
                stored.cancelled = existing.cancelled or record.cancelled
            else:
                stored.created_at = record.created_at or now
            stored.updated_at = now
            self._rows[stored.id] = stored
            self.audit_log.append(
                {
                    "action": "update" if existing is not None else "insert",
                    "id": stored.id,
                    "access_key": stored.access_key,
                    "status": stored.status,
                }
            )
            record.id = stored.id
            return copy.deepcopy(stored)

    def _locate(self, record: BillingRecord) -> Optional[BillingRecord]:
        if record.access_key:
            for row in self._rows.values():
                if row.access_key == record.access_key:
                    return row
        return self._rows.get(record.id)

    async def find_by_access_key(self, access_key: str) -> Optional[BillingRecord]:
        with self._lock:
            for row in self._rows.values():
                if row.access_key == access_key:
                    return copy.deepcopy(row)
        return None

    async def find_by_id(self, record_id: str) -> Optional[BillingRecord]:
        with self._lock:
            row = self._rows.get(record_id)
            return copy.deepcopy(row) if row else None

    async def mark_cancelled(self, record_id: str) -> None:
        with self._lock:
            row = self._rows.get(record_id)
            if row is not None:
                row.cancelled = True
                row.updated_at = _now()
                self.audit_log.append({"action": "cancel", "id": record_id, "access_key": row.access_key, "status": row.status})

    async def highest_sequence(self, kind: DocumentKind) -> int:
        with self._lock:
            values = [int(row.sequence) for row in self._rows.values() if row.kind is kind and row.sequence]
        return max(values, default=0)

    async def purge_all(self) -> int:
        with self._lock:
            count = len(self._rows)
            self._rows.clear()
            return count

    def rows(self) -> List[BillingRecord]:
        return [copy.deepcopy(row) for row in self._rows.values()]

    def writes_for(self, record_id: str, status: DocumentStatus) -> int:
        return sum(
            1 for entry in self.audit_log
            if entry["id"] == record_id and entry["status"] is status and entry["action"] != "cancel"
        )
