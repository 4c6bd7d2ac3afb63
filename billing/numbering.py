"""Sequence allocation for fiscal document numbers."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Protocol

from billing.dto import DocumentKind
from billing.errors import AllocationError

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 9
MAX_SEQUENCE = 10**SEQUENCE_WIDTH - 1


def format_sequence(value: int) -> str:
    if value < 1 or value > MAX_SEQUENCE:
        raise AllocationError(f"sequence {value} outside 1..{MAX_SEQUENCE}")
    return f"{value:0{SEQUENCE_WIDTH}d}"


class CounterStore(Protocol):
    async def increment(self, name: str) -> int: ...

    async def raise_to(self, name: str, value: int) -> int: ...

    async def reset(self, names: List[str]) -> None: ...


class InMemoryCounterStore:
    """Counter rows held in process memory, guarded by a lock."""

    def __init__(self, initial: Dict[str, int] | None = None) -> None:
        self._values: Dict[str, int] = dict(initial or {})
        self._lock = threading.Lock()

    async def increment(self, name: str) -> int:
        with self._lock:
            value = self._values.get(name, 0) + 1
            self._values[name] = value
            return value

    async def raise_to(self, name: str, value: int) -> int:
        with self._lock:
            current = max(self._values.get(name, 0), value)
            self._values[name] = current
            return current

    async def reset(self, names: List[str]) -> None:
        with self._lock:
            for name in names:
                self._values[name] = 0

    def value(self, name: str) -> int:
        return self._values.get(name, 0)


def counter_name(kind: DocumentKind) -> str:
    return "invoice" if kind is DocumentKind.INVOICE else "credit_note"


class SequenceAllocator:
    """Hands out strictly increasing sequence numbers per document kind.

    There is no local fallback: when the counter store fails the issuance
    attempt fails with :class:`AllocationError`.
    """

    def __init__(self, store: CounterStore) -> None:
        self._store = store

    async def next(self, kind: DocumentKind) -> int:
        name = counter_name(kind)
        try:
            value = await self._store.increment(name)
        except AllocationError:
            raise
        except Exception as exc:
            logger.error(
                "sequence allocation failed",
                extra={"operation": "allocate", "counter": name, "outcome": "error"},
            )
            raise AllocationError(f"could not allocate {name} sequence: {exc}") from exc
        logger.info(
            "sequence allocated",
            extra={"operation": "allocate", "counter": name, "sequence": value},
        )
        return value

    async def next_formatted(self, kind: DocumentKind) -> str:
        return format_sequence(await self.next(kind))

    async def backfill(self, kind: DocumentKind, highest_seen: int) -> int:
        """Raise a counter to a historical maximum; never lowers it."""

        name = counter_name(kind)
        try:
            return await self._store.raise_to(name, highest_seen)
        except Exception as exc:
            raise AllocationError(f"could not backfill {name}: {exc}") from exc

    async def reset_all(self) -> None:
        """Administrative reset. Callers must purge stored records as well."""

        names = [counter_name(kind) for kind in DocumentKind]
        await self._store.reset(names)
        logger.warning("sequence counters reset", extra={"operation": "reset", "counters": names})

