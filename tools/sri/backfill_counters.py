"""Initialize sequence counters from the highest stored document numbers."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Dict, Iterable

from backend.apps.billing.repository import SqlBillingRecordStore, SqlCounterStore, get_engine
from backend.core.observability import init_observability
from billing.dto import DocumentKind
from billing.numbering import SequenceAllocator, counter_name
from billing.store import BillingRecordStore


async def backfill(store: BillingRecordStore, allocator: SequenceAllocator) -> Dict[str, int]:
    """Raise each counter to the highest sequence already on record."""

    result: Dict[str, int] = {}
    for kind in DocumentKind:
        highest = await store.highest_sequence(kind)
        result[counter_name(kind)] = await allocator.backfill(kind, highest)
    return result


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill sequence counters from stored documents")
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> None:
    parse_args(argv)
    init_observability()
    engine = get_engine()
    values = asyncio.run(backfill(SqlBillingRecordStore(engine), SequenceAllocator(SqlCounterStore(engine))))
    print(json.dumps(values, indent=2))


if __name__ == "__main__":  # pragma: no cover
    main()
