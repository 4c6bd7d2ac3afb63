"""Destructive reset: zero every counter and delete all billing records."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Dict, Iterable

from backend.apps.billing.repository import SqlBillingRecordStore, SqlCounterStore, get_engine
from backend.core.observability import init_observability
from billing.numbering import SequenceAllocator
from billing.store import BillingRecordStore

CONFIRMATION = "RESET"

logger = logging.getLogger(__name__)


async def reset_billing(store: BillingRecordStore, allocator: SequenceAllocator) -> Dict[str, int]:
    deleted = await store.purge_all()
    await allocator.reset_all()
    logger.warning(
        "billing reset",
        extra={"operation": "reset", "outcome": "done", "deleted_records": deleted},
    )
    return {"deleted_records": deleted}


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete all billing records and reset counters")
    parser.add_argument(
        "--confirm",
        required=True,
        help=f"Must be '{CONFIRMATION}'; guards against accidental runs",
    )
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    if args.confirm != CONFIRMATION:
        raise SystemExit(f"Refusing to reset without --confirm {CONFIRMATION}")
    init_observability()
    engine = get_engine()
    summary = asyncio.run(reset_billing(SqlBillingRecordStore(engine), SequenceAllocator(SqlCounterStore(engine))))
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":  # pragma: no cover
    main()
