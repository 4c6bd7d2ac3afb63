"""Resume or inspect SRI documents by access key."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List

from backend.apps.billing.repository import SqlBillingRecordStore
from backend.clients.sri.client import AuthorityTransportClient
from backend.core.observability import init_observability, set_trace_id
from billing.dto import IssueResult
from billing.errors import BillingError
from billing.orchestrator import AuthorizationOrchestrator
from billing.wiring import build_orchestrator

logger = logging.getLogger(__name__)


def _result_to_dict(result: IssueResult) -> Dict[str, Any]:
    authorization = result.authorization
    return {
        "status": result.status.value,
        "access_key": result.access_key,
        "document_number": result.document_number,
        "authorization_number": authorization.number if authorization else None,
        "authorization_timestamp": (
            authorization.timestamp.isoformat() if authorization and authorization.timestamp else None
        ),
        "messages": result.messages,
    }


async def check_many(orchestrator: AuthorizationOrchestrator, access_keys: Iterable[str]) -> List[Dict[str, Any]]:
    results = []
    for key in access_keys:
        try:
            result = await orchestrator.check_status(key)
        except BillingError as exc:
            # One bad key must not stop the rest of a --pending batch
            logger.error(
                "status check failed",
                extra={"operation": "check_status", "access_key": key, "error": str(exc)},
            )
            results.append({"access_key": key, "error": str(exc)})
            continue
        results.append(_result_to_dict(result))
    return results


async def _pending_keys(limit: int) -> List[str]:
    records = await SqlBillingRecordStore().list_unfinished(limit)
    return [record.access_key for record in records if record.access_key]


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Query the authority and resume unfinished documents")
    parser.add_argument("access_keys", nargs="*", help="49-digit access keys")
    parser.add_argument(
        "--pending",
        type=int,
        metavar="N",
        help="Also resume up to N unfinished documents from the database",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> List[Dict[str, Any]]:
    keys = list(args.access_keys)
    if args.pending:
        keys.extend(key for key in await _pending_keys(args.pending) if key not in keys)
    async with AuthorityTransportClient() as transport:
        orchestrator = build_orchestrator(transport=transport)
        return await check_many(orchestrator, keys)


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    if not args.access_keys and not args.pending:
        raise SystemExit("Provide at least one access key or --pending N")
    init_observability()
    set_trace_id()
    print(json.dumps(asyncio.run(_run(args)), indent=2))


if __name__ == "__main__":  # pragma: no cover
    main()
