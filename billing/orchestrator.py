"""Issuance lifecycle: submit, poll, recover and persist fiscal documents.

A document moves ``PENDING -> SENT -> PROCESSING* -> AUTHORIZED | REJECTED``.
Ambiguous outcomes (polling exhausted, sequence collision) trigger a recovery
resend with a fresh access key; each trigger is honoured once per lifecycle
run, after which the document ends in ``TIMEOUT``. Every transition is written
through the store's keyed upsert so a key change updates the same record.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import date, datetime
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Sequence, Set
from zoneinfo import ZoneInfo

from backend.clients.sri.dto import (
    AuthorityMessage,
    Authorized,
    NotAuthorized,
    Processing,
    QueryResult,
    Returned,
    Unknown,
)
from backend.core.config import settings
from backend.core.observability import metrics
from backend.core.observability.logging import set_access_key
from billing.documents.generator import DocumentXMLBuilder
from billing.dto import (
    AuthorizationDetails,
    BillingRecord,
    CreditNoteRequest,
    DocumentKind,
    DocumentStatus,
    FiscalDocument,
    InvoiceRequest,
    IssuerProfile,
    IssueResult,
    ModifiedDocument,
    validate_invoice_input,
)
from billing.errors import PersistenceError, RecordNotFoundError, TransportError, ValidationError
from billing.issuer import IssuerConfigRepository
from billing.messages import MessageClass, classify_messages
from billing.notifications import Notifier
from billing.numbering import SequenceAllocator
from billing.polling import PollPolicy, poll_until
from billing.signing import SigningGateway
from billing.store import BillingRecordStore

if TYPE_CHECKING:
    from backend.clients.sri.client import AuthorityTransportClient

logger = logging.getLogger(__name__)

POLLING_EXHAUSTED = "polling_exhausted"
SEQUENCE_COLLISION = "sequence_collision"

TIMEOUT_MESSAGE = (
    "The authority has not issued a determination yet. "
    "Query the document status again later."
)

STALE_MESSAGE = (
    "The emission date has passed and the document can no longer be resent. "
    "Query the same access key again, or void it and issue a new document."
)


def local_today() -> date:
    return datetime.now(ZoneInfo(settings.SRI_LOCAL_TIMEZONE)).date()


def credit_note_deadline(original_emission: date, day: Optional[int] = None) -> date:
    """Last day (inclusive) a credit note may amend an invoice."""

    day = settings.CREDIT_NOTE_DEADLINE_DAY if day is None else day
    if original_emission.month == 12:
        return date(original_emission.year + 1, 1, day)
    return date(original_emission.year, original_emission.month + 1, day)


def _render(messages: Sequence[AuthorityMessage]) -> List[str]:
    return [message.render() for message in messages]


class _LifecycleRun:
    """Tracks which recovery triggers were already spent."""

    def __init__(self) -> None:
        self._spent: Set[str] = set()

    def claim(self, trigger: str) -> bool:
        if trigger in self._spent:
            return False
        self._spent.add(trigger)
        return True


class AuthorizationOrchestrator:
    def __init__(
        self,
        *,
        allocator: SequenceAllocator,
        builder: DocumentXMLBuilder,
        signer: SigningGateway,
        transport: AuthorityTransportClient,
        store: BillingRecordStore,
        issuer: IssuerConfigRepository,
        notifier: Optional[Notifier] = None,
        poll_policy: Optional[PollPolicy] = None,
        today: Callable[[], date] | None = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._allocator = allocator
        self._builder = builder
        self._signer = signer
        self._transport = transport
        self._store = store
        self._issuer = issuer
        self._notifier = notifier
        self._policy = poll_policy or PollPolicy.from_settings()
        self._today = today or local_today
        self._sleep = sleep

    # Public operations

    async def issue_invoice(self, request: InvoiceRequest) -> IssueResult:
        document = FiscalDocument(
            kind=DocumentKind.INVOICE,
            emission_date=request.emission_date or self._today(),
            buyer=request.buyer,
            lines=list(request.lines),
            payment_method=request.payment_method,
        )
        return await self.issue(document)

    async def issue_credit_note(self, request: CreditNoteRequest) -> IssueResult:
        original = await self._store.find_by_access_key(request.original_access_key)
        if original is None:
            raise RecordNotFoundError(f"No invoice with access key {request.original_access_key}")
        if original.kind is not DocumentKind.INVOICE:
            raise ValidationError("Credit notes can only amend invoices")
        source = original.to_document()
        document = FiscalDocument(
            kind=DocumentKind.CREDIT_NOTE,
            emission_date=request.emission_date or self._today(),
            buyer=source.buyer,
            lines=list(request.lines) if request.lines is not None else source.lines,
            modified=ModifiedDocument(
                record_id=original.id,
                access_key=original.access_key or "",
                document_number=original.document_number or source.document_number or "",
                emission_date=original.emission_date,
            ),
            reason=request.reason,
            reason_detail=request.reason_detail,
        )
        return await self.issue(document)

    async def issue(self, document: FiscalDocument) -> IssueResult:
        started = time.monotonic()
        issuer = self._issuer.get()
        if document.kind is DocumentKind.CREDIT_NOTE:
            await self._check_credit_note(document)
        else:
            validate_invoice_input(document.buyer, document.lines)
        self._guard_realtime(document)

        document.establishment = issuer.establishment
        document.emission_point = issuer.emission_point
        document.record_id = document.record_id or uuid.uuid4().hex
        document.status = DocumentStatus.PENDING
        document.sequence = await self._allocator.next_formatted(document.kind)
        xml = self._builder.build(document, issuer)
        set_access_key(document.access_key)
        await self._persist(document, required=True)
        logger.info(
            "document created",
            extra={
                "operation": "issue",
                "kind": document.kind.value,
                "document_number": document.document_number,
                "record_id": document.record_id,
            },
        )

        try:
            return await self._lifecycle(document, issuer, xml, _LifecycleRun())
        finally:
            metrics.observe_duration(started, "sri_issue_duration_ms")

    async def check_status(self, access_key: str) -> IssueResult:
        record = await self._store.find_by_access_key(access_key)
        if record is None:
            raise RecordNotFoundError(f"No document with access key {access_key}")
        document = record.to_document()
        set_access_key(document.access_key)
        if document.status.is_terminal:
            return IssueResult.from_document(document)

        issuer = self._issuer.get()
        run = _LifecycleRun()
        result = await self._poll(document, issuer)
        if result is not None:
            return result
        if not self._can_resend(document):
            return await self._hold_stale(document, record.status)
        run.claim(POLLING_EXHAUSTED)
        xml = await self._recover(document, issuer, trigger=POLLING_EXHAUSTED)
        return await self._lifecycle(document, issuer, xml, run)

    # Lifecycle

    async def _lifecycle(
        self,
        document: FiscalDocument,
        issuer: IssuerProfile,
        xml: str,
        run: _LifecycleRun,
    ) -> IssueResult:
        while True:
            submitted = await self._submit(document, issuer, xml)
            document.add_messages(_render(submitted.messages))

            if isinstance(submitted, Returned):
                category = classify_messages(submitted.messages)
                if category is MessageClass.SEQUENCE_REGISTERED:
                    adopted = await self._adopt_previous(document, issuer)
                    if adopted is not None:
                        return adopted
                    if not run.claim(SEQUENCE_COLLISION):
                        return await self._finish_timeout(document)
                    if not self._can_resend(document):
                        return await self._hold_stale(document, DocumentStatus.TIMEOUT)
                    xml = await self._recover(document, issuer, trigger=SEQUENCE_COLLISION)
                    continue
                if category is MessageClass.UNRECOGNIZED:
                    return await self._finish_rejected(document)
                logger.info(
                    "key already known to the authority, querying it",
                    extra={"operation": "submit", "outcome": category.value},
                )
            elif isinstance(submitted, Unknown):
                logger.warning(
                    "ambiguous reception state, querying authorization",
                    extra={"operation": "submit", "state": submitted.state},
                )

            await self._transition(document, DocumentStatus.SENT)
            result = await self._poll(document, issuer)
            if result is not None:
                return result
            if not run.claim(POLLING_EXHAUSTED):
                return await self._finish_timeout(document)
            if not self._can_resend(document):
                return await self._hold_stale(document, DocumentStatus.TIMEOUT)
            xml = await self._recover(document, issuer, trigger=POLLING_EXHAUSTED)

    async def _submit(self, document: FiscalDocument, issuer: IssuerProfile, xml: str):
        self._guard_realtime(document)
        signed = await self._signer.sign(xml)
        document.signed_xml = signed
        if document.access_key and document.access_key not in document.submitted_keys:
            document.submitted_keys.append(document.access_key)
        metrics.increment_submissions(document.kind.value)
        try:
            return await self._transport.submit(signed, issuer.is_production)
        except TransportError as exc:
            document.status = DocumentStatus.RETRY_PENDING
            document.add_messages([str(exc)])
            await self._persist(document)
            logger.error(
                "submission failed, document left for retry",
                extra={"operation": "submit", "outcome": "transport_error"},
            )
            raise TransportError(
                str(exc), status_code=exc.status_code, access_key=document.access_key
            ) from exc

    async def _poll(self, document: FiscalDocument, issuer: IssuerProfile) -> Optional[IssueResult]:
        access_key = document.access_key
        if access_key is None:
            raise ValidationError("document has no access key to query")
        started = time.monotonic()

        async def probe(attempt: int) -> Optional[QueryResult]:
            try:
                result = await self._transport.query_authorization(access_key, issuer.is_production)
            except TransportError as exc:
                logger.warning(
                    "authorization query failed",
                    extra={"operation": "query", "attempt": attempt, "error": str(exc)},
                )
                return None
            if isinstance(result, (Authorized, NotAuthorized)):
                return result
            if isinstance(result, Processing):
                document.add_messages(_render(result.messages))
                if document.status is not DocumentStatus.PROCESSING:
                    await self._transition(document, DocumentStatus.PROCESSING)
            logger.debug(
                "authorization pending",
                extra={"operation": "query", "attempt": attempt, "outcome": type(result).__name__},
            )
            return None

        if self._sleep is not None:
            outcome = await poll_until(probe, self._policy, sleep=self._sleep)
        else:
            outcome = await poll_until(probe, self._policy)
        metrics.record_poll_duration((time.monotonic() - started) * 1000)

        result = outcome.result
        if result is None:
            logger.warning(
                "authorization polling exhausted",
                extra={"operation": "query", "attempts": outcome.attempts},
            )
            return None
        if isinstance(result, Authorized):
            return await self._finish_authorized(document, result)
        document.add_messages(_render(result.messages))
        return await self._finish_rejected(document)

    async def _recover(self, document: FiscalDocument, issuer: IssuerProfile, *, trigger: str) -> str:
        previous_key = document.access_key
        if trigger == SEQUENCE_COLLISION:
            document.sequence = await self._allocator.next_formatted(document.kind)
            metrics.increment_auto_heal()
        xml = self._builder.build(document, issuer)
        document.status = DocumentStatus.RETRY_PENDING
        set_access_key(document.access_key)
        await self._persist(document)
        metrics.increment_recoveries(trigger)
        logger.info(
            "recovery resend",
            extra={
                "operation": "recover",
                "trigger": trigger,
                "previous_access_key": previous_key,
                "document_number": document.document_number,
            },
        )
        return xml

    async def _adopt_previous(self, document: FiscalDocument, issuer: IssuerProfile) -> Optional[IssueResult]:
        """Reuse an earlier key of this document if the authority authorized it."""

        for key in document.submitted_keys:
            if key == document.access_key:
                continue
            try:
                result = await self._transport.query_authorization(key, issuer.is_production)
            except TransportError as exc:
                logger.warning("previous key lookup failed", extra={"operation": "adopt", "error": str(exc)})
                continue
            if isinstance(result, Authorized):
                logger.info("earlier submission already authorized", extra={"operation": "adopt", "adopted_key": key})
                document.access_key = key
                # The authorized key carries its own sequence
                document.sequence = key[30:39]
                set_access_key(key)
                return await self._finish_authorized(document, result)
        return None

    # Terminal states

    async def _finish_authorized(self, document: FiscalDocument, result: Authorized) -> IssueResult:
        document.status = DocumentStatus.AUTHORIZED
        document.authorization = AuthorizationDetails(
            number=result.number,
            timestamp=result.timestamp,
            authorized_xml=result.authorized_xml,
        )
        document.add_messages(_render(result.messages))
        await self._persist(document)
        metrics.increment_authorized(document.kind.value)
        logger.info(
            "document authorized",
            extra={"operation": "authorize", "outcome": "authorized", "authorization_number": result.number},
        )

        if document.kind is DocumentKind.CREDIT_NOTE and document.modified is not None:
            try:
                await self._store.mark_cancelled(document.modified.record_id)
            except Exception:
                logger.exception(
                    "could not flag original invoice as cancelled",
                    extra={"operation": "cancel_original", "original_id": document.modified.record_id},
                )

        await self._notify(document)
        return IssueResult.from_document(document)

    async def _finish_rejected(self, document: FiscalDocument) -> IssueResult:
        document.status = DocumentStatus.REJECTED
        await self._persist(document)
        metrics.increment_rejected(document.kind.value)
        logger.warning(
            "document rejected by the authority",
            extra={"operation": "authorize", "outcome": "rejected", "detail": "; ".join(document.messages)},
        )
        return IssueResult.from_document(document)

    async def _finish_timeout(self, document: FiscalDocument) -> IssueResult:
        document.status = DocumentStatus.TIMEOUT
        document.add_messages([TIMEOUT_MESSAGE])
        await self._persist(document)
        metrics.increment_timeouts()
        logger.warning("no determination after recovery", extra={"operation": "authorize", "outcome": "timeout"})
        return IssueResult.from_document(document)

    async def _hold_stale(self, document: FiscalDocument, status: DocumentStatus) -> IssueResult:
        """Keep the last submitted key; a resend would carry a past emission date."""

        if status not in (DocumentStatus.TIMEOUT, DocumentStatus.RETRY_PENDING):
            status = DocumentStatus.TIMEOUT
        document.status = status
        document.add_messages([STALE_MESSAGE])
        await self._persist(document)
        metrics.increment_timeouts()
        logger.warning(
            "emission date passed, recovery resend skipped",
            extra={"operation": "recover", "outcome": "stale", "emission_date": document.emission_date.isoformat()},
        )
        return IssueResult.from_document(document)

    # Helpers

    async def _transition(self, document: FiscalDocument, status: DocumentStatus) -> None:
        document.status = status
        await self._persist(document)

    async def _persist(self, document: FiscalDocument, *, required: bool = False) -> None:
        record = self._to_record(document)
        try:
            await self._store.upsert(record)
        except Exception as exc:
            if required:
                if isinstance(exc, PersistenceError):
                    raise
                raise PersistenceError(f"could not store document {document.record_id}: {exc}") from exc
            logger.exception(
                "status persistence failed",
                extra={"operation": "persist", "status": document.status.value, "record_id": document.record_id},
            )
            return
        document.record_id = record.id

    def _to_record(self, document: FiscalDocument) -> BillingRecord:
        authorization = document.authorization
        return BillingRecord(
            id=document.record_id or uuid.uuid4().hex,
            kind=document.kind,
            status=document.status,
            emission_date=document.emission_date,
            access_key=document.access_key,
            sequence=document.sequence,
            document_number=document.document_number,
            buyer_identification=document.buyer.identification,
            total=document.totals().total,
            authorization_number=authorization.number if authorization else None,
            authorization_timestamp=authorization.timestamp if authorization else None,
            messages=list(document.messages),
            payload=document.to_dict(),
            signed_xml=document.signed_xml,
            authorized_xml=authorization.authorized_xml if authorization else None,
            original_id=document.modified.record_id if document.modified else None,
        )

    async def _notify(self, document: FiscalDocument) -> None:
        if self._notifier is None or document.authorization is None:
            return
        if not document.buyer.notifiable:
            logger.info("notification skipped", extra={"operation": "notify", "outcome": "skipped"})
            return
        try:
            await self._notifier.notify(document, document.authorization)
        except Exception:
            metrics.increment_notification_failures()
            logger.exception("notification failed", extra={"operation": "notify", "outcome": "error"})

    def _can_resend(self, document: FiscalDocument) -> bool:
        return document.emission_date == self._today()

    def _guard_realtime(self, document: FiscalDocument) -> None:
        today = self._today()
        if document.emission_date != today:
            raise ValidationError(
                f"Emission date {document.emission_date:%d/%m/%Y} must be today ({today:%d/%m/%Y}); "
                "documents are transmitted in real time"
            )

    async def _check_credit_note(self, document: FiscalDocument) -> None:
        modified = document.modified
        if modified is None:
            raise ValidationError("Credit note requires the invoice it amends")
        original = await self._store.find_by_id(modified.record_id)
        if original is None and modified.access_key:
            original = await self._store.find_by_access_key(modified.access_key)
        if original is None:
            raise RecordNotFoundError(f"Original invoice {modified.record_id} not found")
        if original.status is not DocumentStatus.AUTHORIZED or not original.access_key:
            raise ValidationError("Only authorized invoices can be amended by a credit note")
        if original.cancelled:
            raise ValidationError(f"Invoice {original.document_number} is already cancelled")
        if document.buyer.is_final_consumer:
            raise ValidationError("Credit notes cannot be issued to the final consumer")
        deadline = credit_note_deadline(original.emission_date)
        if self._today() > deadline:
            raise ValidationError(
                f"Credit note deadline passed: invoice of {original.emission_date:%d/%m/%Y} "
                f"could be amended until {deadline:%d/%m/%Y}"
            )
        if document.totals().total > original.total:
            raise ValidationError(
                f"Credit note total {document.totals().total} exceeds invoice total {original.total}"
            )
