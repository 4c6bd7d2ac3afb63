from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import List

import pytest

from billing.access_key import AccessKeyGenerator
from billing.dto import (
    BillingRecord,
    Buyer,
    CreditNoteReason,
    CreditNoteRequest,
    DocumentKind,
    DocumentStatus,
    build_line,
)
from billing.errors import RecordNotFoundError, ValidationError
from billing.orchestrator import credit_note_deadline

from sri_fakes import BUYER, ISSUER, FakeTransport, Harness, authorized, invoice_document


async def seed_invoice(
    harness: Harness,
    *,
    emission_date: date,
    status: DocumentStatus = DocumentStatus.AUTHORIZED,
    buyer: Buyer = BUYER,
    cancelled: bool = False,
) -> BillingRecord:
    document = invoice_document(buyer=buyer, emission_date=emission_date)
    document.establishment = ISSUER.establishment
    document.emission_point = ISSUER.emission_point
    document.sequence = "000000041"
    key = AccessKeyGenerator().generate(
        emission_date, "01", ISSUER.ruc, ISSUER.environment, "001", "002", "000000041"
    )
    record = BillingRecord(
        id="invoice-41",
        kind=DocumentKind.INVOICE,
        status=status,
        emission_date=emission_date,
        access_key=key,
        sequence=document.sequence,
        document_number=document.document_number,
        buyer_identification=buyer.identification,
        total=document.totals().total,
        authorization_number=key if status is DocumentStatus.AUTHORIZED else None,
        payload=document.to_dict(),
        cancelled=cancelled,
    )
    await harness.store.upsert(record)
    return record


@pytest.mark.anyio
async def test_credit_note_end_to_end_cancels_the_invoice() -> None:
    # Arrange
    transport = FakeTransport(queries=[authorized(), authorized()])
    harness = Harness(transport)
    invoice = await harness.orchestrator.issue(invoice_document())

    # Act
    result = await harness.orchestrator.issue_credit_note(
        CreditNoteRequest(original_access_key=invoice.access_key, reason=CreditNoteReason.MERCHANDISE_RETURN)
    )

    # Assert
    assert result.status is DocumentStatus.AUTHORIZED
    assert result.access_key[8:10] == "04"
    assert result.sequence == "000000001"
    credit_xml = transport.submitted[1]
    assert "<notaCredito" in credit_xml
    assert "<codDocModificado>01</codDocModificado>" in credit_xml
    assert "<numDocModificado>001-002-000000001</numDocModificado>" in credit_xml
    assert "<motivo>Devolucion de mercaderia</motivo>" in credit_xml
    assert "<valorModificacion>19.30</valorModificacion>" in credit_xml
    original = await harness.store.find_by_id(invoice.record_id)
    assert original.cancelled is True
    stored_note = await harness.store.find_by_access_key(result.access_key)
    assert stored_note.original_id == invoice.record_id
    assert harness.counters.value("invoice") == 1
    assert harness.counters.value("credit_note") == 1


@pytest.mark.anyio
async def test_second_credit_note_for_cancelled_invoice_is_refused() -> None:
    transport = FakeTransport(queries=[authorized(), authorized()])
    harness = Harness(transport)
    invoice = await harness.orchestrator.issue(invoice_document())
    request = CreditNoteRequest(original_access_key=invoice.access_key, reason=CreditNoteReason.GRANTED_DISCOUNT)
    await harness.orchestrator.issue_credit_note(request)

    with pytest.raises(ValidationError, match="already cancelled"):
        await harness.orchestrator.issue_credit_note(request)

    assert len(transport.submitted) == 2


@pytest.mark.anyio
async def test_partial_credit_note_uses_requested_lines_and_detail() -> None:
    transport = FakeTransport(queries=[authorized(), authorized()])
    harness = Harness(transport)
    invoice = await harness.orchestrator.issue(invoice_document())

    result = await harness.orchestrator.issue_credit_note(
        CreditNoteRequest(
            original_access_key=invoice.access_key,
            reason=CreditNoteReason.PRICE_CORRECTION,
            reason_detail="Ajuste de precio jugo",
            lines=[build_line("JUG-02", "Jugo natural", 1, "1.15", 15)],
        )
    )

    assert result.authorized
    credit_xml = transport.submitted[1]
    assert "<motivo>Ajuste de precio jugo</motivo>" in credit_xml
    assert "<codigoInterno>JUG-02</codigoInterno>" in credit_xml
    assert "<valorModificacion>1.15</valorModificacion>" in credit_xml


@pytest.mark.anyio
async def test_final_consumer_invoice_cannot_be_credited() -> None:
    # Arrange
    transport = FakeTransport(queries=[authorized()])
    harness = Harness(transport)
    invoice = await harness.orchestrator.issue(invoice_document(buyer=Buyer.final_consumer()))

    # Act
    with pytest.raises(ValidationError, match="final consumer"):
        await harness.orchestrator.issue_credit_note(
            CreditNoteRequest(original_access_key=invoice.access_key, reason=CreditNoteReason.MERCHANDISE_RETURN)
        )

    # Assert
    assert len(transport.submitted) == 1
    assert harness.counters.value("credit_note") == 0


@pytest.mark.anyio
async def test_credit_note_cannot_exceed_the_invoice_total() -> None:
    transport = FakeTransport(queries=[authorized()])
    harness = Harness(transport)
    invoice = await harness.orchestrator.issue(invoice_document())

    with pytest.raises(ValidationError, match="exceeds"):
        await harness.orchestrator.issue_credit_note(
            CreditNoteRequest(
                original_access_key=invoice.access_key,
                reason=CreditNoteReason.PRICE_CORRECTION,
                lines=[build_line("ALM-01", "Almuerzo ejecutivo", 3, "8.50", 15)],
            )
        )

    assert harness.counters.value("credit_note") == 0


@pytest.mark.anyio
async def test_unknown_original_is_reported() -> None:
    harness = Harness(FakeTransport())

    with pytest.raises(RecordNotFoundError):
        await harness.orchestrator.issue_credit_note(
            CreditNoteRequest(original_access_key="2" * 49, reason=CreditNoteReason.MERCHANDISE_RETURN)
        )


@dataclass
class DeadlineScenario:
    name: str
    invoice_date: date
    today: date
    allowed: bool


DEADLINE_SCENARIOS: List[DeadlineScenario] = [
    DeadlineScenario("same_month", date(2026, 9, 15), date(2026, 9, 30), True),
    DeadlineScenario("last_day", date(2026, 9, 15), date(2026, 10, 7), True),
    DeadlineScenario("one_day_late", date(2026, 9, 15), date(2026, 10, 8), False),
    DeadlineScenario("december_rolls_year", date(2025, 12, 20), date(2026, 1, 7), True),
    DeadlineScenario("two_months_later", date(2026, 8, 1), date(2026, 10, 1), False),
]


@pytest.mark.anyio
@pytest.mark.parametrize("scenario", DEADLINE_SCENARIOS, ids=lambda s: s.name)
async def test_credit_note_deadline_window(scenario: DeadlineScenario) -> None:
    # Arrange
    transport = FakeTransport(queries=[authorized()])
    harness = Harness(transport, today=lambda: scenario.today)
    invoice = await seed_invoice(harness, emission_date=scenario.invoice_date)
    request = CreditNoteRequest(original_access_key=invoice.access_key, reason=CreditNoteReason.MERCHANDISE_RETURN)

    # Act / Assert
    if scenario.allowed:
        result = await harness.orchestrator.issue_credit_note(request)
        assert result.authorized
    else:
        with pytest.raises(ValidationError, match="deadline"):
            await harness.orchestrator.issue_credit_note(request)
        assert transport.submitted == []


@pytest.mark.anyio
@pytest.mark.parametrize(
    "status",
    [DocumentStatus.REJECTED, DocumentStatus.TIMEOUT, DocumentStatus.PROCESSING],
)
async def test_only_authorized_invoices_can_be_credited(status: DocumentStatus) -> None:
    transport = FakeTransport()
    harness = Harness(transport, today=lambda: date(2026, 9, 20))
    invoice = await seed_invoice(harness, emission_date=date(2026, 9, 15), status=status)

    with pytest.raises(ValidationError, match="authorized"):
        await harness.orchestrator.issue_credit_note(
            CreditNoteRequest(original_access_key=invoice.access_key, reason=CreditNoteReason.MERCHANDISE_RETURN)
        )

    assert transport.submitted == []


def test_deadline_is_the_seventh_of_the_following_month() -> None:
    assert credit_note_deadline(date(2026, 10, 17)) == date(2026, 11, 7)
    assert credit_note_deadline(date(2026, 12, 1)) == date(2027, 1, 7)
    assert credit_note_deadline(date(2026, 1, 31), day=10) == date(2026, 2, 10)
