from __future__ import annotations

from decimal import Decimal

import pytest

from backend.core.config import Settings, settings
from billing.dto import (
    Buyer,
    CreditNoteReason,
    DocumentStatus,
    FiscalDocument,
    InvoiceRequest,
    IssueResult,
    build_line,
    validate_invoice_input,
)
from billing.errors import BusinessRejection, ValidationError
from billing.issuer import IssuerConfigRepository, profile_from_settings

from sri_fakes import BUYER, invoice_document


@pytest.mark.parametrize(
    ("identification", "expected"),
    [
        ("9999999999999", "07"),
        ("1790012345001", "04"),
        ("1712345678", "05"),
        ("AB123456", "06"),
    ],
)
def test_identification_type(identification: str, expected: str) -> None:
    assert Buyer(identification=identification, name="X").identification_type == expected


def test_line_item_validation() -> None:
    with pytest.raises(ValidationError):
        build_line("X", "Nada", 0, "1.00")
    with pytest.raises(ValidationError):
        build_line("X", "Negativo", 1, "-1.00")


def test_defaults_follow_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "DEFAULT_TAX_RATE", 5)
    monkeypatch.setattr(settings, "DEFAULT_PAYMENT_METHOD", "20")
    monkeypatch.setattr(settings, "FINAL_CONSUMER_ID", "9999999999")

    line = build_line("A", "Item", 1, "1.05")

    assert line.rate == Decimal("5")
    assert line.tax_base == Decimal("1.00")
    assert build_line("B", "Item", 1, "1.15", rate=15).rate == Decimal("15")
    assert InvoiceRequest(buyer=BUYER, lines=[line]).payment_method == "20"
    assert Buyer.final_consumer().identification == "9999999999"
    assert Buyer(identification="9999999999", name="X").identification_type == "07"


def test_invoice_input_rules() -> None:
    line = build_line("A", "Item", 1, "1.00")

    with pytest.raises(ValidationError):
        validate_invoice_input(BUYER, [])
    with pytest.raises(ValidationError):
        validate_invoice_input(Buyer(identification="", name="Juan"), [line])
    with pytest.raises(ValidationError):
        validate_invoice_input(Buyer(identification="1712345678", name="  "), [line])
    with pytest.raises(ValidationError):
        validate_invoice_input(Buyer(identification="1712345678", name="Juan", email="a@b.com,c@d.com"), [line])

    validate_invoice_input(Buyer(identification="1712345678", name="Juan", email="SIN@CORREO.COM"), [line])


def test_snapshot_rebuilds_the_document() -> None:
    document = invoice_document()
    document.sequence = "000000012"
    document.submitted_keys = ["1" * 49]
    document.reason = CreditNoteReason.RUC_ERROR

    rebuilt = FiscalDocument.from_dict(document.to_dict())

    assert rebuilt.buyer == document.buyer
    assert rebuilt.document_number == document.document_number
    assert rebuilt.submitted_keys == ["1" * 49]
    assert rebuilt.reason is CreditNoteReason.RUC_ERROR
    assert rebuilt.totals() == document.totals()
    assert rebuilt.lines[0].unit_price == Decimal("8.50")


def test_add_messages_skips_duplicates() -> None:
    document = invoice_document()

    document.add_messages(["[70] EN PROCESO", "", "[70] EN PROCESO", "otro"])

    assert document.messages == ["[70] EN PROCESO", "otro"]


def test_rejected_result_raises_business_rejection() -> None:
    result = IssueResult(
        status=DocumentStatus.REJECTED,
        access_key="1" * 49,
        sequence="000000001",
        document_number="001-001-000000001",
        record_id="r1",
        messages=["[35] ARCHIVO NO CUMPLE ESTRUCTURA XML"],
    )

    with pytest.raises(BusinessRejection) as excinfo:
        result.raise_for_status()

    assert excinfo.value.messages == ["[35] ARCHIVO NO CUMPLE ESTRUCTURA XML"]


def test_other_statuses_pass_raise_for_status() -> None:
    result = IssueResult(
        status=DocumentStatus.TIMEOUT,
        access_key="1" * 49,
        sequence="000000001",
        document_number="001-001-000000001",
        record_id="r1",
    )

    assert result.raise_for_status() is result
    assert not result.authorized
    assert not DocumentStatus.TIMEOUT.is_terminal
    assert DocumentStatus.REJECTED.is_terminal


def test_issuer_profile_from_settings() -> None:
    config = Settings(
        ISSUER_RUC="1790012345001",
        ISSUER_BUSINESS_NAME="Restaurante La Esquina S.A.",
        ISSUER_MATRIX_ADDRESS="Av. Amazonas",
        ISSUER_ESTABLISHMENT_CODE="2",
        SRI_ENV="production",
    )

    profile = IssuerConfigRepository(config=config).get()

    assert profile.establishment == "002"
    assert profile.establishment_address == "Av. Amazonas"
    assert profile.is_production


def test_issuer_profile_requires_a_ruc() -> None:
    with pytest.raises(ValidationError, match="ISSUER_RUC"):
        profile_from_settings(Settings(ISSUER_RUC="123", ISSUER_BUSINESS_NAME="X"))
