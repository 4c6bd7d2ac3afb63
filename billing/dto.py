"""Domain objects for SRI electronic documents.

Documents are plain in-memory dataclasses. Monetary values are ``Decimal`` and
rounded with ``ROUND_HALF_UP`` at line level (see :mod:`billing.taxes`). A
document can be flattened into a JSON-safe snapshot and rebuilt from it, which
is how stored records are resent during recovery.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from backend.core.config import settings
from billing.errors import BusinessRejection, ValidationError
from billing.taxes import DecimalLike, DocumentTotals, LineSplit, _to_decimal, aggregate, split_inclusive

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_GENERIC_EMAILS = frozenset({"consumidor@final", "consumidor@final.com", "noemail", "sin@correo.com"})


class DocumentKind(str, Enum):
    INVOICE = "01"
    CREDIT_NOTE = "04"


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    PROCESSING = "PROCESSING"
    AUTHORIZED = "AUTHORIZED"
    REJECTED = "REJECTED"
    RETRY_PENDING = "RETRY_PENDING"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.AUTHORIZED, DocumentStatus.REJECTED)


class CreditNoteReason(str, Enum):
    MERCHANDISE_RETURN = "01"
    GRANTED_DISCOUNT = "02"
    VOIDED_DOCUMENT_RETURN = "03"
    VOIDED_DOCUMENT_DISCOUNT = "04"
    RUC_ERROR = "05"
    DESCRIPTION_ERROR = "06"
    PRICE_CORRECTION = "07"

    @property
    def label(self) -> str:
        return _REASON_LABELS[self]


_REASON_LABELS = {
    CreditNoteReason.MERCHANDISE_RETURN: "Devolucion de mercaderia",
    CreditNoteReason.GRANTED_DISCOUNT: "Descuento otorgado",
    CreditNoteReason.VOIDED_DOCUMENT_RETURN: "Devolucion por anulacion de comprobante",
    CreditNoteReason.VOIDED_DOCUMENT_DISCOUNT: "Descuento por anulacion de comprobante",
    CreditNoteReason.RUC_ERROR: "Error en RUC del comprador",
    CreditNoteReason.DESCRIPTION_ERROR: "Error en descripcion",
    CreditNoteReason.PRICE_CORRECTION: "Correccion de precio",
}


def is_valid_email(value: str) -> bool:
    return bool(value) and "," not in value and bool(_EMAIL_RE.match(value))


@dataclass(frozen=True, slots=True)
class Buyer:
    identification: str
    name: str
    address: str = ""
    email: str = ""
    phone: str = ""

    @property
    def is_final_consumer(self) -> bool:
        return self.identification == settings.FINAL_CONSUMER_ID

    @property
    def identification_type(self) -> str:
        if self.is_final_consumer:
            return "07"
        if self.identification.isdigit() and len(self.identification) == 13:
            return "04"
        if self.identification.isdigit() and len(self.identification) == 10:
            return "05"
        return "06"

    @property
    def notifiable(self) -> bool:
        """True when an authorized document may be mailed to this buyer."""

        email = self.email.strip().lower()
        return (
            not self.is_final_consumer
            and is_valid_email(email)
            and email not in _GENERIC_EMAILS
        )

    @classmethod
    def final_consumer(cls) -> "Buyer":
        return cls(identification=settings.FINAL_CONSUMER_ID, name="CONSUMIDOR FINAL")


@dataclass(slots=True)
class LineItem:
    code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    rate: Decimal = field(default_factory=lambda: Decimal(settings.DEFAULT_TAX_RATE))
    _split: LineSplit = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.quantity = _to_decimal(self.quantity)
        self.unit_price = _to_decimal(self.unit_price)
        self.rate = _to_decimal(self.rate)
        if self.quantity <= 0:
            raise ValidationError(f"Line {self.code!r}: quantity must be positive")
        if self.unit_price < 0:
            raise ValidationError(f"Line {self.code!r}: unit price must not be negative")
        self._split = split_inclusive(self.unit_price, self.quantity, self.rate)

    @property
    def tax_base(self) -> Decimal:
        return self._split.tax_base

    @property
    def tax_value(self) -> Decimal:
        return self._split.tax_value

    @property
    def net_unit_price(self) -> Decimal:
        return self._split.net_unit_price

    @property
    def gross_total(self) -> Decimal:
        return self._split.gross_total


@dataclass(frozen=True, slots=True)
class IssuerProfile:
    business_name: str
    ruc: str
    matrix_address: str
    establishment_address: str
    establishment: str = "001"
    emission_point: str = "001"
    commercial_name: str = ""
    keeps_accounting: bool = False
    special_taxpayer: str = ""
    environment: str = "1"
    email: str = ""

    @property
    def is_production(self) -> bool:
        return self.environment == "2"


@dataclass(frozen=True, slots=True)
class ModifiedDocument:
    """Reference from a credit note to the invoice it amends."""

    record_id: str
    access_key: str
    document_number: str
    emission_date: date


@dataclass(frozen=True, slots=True)
class AuthorizationDetails:
    number: str
    timestamp: Optional[datetime] = None
    authorized_xml: Optional[str] = None


@dataclass(slots=True)
class FiscalDocument:
    kind: DocumentKind
    emission_date: date
    buyer: Buyer
    lines: List[LineItem]
    establishment: str = "001"
    emission_point: str = "001"
    payment_method: str = field(default_factory=lambda: settings.DEFAULT_PAYMENT_METHOD)
    sequence: Optional[str] = None
    access_key: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    record_id: Optional[str] = None
    authorization: Optional[AuthorizationDetails] = None
    messages: List[str] = field(default_factory=list)
    # Every access key that reached the authority, oldest first
    submitted_keys: List[str] = field(default_factory=list)
    modified: Optional[ModifiedDocument] = None
    reason: Optional[CreditNoteReason] = None
    reason_detail: str = ""
    signed_xml: Optional[str] = field(default=None, repr=False)

    def totals(self) -> DocumentTotals:
        if not self.lines:
            raise ValidationError("Document requires at least one line item")
        return aggregate((line.rate, line.tax_base, line.tax_value) for line in self.lines)

    @property
    def document_number(self) -> Optional[str]:
        if self.sequence is None:
            return None
        return f"{self.establishment}-{self.emission_point}-{self.sequence}"

    @property
    def reason_text(self) -> str:
        if self.reason_detail:
            return self.reason_detail
        return self.reason.label if self.reason else ""

    def add_messages(self, messages: Sequence[str]) -> None:
        for message in messages:
            if message and message not in self.messages:
                self.messages.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "emission_date": self.emission_date.isoformat(),
            "buyer": {
                "identification": self.buyer.identification,
                "name": self.buyer.name,
                "address": self.buyer.address,
                "email": self.buyer.email,
                "phone": self.buyer.phone,
            },
            "lines": [
                {
                    "code": line.code,
                    "description": line.description,
                    "quantity": str(line.quantity),
                    "unit_price": str(line.unit_price),
                    "rate": str(line.rate),
                }
                for line in self.lines
            ],
            "establishment": self.establishment,
            "emission_point": self.emission_point,
            "payment_method": self.payment_method,
            "sequence": self.sequence,
            "submitted_keys": list(self.submitted_keys),
            "modified": None
            if self.modified is None
            else {
                "record_id": self.modified.record_id,
                "access_key": self.modified.access_key,
                "document_number": self.modified.document_number,
                "emission_date": self.modified.emission_date.isoformat(),
            },
            "reason": self.reason.value if self.reason else None,
            "reason_detail": self.reason_detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FiscalDocument":
        modified = data.get("modified")
        reason = data.get("reason")
        return cls(
            kind=DocumentKind(data["kind"]),
            emission_date=date.fromisoformat(data["emission_date"]),
            buyer=Buyer(**data["buyer"]),
            lines=[
                LineItem(
                    code=line["code"],
                    description=line["description"],
                    quantity=Decimal(line["quantity"]),
                    unit_price=Decimal(line["unit_price"]),
                    rate=Decimal(line["rate"]),
                )
                for line in data["lines"]
            ],
            establishment=data.get("establishment", "001"),
            emission_point=data.get("emission_point", "001"),
            payment_method=data.get("payment_method") or settings.DEFAULT_PAYMENT_METHOD,
            sequence=data.get("sequence"),
            submitted_keys=list(data.get("submitted_keys") or []),
            modified=None
            if not modified
            else ModifiedDocument(
                record_id=modified["record_id"],
                access_key=modified["access_key"],
                document_number=modified["document_number"],
                emission_date=date.fromisoformat(modified["emission_date"]),
            ),
            reason=CreditNoteReason(reason) if reason else None,
            reason_detail=data.get("reason_detail", ""),
        )


@dataclass(slots=True)
class BillingRecord:
    """Durable row for one fiscal document."""

    id: str
    kind: DocumentKind
    status: DocumentStatus
    emission_date: date
    access_key: Optional[str] = None
    sequence: Optional[str] = None
    document_number: Optional[str] = None
    buyer_identification: str = ""
    total: Decimal = Decimal("0.00")
    authorization_number: Optional[str] = None
    authorization_timestamp: Optional[datetime] = None
    messages: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)
    signed_xml: Optional[str] = None
    authorized_xml: Optional[str] = None
    original_id: Optional[str] = None
    cancelled: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_document(self) -> FiscalDocument:
        document = FiscalDocument.from_dict(self.payload)
        document.record_id = self.id
        document.access_key = self.access_key
        document.status = self.status
        document.messages = list(self.messages)
        document.signed_xml = self.signed_xml
        if self.authorization_number:
            document.authorization = AuthorizationDetails(
                number=self.authorization_number,
                timestamp=self.authorization_timestamp,
                authorized_xml=self.authorized_xml,
            )
        return document


@dataclass(slots=True)
class IssueResult:
    status: DocumentStatus
    access_key: Optional[str]
    sequence: Optional[str]
    document_number: Optional[str]
    record_id: Optional[str]
    authorization: Optional[AuthorizationDetails] = None
    messages: List[str] = field(default_factory=list)

    @property
    def authorized(self) -> bool:
        return self.status is DocumentStatus.AUTHORIZED

    def raise_for_status(self) -> "IssueResult":
        if self.status is DocumentStatus.REJECTED:
            detail = "; ".join(self.messages) or "no detail"
            raise BusinessRejection(
                f"Document {self.access_key} rejected: {detail}",
                access_key=self.access_key,
                messages=self.messages,
            )
        return self

    @classmethod
    def from_document(cls, document: FiscalDocument) -> "IssueResult":
        return cls(
            status=document.status,
            access_key=document.access_key,
            sequence=document.sequence,
            document_number=document.document_number,
            record_id=document.record_id,
            authorization=document.authorization,
            messages=list(document.messages),
        )


@dataclass(frozen=True, slots=True)
class InvoiceRequest:
    buyer: Buyer
    lines: Sequence[LineItem]
    emission_date: Optional[date] = None
    payment_method: str = field(default_factory=lambda: settings.DEFAULT_PAYMENT_METHOD)


@dataclass(frozen=True, slots=True)
class CreditNoteRequest:
    original_access_key: str
    reason: CreditNoteReason
    # None credits every line of the original invoice
    lines: Optional[Sequence[LineItem]] = None
    reason_detail: str = ""
    emission_date: Optional[date] = None


def build_line(
    code: str,
    description: str,
    quantity: DecimalLike,
    unit_price: DecimalLike,
    rate: Optional[DecimalLike] = None,
) -> LineItem:
    return LineItem(
        code=code,
        description=description,
        quantity=_to_decimal(quantity),
        unit_price=_to_decimal(unit_price),
        rate=_to_decimal(settings.DEFAULT_TAX_RATE if rate is None else rate),
    )


def validate_invoice_input(buyer: Buyer, lines: Sequence[LineItem]) -> None:
    """Reject malformed input before a sequence number is consumed."""

    if not lines:
        raise ValidationError("Invoice requires at least one line item")
    if not buyer.identification:
        raise ValidationError("Buyer identification is required")
    if not buyer.name.strip():
        raise ValidationError("Buyer name is required")
    email = buyer.email.strip()
    if email and email.lower() not in _GENERIC_EMAILS and not is_valid_email(email):
        raise ValidationError(f"Invalid buyer email: {buyer.email!r}")
