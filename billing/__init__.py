"""Electronic billing for Ecuador's SRI offline web services."""

from .access_key import AccessKeyGenerator, is_valid_access_key, mod11_check_digit
from .documents import DocumentXMLBuilder, parse_totals, sanitize_text, validate_document_xml
from .dto import (
    AuthorizationDetails,
    BillingRecord,
    Buyer,
    CreditNoteReason,
    CreditNoteRequest,
    DocumentKind,
    DocumentStatus,
    FiscalDocument,
    InvoiceRequest,
    IssueResult,
    IssuerProfile,
    LineItem,
    ModifiedDocument,
    build_line,
)
from .errors import (
    AllocationError,
    BillingError,
    BusinessRejection,
    PersistenceError,
    RecordNotFoundError,
    SigningError,
    TransportError,
    ValidationError,
)
from .issuer import IssuerConfigRepository
from .messages import MessageClass, classify_message, classify_messages
from .numbering import InMemoryCounterStore, SequenceAllocator, format_sequence
from .orchestrator import AuthorizationOrchestrator, credit_note_deadline
from .polling import PollPolicy, poll_until
from .signing import Pkcs12SigningGateway, SigningGateway
from .store import BillingRecordStore, InMemoryBillingRecordStore

__all__ = [
    "AccessKeyGenerator",
    "AllocationError",
    "AuthorizationDetails",
    "AuthorizationOrchestrator",
    "BillingError",
    "BillingRecord",
    "BillingRecordStore",
    "BusinessRejection",
    "Buyer",
    "CreditNoteReason",
    "CreditNoteRequest",
    "DocumentKind",
    "DocumentStatus",
    "DocumentXMLBuilder",
    "FiscalDocument",
    "InMemoryBillingRecordStore",
    "InMemoryCounterStore",
    "InvoiceRequest",
    "IssueResult",
    "IssuerConfigRepository",
    "IssuerProfile",
    "LineItem",
    "MessageClass",
    "ModifiedDocument",
    "PersistenceError",
    "Pkcs12SigningGateway",
    "PollPolicy",
    "RecordNotFoundError",
    "SequenceAllocator",
    "SigningError",
    "SigningGateway",
    "TransportError",
    "ValidationError",
    "build_line",
    "classify_message",
    "classify_messages",
    "credit_note_deadline",
    "format_sequence",
    "is_valid_access_key",
    "mod11_check_digit",
    "parse_totals",
    "poll_until",
    "sanitize_text",
    "validate_document_xml",
]
