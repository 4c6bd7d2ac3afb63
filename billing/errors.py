"""Error taxonomy for electronic billing."""

from __future__ import annotations

from typing import Optional, Sequence


class BillingError(RuntimeError):
    pass


class ValidationError(BillingError):
    """Input or precondition violated; nothing was sent to the authority."""


class RecordNotFoundError(ValidationError):
    pass


class AllocationError(BillingError):
    """The sequence counter could not be incremented."""


class SigningError(BillingError):
    """Certificate missing, unreadable or expired. Not retryable."""


class PersistenceError(BillingError):
    pass


class TransportError(BillingError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        access_key: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.access_key = access_key


class BusinessRejection(BillingError):
    """The authority rejected the document on business grounds."""

    def __init__(self, message: str, *, access_key: Optional[str] = None, messages: Sequence[object] = ()) -> None:
        super().__init__(message)
        self.access_key = access_key
        self.messages = list(messages)
