"""Client for the SRI offline web services."""

from .client import (
    AuthorityTransportClient,
    parse_authorization_response,
    parse_reception_response,
)
from .dto import (
    AuthorityMessage,
    Authorized,
    NotAuthorized,
    NotFound,
    Processing,
    QueryResult,
    Received,
    Returned,
    SubmitResult,
    Unknown,
)

__all__ = [
    "AuthorityTransportClient",
    "AuthorityMessage",
    "Authorized",
    "NotAuthorized",
    "NotFound",
    "Processing",
    "QueryResult",
    "Received",
    "Returned",
    "SubmitResult",
    "Unknown",
    "parse_authorization_response",
    "parse_reception_response",
]
