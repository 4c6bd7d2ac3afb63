"""Buyer notification after authorization."""

from __future__ import annotations

import logging
from typing import Protocol

from billing.dto import AuthorizationDetails, FiscalDocument

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, document: FiscalDocument, authorization: AuthorizationDetails) -> None: ...


class LoggingNotifier:
    """Records the notification request; delivery happens elsewhere."""

    async def notify(self, document: FiscalDocument, authorization: AuthorizationDetails) -> None:
        logger.info(
            "authorized document ready for delivery",
            extra={
                "operation": "notify",
                "access_key": document.access_key,
                "authorization_number": authorization.number,
                "recipient": document.buyer.email,
            },
        )
