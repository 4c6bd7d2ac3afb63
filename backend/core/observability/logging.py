"""JSON structured logging with mandatory fields and PII redaction."""
import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from backend.core.config import settings

# Context is task-local so concurrent issuance keeps its own trace
_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
_access_key: ContextVar[Optional[str]] = ContextVar("access_key", default=None)

_RESERVED = frozenset(
    (
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName',
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        self.email_pattern = re.compile(r'(\b\S+@\S+\.\S+\b)')
        # Access keys (49 digits) and RUCs must stay readable, so only
        # short digit runs that look like phone numbers are masked.
        self.phone_pattern = re.compile(r'(?<!\d)(\+?\d[\d \-/]{6,11}\d)(?!\d)')

    def _redact_pii(self, text: str) -> str:
        if not isinstance(text, str):
            return text
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_phone, text)
        return text

    def _mask_email(self, match) -> str:
        """Mask email: show first char of user, keep domain."""
        email = match.group(1)
        if "@" not in email:
            return email
        user, domain = email.split("@", 1)
        if len(user) <= 1:
            masked_user = "*"
        else:
            masked_user = user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def _mask_phone(self, match) -> str:
        phone = match.group(1)
        digits = re.sub(r'\D', '', phone)
        # 10 and 13 digit runs are identification numbers, left to the caller
        if len(digits) in (10, 13):
            return phone
        return phone[:2] + "*" * (len(phone) - 2)

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        log_entry = {
            'trace_id': _trace_id.get() or 'unknown',
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self._redact_pii(record.getMessage()),
            'ts_utc': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        }

        access_key = _access_key.get()
        if access_key:
            log_entry['access_key'] = access_key

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set trace ID for the current task context."""
    _trace_id.set(trace_id)


def get_trace_id() -> Optional[str]:
    return _trace_id.get()


def set_access_key(access_key: Optional[str]) -> None:
    """Bind the document access key to the current task context."""
    _access_key.set(access_key)


def init_logging() -> None:
    """Initialize JSON logging with mandatory fields."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)
