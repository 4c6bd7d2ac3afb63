"""Classification of free-text authority messages.

The authority reports recoverable conditions only through message text and
numeric identifiers. All matching lives here; callers act on the returned
class and never inspect message text themselves.
"""

from __future__ import annotations

import unicodedata
from enum import Enum
from typing import Iterable, Optional, Protocol


class MessageClass(str, Enum):
    ACCESS_KEY_REGISTERED = "access_key_registered"
    IN_PROCESS = "in_process"
    SEQUENCE_REGISTERED = "sequence_registered"
    UNRECOGNIZED = "unrecognized"


class _Message(Protocol):
    identifier: str
    message: str
    additional_info: str


_BY_IDENTIFIER = {
    "43": MessageClass.ACCESS_KEY_REGISTERED,
    "45": MessageClass.SEQUENCE_REGISTERED,
    "70": MessageClass.IN_PROCESS,
}

# Checked in order; the first fragment found wins
_BY_TEXT = (
    ("CLAVE ACCESO REGISTRADA", MessageClass.ACCESS_KEY_REGISTERED),
    ("CLAVE DE ACCESO REGISTRADA", MessageClass.ACCESS_KEY_REGISTERED),
    ("CLAVE DE ACCESO EN PROCESAMIENTO", MessageClass.IN_PROCESS),
    ("EN PROCESAMIENTO", MessageClass.IN_PROCESS),
    ("ERROR SECUENCIAL REGISTRADO", MessageClass.SEQUENCE_REGISTERED),
    ("SECUENCIAL REGISTRADO", MessageClass.SEQUENCE_REGISTERED),
)


def _normalize(text: Optional[str]) -> str:
    decomposed = unicodedata.normalize("NFD", text or "")
    plain = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(plain.upper().split())


def classify_message(message: _Message) -> MessageClass:
    by_id = _BY_IDENTIFIER.get((message.identifier or "").strip())
    if by_id is not None:
        return by_id
    text = _normalize(f"{message.message} {message.additional_info}")
    for fragment, result in _BY_TEXT:
        if fragment in text:
            return result
    return MessageClass.UNRECOGNIZED


def classify_messages(messages: Iterable[_Message]) -> MessageClass:
    """Classify a batch; a sequence collision outranks the other classes."""

    found = {classify_message(message) for message in messages}
    for candidate in (
        MessageClass.SEQUENCE_REGISTERED,
        MessageClass.ACCESS_KEY_REGISTERED,
        MessageClass.IN_PROCESS,
    ):
        if candidate in found:
            return candidate
    return MessageClass.UNRECOGNIZED
