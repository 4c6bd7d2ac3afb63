"""49-digit access keys (clave de acceso) with modulus-11 check digit."""

from __future__ import annotations

import secrets
import threading
from datetime import date
from typing import Callable, Dict, Set, Tuple

from billing.errors import ValidationError

ACCESS_KEY_LENGTH = 49
NUMERIC_CODE_SPACE = 100_000_000

_FIELD_WIDTHS = (
    ("kind", 2),
    ("ruc", 13),
    ("environment", 1),
    ("establishment", 3),
    ("emission_point", 3),
    ("sequence", 9),
)


def mod11_check_digit(payload: str) -> int:
    """Weights 2..7 cycle from the rightmost digit; 11 maps to 0, 10 to 1."""

    if not payload.isdigit():
        raise ValidationError("check digit payload must be numeric")
    total = 0
    weight = 2
    for digit in reversed(payload):
        total += int(digit) * weight
        weight = 2 if weight == 7 else weight + 1
    check = 11 - (total % 11)
    if check == 11:
        return 0
    if check == 10:
        return 1
    return check


def is_valid_access_key(key: str) -> bool:
    if len(key) != ACCESS_KEY_LENGTH or not key.isdigit():
        return False
    return mod11_check_digit(key[:-1]) == int(key[-1])


def _default_numeric_code() -> int:
    return secrets.randbelow(NUMERIC_CODE_SPACE)


class AccessKeyGenerator:
    """Builds access keys and never reuses a numeric code for one sequence.

    Keys for the same document number differ only in the 8-digit numeric code
    and the check digit, so every regeneration during recovery produces a
    distinct key.
    """

    def __init__(self, *, numeric_code: Callable[[], int] | None = None) -> None:
        self._numeric_code = numeric_code or _default_numeric_code
        self._issued: Dict[Tuple[str, str, str, str, str], Set[int]] = {}
        self._lock = threading.Lock()

    def generate(
        self,
        emission_date: date,
        kind: str,
        ruc: str,
        environment: str,
        establishment: str,
        emission_point: str,
        sequence: str,
        *,
        emission_type: str = "1",
    ) -> str:
        values = {
            "kind": kind,
            "ruc": ruc,
            "environment": environment,
            "establishment": establishment,
            "emission_point": emission_point,
            "sequence": sequence,
        }
        for name, width in _FIELD_WIDTHS:
            value = values[name]
            if len(value) != width or not value.isdigit():
                raise ValidationError(f"{name} must be {width} digits, got {value!r}")
        if emission_type != "1":
            raise ValidationError("only normal emission (type 1) is supported")

        code = self._unique_code((kind, ruc, establishment, emission_point, sequence))
        payload = (
            f"{emission_date:%d%m%Y}{kind}{ruc}{environment}"
            f"{establishment}{emission_point}{sequence}{code:08d}{emission_type}"
        )
        return payload + str(mod11_check_digit(payload))

    def _unique_code(self, key: Tuple[str, str, str, str, str]) -> int:
        with self._lock:
            used = self._issued.setdefault(key, set())
            if len(used) >= NUMERIC_CODE_SPACE:
                raise ValidationError("numeric code space exhausted for sequence")
            while True:
                code = self._numeric_code() % NUMERIC_CODE_SPACE
                if code not in used:
                    used.add(code)
                    return code
