"""Offline consistency checks for rendered SRI documents."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional
from xml.etree import ElementTree as ET

from billing.access_key import is_valid_access_key

_ROOTS = {"factura": "infoFactura", "notaCredito": "infoNotaCredito"}


@dataclass(frozen=True)
class ParsedTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    line_base_sum: Decimal
    line_tax_sum: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items()}


@dataclass(frozen=True)
class DocumentValidationResult:
    ok: bool
    access_key: Optional[str]
    messages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _parse_decimal(text: Optional[str]) -> Decimal:
    try:
        return Decimal((text or "").strip()).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal: {text!r}") from exc


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _strip_ns(child.tag) == name:
            return child
    return None


def _text(element: Optional[ET.Element], name: str) -> Optional[str]:
    if element is None:
        return None
    node = _child(element, name)
    return None if node is None else (node.text or "")


def parse_totals(xml: str | bytes) -> ParsedTotals:
    """Read header totals and per-line sums from a rendered document."""

    root = ET.fromstring(xml)
    root_name = _strip_ns(root.tag)
    if root_name not in _ROOTS:
        raise ValueError(f"unexpected root element {root_name!r}")
    info = _child(root, _ROOTS[root_name])
    if info is None:
        raise ValueError(f"missing {_ROOTS[root_name]}")

    total_tag = "importeTotal" if root_name == "factura" else "valorModificacion"
    tax = Decimal("0.00")
    taxes = _child(info, "totalConImpuestos")
    if taxes is not None:
        for bucket in taxes:
            tax += _parse_decimal(_text(bucket, "valor"))

    line_base = Decimal("0.00")
    line_tax = Decimal("0.00")
    details = _child(root, "detalles")
    for detail in details if details is not None else []:
        line_base += _parse_decimal(_text(detail, "precioTotalSinImpuesto"))
        impuestos = _child(detail, "impuestos")
        for impuesto in impuestos if impuestos is not None else []:
            line_tax += _parse_decimal(_text(impuesto, "valor"))

    return ParsedTotals(
        subtotal=_parse_decimal(_text(info, "totalSinImpuestos")),
        tax=tax,
        total=_parse_decimal(_text(info, total_tag)),
        line_base_sum=line_base,
        line_tax_sum=line_tax,
    )


def validate_document_xml(xml: str | bytes) -> DocumentValidationResult:
    messages: List[str] = []
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as exc:
        return DocumentValidationResult(ok=False, access_key=None, messages=[f"XML not well-formed: {exc}"])

    access_key = None
    tributaria = _child(root, "infoTributaria")
    if tributaria is None:
        messages.append("infoTributaria missing")
    else:
        access_key = _text(tributaria, "claveAcceso")
        if not access_key or not is_valid_access_key(access_key):
            messages.append("claveAcceso invalid")

    try:
        totals = parse_totals(xml)
    except ValueError as exc:
        messages.append(str(exc))
    else:
        if totals.subtotal != totals.line_base_sum:
            messages.append(f"totalSinImpuestos {totals.subtotal} != line sum {totals.line_base_sum}")
        if totals.tax != totals.line_tax_sum:
            messages.append(f"tax total {totals.tax} != line tax sum {totals.line_tax_sum}")
        if totals.subtotal + totals.tax != totals.total:
            messages.append(f"total {totals.total} != {totals.subtotal} + {totals.tax}")

    return DocumentValidationResult(ok=not messages, access_key=access_key, messages=messages)
