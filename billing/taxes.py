"""Tax arithmetic for tax-inclusive retail prices.

Prices entered at the point of sale already include VAT. Every line is split
into a taxable base and a tax value, each rounded to two decimals with
``ROUND_HALF_UP`` at line level, so that the authority's own recomputation of
the per-line figures matches what was sent.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List

DecimalLike = Decimal | str | int | float

# SRI table 17 (codigoPorcentaje) for VAT, keyed by percentage
VAT_PERCENTAGE_CODES: Dict[Decimal, str] = {
    Decimal("0"): "0",
    Decimal("5"): "5",
    Decimal("8"): "8",
    Decimal("12"): "2",
    Decimal("13"): "10",
    Decimal("14"): "3",
    Decimal("15"): "4",
}

VAT_TAX_CODE = "2"


def _to_decimal(value: DecimalLike) -> Decimal:
    """Convert input deterministically; floats go through ``str`` first."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, str)):
        return Decimal(str(value))
    if isinstance(value, float):
        return Decimal(str(value))
    raise TypeError(f"Unsupported decimal input: {type(value)!r}")


def quantize_money(amount: DecimalLike) -> Decimal:
    """Round to two decimals (ROUND_HALF_UP)."""

    return _to_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def quantize_price(amount: DecimalLike) -> Decimal:
    """Round unit prices to the six decimals the authority accepts."""

    return _to_decimal(amount).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)


def percentage_code(rate_percent: DecimalLike) -> str:
    rate = _to_decimal(rate_percent)
    for known, code in VAT_PERCENTAGE_CODES.items():
        if known == rate:
            return code
    raise ValueError(f"Unsupported VAT rate: {rate_percent}%")


@dataclass(frozen=True, slots=True)
class LineSplit:
    gross_total: Decimal
    tax_base: Decimal
    tax_value: Decimal
    net_unit_price: Decimal


def split_inclusive(unit_price: DecimalLike, quantity: DecimalLike, rate_percent: DecimalLike) -> LineSplit:
    """Split a tax-inclusive line into base and tax.

    >>> split_inclusive("8.50", 2, 15)
    LineSplit(gross_total=Decimal('17.00'), tax_base=Decimal('14.78'), tax_value=Decimal('2.22'), net_unit_price=Decimal('7.390000'))
    """

    price = _to_decimal(unit_price)
    qty = _to_decimal(quantity)
    if qty <= 0:
        raise ValueError("quantity must be positive")
    factor = Decimal("1") + _to_decimal(rate_percent) / Decimal("100")
    gross = price * qty
    tax_base = quantize_money(gross / factor)
    tax_value = quantize_money(tax_base * (factor - Decimal("1")))
    return LineSplit(
        gross_total=quantize_money(gross),
        tax_base=tax_base,
        tax_value=tax_value,
        net_unit_price=quantize_price(tax_base / qty),
    )


@dataclass(frozen=True, slots=True)
class RateTotal:
    rate: Decimal
    code: str
    tax_base: Decimal
    tax_value: Decimal


@dataclass(frozen=True, slots=True)
class DocumentTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    by_rate: List[RateTotal]


def aggregate(lines: Iterable[tuple[DecimalLike, Decimal, Decimal]]) -> DocumentTotals:
    """Sum ``(rate_percent, tax_base, tax_value)`` triples grouped by rate."""

    bases: Dict[Decimal, Decimal] = {}
    taxes: Dict[Decimal, Decimal] = {}
    for rate, base, value in lines:
        key = quantize_money(rate)
        bases[key] = quantize_money(bases.get(key, Decimal("0.00")) + base)
        taxes[key] = quantize_money(taxes.get(key, Decimal("0.00")) + value)

    by_rate = [
        RateTotal(rate=rate, code=percentage_code(rate), tax_base=bases[rate], tax_value=taxes[rate])
        for rate in sorted(bases)
    ]
    subtotal = quantize_money(sum(bases.values(), Decimal("0.00")))
    tax = quantize_money(sum(taxes.values(), Decimal("0.00")))
    return DocumentTotals(subtotal=subtotal, tax=tax, total=quantize_money(subtotal + tax), by_rate=by_rate)
