from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Protocol

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
_PRECISION = 50


class PricedLine(Protocol):
    quantity: Decimal
    rate: Decimal
    discount_percent: Decimal


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def _d(value: Decimal | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def line_amount(
    quantity: Decimal | int | str,
    rate: Decimal | int | str,
    discount_percent: Decimal | int | str | None = None,
) -> Decimal:
    """Unrounded ``quantity * rate * (1 - discount / 100)``."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return _d(quantity) * _d(rate) * (Decimal("1") - _d(discount_percent) / HUNDRED)


def compute_totals(lines: Iterable[PricedLine], tax_applicable: bool, tax_rate: Decimal) -> InvoiceTotals:
    # Rounding happens once on the subtotal and once on the tax, never per line.
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        raw = sum(
            (line_amount(line.quantity, line.rate, line.discount_percent) for line in lines),
            start=Decimal("0"),
        )
        subtotal = raw.quantize(CENT, rounding=ROUND_HALF_UP)
        tax = (subtotal * _d(tax_rate)).quantize(CENT, rounding=ROUND_HALF_UP) if tax_applicable else Decimal("0.00")
        return InvoiceTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)
