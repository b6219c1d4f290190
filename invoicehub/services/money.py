"""
Monetary calculation for invoices.

All amounts are ``Decimal``. Inputs coming from forms or the database are
coerced with :func:`safe_number`, so malformed values count as zero.
"""
import math
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from ..config import settings


CENT = Decimal("0.01")
ZERO = Decimal("0")


def safe_number(value: Any) -> Decimal:
    """Coerce *value* to Decimal; missing, non-numeric, NaN and infinite values become 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return ZERO
        return Decimal(str(value))
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    return result if result.is_finite() else ZERO


def round_money(value: Decimal) -> Decimal:
    return safe_number(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_vat(subtotal: Any, is_vat_payer: bool, is_reverse_charge: bool, vat_rate: Optional[Any] = None) -> Decimal:
    if not is_vat_payer or is_reverse_charge:
        return ZERO
    rate = safe_number(settings.vat_rate if vat_rate is None else vat_rate)
    return safe_number(subtotal) * rate


def transaction_tax(total: Any, rate: Optional[Any] = None) -> Decimal:
    """
    Statutory transaction tax: ``ceil(total * rate / 100 * 100) / 100``.

    *rate* is a percentage (0.4 means 0.4 %). The result is rounded up to the
    next cent, never down; negative totals follow the same formula.
    """
    rate = safe_number(settings.transaction_tax_rate if rate is None else rate)
    raw = safe_number(total) * rate / Decimal(100)
    return raw.quantize(CENT, rounding=ROUND_CEILING)


def transaction_tax_due(total: Any, rate: Optional[Any] = None) -> Decimal:
    """Transaction tax to record on an invoice; a non-positive total owes nothing."""
    if safe_number(total) <= 0:
        return ZERO.quantize(CENT)
    return transaction_tax(total, rate)


@dataclass(frozen=True)
class InvoiceAmounts:
    total_hours: Decimal
    hourly_rate: Decimal
    subtotal: Decimal
    vat_amount: Decimal
    advance_deduction: Decimal
    lodging_deduction: Decimal
    total_amount: Decimal
    transaction_tax_rate: Decimal
    transaction_tax_amount: Decimal

    def as_dict(self) -> dict:
        return {k: str(v) for k, v in asdict(self).items()}


def calculate_invoice_amounts(
    hours: Any,
    rate: Any,
    advance_deduction: Any = 0,
    lodging_deduction: Any = 0,
    is_vat_payer: bool = False,
    is_reverse_charge: bool = False,
    transaction_tax_rate: Optional[Any] = None,
) -> InvoiceAmounts:
    """
    Compute subtotal, VAT, deductions, net total and transaction tax.

    The total is not clamped: deductions larger than the subtotal give a
    negative total, which represents an earlier overpayment.
    """
    # Hours and rate are stored with two decimals; the subtotal is computed from the stored values
    hours_d = round_money(hours)
    rate_d = round_money(rate)
    advance_d = safe_number(advance_deduction)
    lodging_d = safe_number(lodging_deduction)
    tax_rate = safe_number(settings.transaction_tax_rate if transaction_tax_rate is None else transaction_tax_rate)

    # Parts are rounded to the cent first so the stored total equals their sum
    subtotal = round_money(hours_d * rate_d)
    vat = round_money(calculate_vat(subtotal, bool(is_vat_payer), bool(is_reverse_charge)))
    advance_d = round_money(advance_d)
    lodging_d = round_money(lodging_d)
    total = subtotal + vat - advance_d - lodging_d

    return InvoiceAmounts(
        total_hours=hours_d,
        hourly_rate=rate_d,
        subtotal=subtotal,
        vat_amount=vat,
        advance_deduction=advance_d,
        lodging_deduction=lodging_d,
        total_amount=total,
        transaction_tax_rate=tax_rate,
        transaction_tax_amount=transaction_tax_due(total, tax_rate),
    )
