from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional

from .models import InvoiceItem

ZERO = Decimal("0.00")

DISCOUNT_TYPES = ("none", "percentage", "fixed")

DUE_TERMS_DAYS = {
    "on_receipt": 0,
    "net_7": 7,
    "net_14": 14,
    "net_30": 30,
    "net_60": 60,
}
CUSTOM_DUE_TERMS = "custom"


def money_round(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def compute_item_amount(quantity, rate) -> Decimal:
    return money_round(Decimal(quantity or 0) * Decimal(rate or 0))


def compute_discount_amount(subtotal: Decimal, discount_type: Optional[str], discount_value) -> Decimal:
    value = Decimal(discount_value or 0)
    if discount_type == "percentage":
        return money_round(subtotal * value / Decimal("100"))
    if discount_type == "fixed":
        # A flat discount never takes more than the subtotal.
        return money_round(min(value, subtotal))
    return ZERO


def compute_totals(
    items: Iterable[InvoiceItem],
    tax_rate,
    discount_type: Optional[str],
    discount_value,
    amount_paid,
) -> Dict[str, Decimal]:
    """Derive the monetary fields of an invoice.

    Uses the amount stored on each item rather than quantity x rate, and
    rounds at every derived field so the results match the stored columns.
    """
    subtotal = money_round(sum((Decimal(item.amount or 0) for item in items), ZERO))
    discount_amount = compute_discount_amount(subtotal, discount_type, discount_value)
    taxable_base = max(ZERO, subtotal - discount_amount)
    tax_amount = money_round(taxable_base * Decimal(tax_rate or 0) / Decimal("100"))
    total = money_round(taxable_base + tax_amount)
    paid = money_round(Decimal(amount_paid or 0))
    balance_due = max(ZERO, total - paid)

    return {
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "taxable_base": taxable_base,
        "tax_amount": tax_amount,
        "total": total,
        "amount_paid": paid,
        "balance_due": balance_due,
    }


def compute_due_date(issue_date: date, due_terms: str, due_date: Optional[date] = None) -> Optional[date]:
    if due_terms == CUSTOM_DUE_TERMS:
        return due_date
    return issue_date + timedelta(days=DUE_TERMS_DAYS[due_terms])
