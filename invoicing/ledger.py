"""Invoice ledger operations.

Each public function is one unit of work: it runs inside the session's
transaction and either commits everything or rolls everything back. Invoices
are loaded with a row lock before they are mutated, so concurrent edits of
the same invoice are applied one after the other.
"""

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import lifecycle
from .config import DEFAULT_CURRENCY
from .exceptions import (
    AllocationFailure,
    ImmutableStateViolation,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .models import Client, Invoice, InvoiceItem, Payment, User
from .numbering import allocate_invoice_number
from .services import (
    CUSTOM_DUE_TERMS,
    DISCOUNT_TYPES,
    DUE_TERMS_DAYS,
    ZERO,
    compute_due_date,
    compute_item_amount,
    compute_totals,
    money_round,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "client_id",
    "issue_date",
    "due_date",
    "due_terms",
    "currency",
    "tax_rate",
    "discount_type",
    "discount_value",
    "notes",
    "terms",
    "footer",
)
TOTAL_FIELDS = ("subtotal", "discount_amount", "tax_amount", "total", "amount_paid", "balance_due")
SETTLEMENT_NOTE = "Marked as paid"
NUMBER_CONSTRAINT = "invoices_user_id_invoice_number_unique"

SORT_FIELDS = {
    "issue_date": Invoice.issue_date,
    "due_date": Invoice.due_date,
    "total": Invoice.total,
    "invoice_number": Invoice.invoice_number,
    "status": Invoice.status,
    "created_at": Invoice.created_at,
}


def _today() -> date:
    return date.today()


def _parse_decimal(value: Any, field: str, errors: Dict[str, str]) -> Optional[Decimal]:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        errors[field] = "Invalid numeric value."
        return None
    if not parsed.is_finite():
        errors[field] = "Invalid numeric value."
        return None
    return parsed


def _parse_date(value: Any, field: str, errors: Dict[str, str]) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        errors[field] = "Invalid date."
        return None


def _clean_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    errors: Dict[str, str] = {}
    cleaned = []
    for index, item in enumerate(items):
        prefix = f"items[{index}]"
        description = (item.get("description") or "").strip()
        if not description:
            errors[f"{prefix}.description"] = "Description is required."

        quantity = item.get("quantity")
        quantity = _parse_decimal(1 if quantity is None else quantity, f"{prefix}.quantity", errors)
        if quantity is not None:
            quantity = money_round(quantity)
            if quantity <= 0:
                errors[f"{prefix}.quantity"] = "Quantity must be greater than 0."

        rate = item.get("rate")
        rate = _parse_decimal(0 if rate is None else rate, f"{prefix}.rate", errors)
        if rate is not None:
            rate = money_round(rate)
            if rate < 0:
                errors[f"{prefix}.rate"] = "Rate cannot be negative."

        cleaned.append({"description": description, "quantity": quantity, "rate": rate})

    if errors:
        raise ValidationError("Invalid invoice items", errors)
    return cleaned


def _clean_invoice_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    cleaned = dict(data)

    try:
        cleaned["client_id"] = int(data.get("client_id"))
    except (TypeError, ValueError):
        errors["client_id"] = "A valid client is required."

    cleaned["issue_date"] = _parse_date(data.get("issue_date"), "issue_date", errors)
    cleaned["due_date"] = _parse_date(data.get("due_date"), "due_date", errors)

    due_terms = data.get("due_terms") or "on_receipt"
    if due_terms != CUSTOM_DUE_TERMS and due_terms not in DUE_TERMS_DAYS:
        errors["due_terms"] = "Unsupported due terms."
    cleaned["due_terms"] = due_terms

    currency = data.get("currency")
    if currency is not None:
        currency = str(currency).strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            errors["currency"] = "Currency must be a 3-letter code."
    cleaned["currency"] = currency

    # Stored with two decimals; totals must use the stored value.
    tax_rate = _parse_decimal(data.get("tax_rate") or 0, "tax_rate", errors)
    if tax_rate is not None:
        tax_rate = money_round(tax_rate)
        if not ZERO <= tax_rate <= 100:
            errors["tax_rate"] = "Tax rate must be between 0 and 100."
    cleaned["tax_rate"] = tax_rate

    discount_type = data.get("discount_type") or "none"
    if discount_type not in DISCOUNT_TYPES:
        errors["discount_type"] = "Discount type must be none, percentage or fixed."
    cleaned["discount_type"] = discount_type

    discount_value = _parse_decimal(data.get("discount_value") or 0, "discount_value", errors)
    if discount_value is not None:
        discount_value = money_round(discount_value)
        if discount_value < 0:
            errors["discount_value"] = "Discount cannot be negative."
        elif discount_type == "percentage" and discount_value > 100:
            errors["discount_value"] = "Percentage discount cannot exceed 100."
    cleaned["discount_value"] = discount_value

    if errors:
        raise ValidationError("Invalid invoice", errors)
    return cleaned


def _is_number_collision(exc: IntegrityError) -> bool:
    # PostgreSQL reports the constraint name, SQLite the column list.
    message = str(exc.orig)
    return NUMBER_CONSTRAINT in message or "invoices.user_id, invoices.invoice_number" in message


def _get_client(db: Session, user_id: int, client_id: int) -> Client:
    client = db.query(Client).filter(Client.id == client_id, Client.user_id == user_id).first()
    if not client:
        raise NotFound("Client not found", {"client_id": str(client_id)})
    return client


def _load_invoice(db: Session, user_id: int, invoice_id: int, lock: bool = False) -> Invoice:
    query = (
        db.query(Invoice)
        .options(selectinload(Invoice.items), selectinload(Invoice.payments))
        .filter(Invoice.id == invoice_id, Invoice.user_id == user_id)
    )
    if lock:
        query = query.populate_existing().with_for_update(of=Invoice)
    invoice = query.first()
    if not invoice:
        raise NotFound("Invoice not found", {"invoice_id": str(invoice_id)})
    return invoice


def _guard_editable(invoice: Invoice) -> None:
    if invoice.status in lifecycle.LOCKED_STATUSES:
        logger.warning("Rejected edit of %s invoice %s", invoice.status, invoice.invoice_number)
        raise ImmutableStateViolation(
            f"Cannot edit {invoice.status} invoices", {"status": invoice.status}
        )


def _replace_items(invoice: Invoice, items: List[Dict[str, Any]]) -> None:
    invoice.items.clear()
    for sort_order, item in enumerate(items):
        invoice.items.append(
            InvoiceItem(
                description=item["description"],
                quantity=item["quantity"],
                rate=item["rate"],
                amount=compute_item_amount(item["quantity"], item["rate"]),
                sort_order=sort_order,
            )
        )


def _apply_totals(invoice: Invoice) -> Dict[str, Decimal]:
    amount_paid = sum((Decimal(p.amount) for p in invoice.payments), ZERO)
    totals = compute_totals(
        invoice.items,
        invoice.tax_rate,
        invoice.discount_type,
        invoice.discount_value,
        amount_paid,
    )
    for field in TOTAL_FIELDS:
        setattr(invoice, field, totals[field])
    return totals


def _settle_if_covered(invoice: Invoice) -> None:
    if invoice.status == lifecycle.PAID:
        return
    if invoice.amount_paid > 0 and invoice.balance_due <= 0:
        lifecycle.apply(invoice, lifecycle.PAY)


def get_invoice(db: Session, user_id: int, invoice_id: int) -> Invoice:
    return _load_invoice(db, user_id, invoice_id)


def _filtered_invoices(
    db: Session,
    user_id: int,
    status: Optional[str] = None,
    client_id: Optional[int] = None,
    from_date=None,
    to_date=None,
    search: Optional[str] = None,
):
    errors: Dict[str, str] = {}
    if status is not None and status not in lifecycle.STATUSES:
        errors["status"] = "Unsupported status."
    start = _parse_date(from_date, "from_date", errors)
    end = _parse_date(to_date, "to_date", errors)
    if errors:
        raise ValidationError("Invalid invoice filters", errors)

    query = db.query(Invoice).filter(Invoice.user_id == user_id)
    if status is not None:
        query = query.filter(Invoice.status == status)
    if client_id is not None:
        query = query.filter(Invoice.client_id == client_id)
    if start is not None:
        query = query.filter(Invoice.issue_date >= start)
    if end is not None:
        query = query.filter(Invoice.issue_date <= end)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.join(Client, Invoice.client_id == Client.id).filter(
            or_(
                Invoice.invoice_number.ilike(pattern),
                Client.name.ilike(pattern),
                Client.company_name.ilike(pattern),
            )
        )
    return query


def list_invoices(
    db: Session,
    user_id: int,
    status: Optional[str] = None,
    client_id: Optional[int] = None,
    from_date=None,
    to_date=None,
    search: Optional[str] = None,
    sort_by: str = "issue_date",
    sort_order: str = "desc",
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[Invoice]:
    """Invoices of ``user_id`` matching the filters.

    ``from_date``/``to_date`` bound the issue date, ``search`` matches the
    invoice number or the client's name or company. Unknown ``sort_by``
    values fall back to the issue date. Without ``limit`` every match is
    returned.
    """
    query = _filtered_invoices(db, user_id, status, client_id, from_date, to_date, search)

    column = SORT_FIELDS.get(sort_by, Invoice.issue_date)
    if (sort_order or "desc").lower() == "asc":
        query = query.order_by(column.asc(), Invoice.id.asc())
    else:
        query = query.order_by(column.desc(), Invoice.id.desc())

    if limit is not None:
        page = page or 1
        if page < 1 or limit < 1:
            raise ValidationError(
                "Invalid pagination", {"page": "Page and limit must be at least 1."}
            )
        query = query.offset((page - 1) * limit).limit(limit)
    return query.options(selectinload(Invoice.client)).all()


def count_invoices(
    db: Session,
    user_id: int,
    status: Optional[str] = None,
    client_id: Optional[int] = None,
    from_date=None,
    to_date=None,
    search: Optional[str] = None,
) -> int:
    return _filtered_invoices(db, user_id, status, client_id, from_date, to_date, search).count()


def create_invoice(
    db: Session,
    user_id: int,
    client_id: int,
    issue_date: Optional[date] = None,
    due_terms: str = "on_receipt",
    due_date: Optional[date] = None,
    currency: Optional[str] = None,
    tax_rate=0,
    discount_type: Optional[str] = None,
    discount_value=0,
    notes: Optional[str] = None,
    terms: Optional[str] = None,
    footer: Optional[str] = None,
    items: Optional[List[Dict[str, Any]]] = None,
) -> Invoice:
    """Create a draft invoice with a freshly allocated number."""
    fields = _clean_invoice_fields(
        {
            "client_id": client_id,
            "issue_date": issue_date,
            "due_date": due_date,
            "due_terms": due_terms,
            "currency": currency,
            "tax_rate": tax_rate,
            "discount_type": discount_type,
            "discount_value": discount_value,
        }
    )
    new_items = _clean_items(items or [])

    user = db.get(User, user_id)
    if not user:
        raise NotFound("User not found", {"user_id": str(user_id)})
    client = _get_client(db, user_id, fields["client_id"])

    issue = fields["issue_date"] or _today()
    invoice_number = None
    try:
        invoice_number = allocate_invoice_number(db, user_id)
        invoice = Invoice(
            user_id=user_id,
            client_id=client.id,
            invoice_number=invoice_number,
            status=lifecycle.DRAFT,
            issue_date=issue,
            due_date=compute_due_date(issue, fields["due_terms"], fields["due_date"]),
            due_terms=fields["due_terms"],
            currency=fields["currency"] or user.default_currency or DEFAULT_CURRENCY,
            tax_rate=fields["tax_rate"],
            discount_type=fields["discount_type"],
            discount_value=fields["discount_value"],
            notes=notes,
            terms=terms,
            footer=footer,
        )
        db.add(invoice)
        _replace_items(invoice, new_items)
        _apply_totals(invoice)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_number_collision(exc):
            raise
        logger.warning("Invoice number %s already used by user %s", invoice_number, user_id)
        raise AllocationFailure(f"Invoice number {invoice_number} is already in use") from exc
    except Exception:
        db.rollback()
        raise

    logger.info("Created invoice %s for user %s (total %s)", invoice.invoice_number, user_id, invoice.total)
    return invoice


def update_invoice(
    db: Session,
    user_id: int,
    invoice_id: int,
    changes: Dict[str, Any],
    items: Optional[List[Dict[str, Any]]] = None,
) -> Invoice:
    """Edit invoice fields and, when ``items`` is given, replace all items."""
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(
            "Unknown invoice fields", {field: "Field cannot be edited." for field in unknown}
        )

    try:
        invoice = _load_invoice(db, user_id, invoice_id, lock=True)
        _guard_editable(invoice)

        merged = {field: getattr(invoice, field) for field in EDITABLE_FIELDS}
        merged.update(changes)
        fields = _clean_invoice_fields(merged)
        new_items = _clean_items(items) if items is not None else None
        if fields["client_id"] != invoice.client_id:
            _get_client(db, user_id, fields["client_id"])

        issue = fields["issue_date"] or invoice.issue_date
        invoice.client_id = fields["client_id"]
        invoice.issue_date = issue
        invoice.due_terms = fields["due_terms"]
        invoice.due_date = compute_due_date(issue, fields["due_terms"], fields["due_date"])
        invoice.currency = fields["currency"] or invoice.currency
        invoice.tax_rate = fields["tax_rate"]
        invoice.discount_type = fields["discount_type"]
        invoice.discount_value = fields["discount_value"]
        for field in ("notes", "terms", "footer"):
            setattr(invoice, field, fields[field])

        if new_items is not None:
            _replace_items(invoice, new_items)
        _apply_totals(invoice)
        _settle_if_covered(invoice)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Updated invoice %s (total %s)", invoice.invoice_number, invoice.total)
    return invoice


def replace_items(db: Session, user_id: int, invoice_id: int, items: List[Dict[str, Any]]) -> Invoice:
    return update_invoice(db, user_id, invoice_id, {}, items=items)


def set_status(
    db: Session, user_id: int, invoice_id: int, new_status: str, today: Optional[date] = None
) -> Invoice:
    """Request a status change.

    Asking for the current status is a no-op. Marking an invoice paid records
    a payment for whatever is still outstanding, so amount_paid always equals
    the sum of the invoice's payments.
    """
    today = today or _today()
    try:
        invoice = _load_invoice(db, user_id, invoice_id, lock=True)
        event = lifecycle.event_for_status(invoice.status, new_status)
        if event is not None:
            lifecycle.resolve(invoice, event)
            if event == lifecycle.MARK_OVERDUE and not _is_past_due(invoice, today):
                raise InvalidTransition(
                    "Only unpaid invoices past their due date can be overdue",
                    {"status": invoice.status},
                )
            if event == lifecycle.PAY and invoice.balance_due > 0:
                invoice.payments.append(
                    Payment(
                        amount=invoice.balance_due,
                        payment_date=today,
                        notes=SETTLEMENT_NOTE,
                    )
                )
                _apply_totals(invoice)
            lifecycle.apply(invoice, event)
        db.commit()
    except InvalidTransition:
        db.rollback()
        logger.warning("Rejected status change of invoice %s to %s", invoice_id, new_status)
        raise
    except Exception:
        db.rollback()
        raise
    return invoice


def _is_past_due(invoice: Invoice, today: date) -> bool:
    return invoice.due_date is not None and invoice.due_date < today and invoice.balance_due > 0


def add_payment(
    db: Session,
    user_id: int,
    invoice_id: int,
    amount,
    payment_date: Optional[date] = None,
    method: Optional[str] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> Payment:
    """Record a payment and settle the invoice once it is fully covered."""
    errors: Dict[str, str] = {}
    value = _parse_decimal(amount, "amount", errors)
    if value is not None:
        value = money_round(value)
        if value <= 0:
            errors["amount"] = "Payment amount must be positive."
    paid_on = _parse_date(payment_date, "payment_date", errors) or _today()

    try:
        invoice = _load_invoice(db, user_id, invoice_id, lock=True)
        if invoice.status == lifecycle.CANCELLED:
            raise ValidationError(
                "Cannot add payment to cancelled invoice", {"status": invoice.status}
            )
        if errors:
            raise ValidationError("Invalid payment", errors)

        payment = Payment(
            amount=value,
            payment_date=paid_on,
            method=method,
            reference=reference,
            notes=notes,
        )
        invoice.payments.append(payment)
        _apply_totals(invoice)
        _settle_if_covered(invoice)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Recorded payment of %s on invoice %s (balance %s)",
        value,
        invoice.invoice_number,
        invoice.balance_due,
    )
    return payment


def delete_payment(db: Session, user_id: int, invoice_id: int, payment_id: int) -> None:
    """Remove a payment, reverting a paid invoice that is no longer covered."""
    try:
        invoice = _load_invoice(db, user_id, invoice_id, lock=True)
        payment = next((p for p in invoice.payments if p.id == payment_id), None)
        if payment is None:
            raise NotFound("Payment not found", {"payment_id": str(payment_id)})

        invoice.payments.remove(payment)
        _apply_totals(invoice)
        if invoice.status == lifecycle.PAID and invoice.balance_due > 0:
            lifecycle.apply(invoice, lifecycle.REVERSE)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Deleted payment %s from invoice %s", payment_id, invoice.invoice_number)


def duplicate_invoice(db: Session, user_id: int, invoice_id: int) -> Invoice:
    """Copy an invoice into a new draft dated today."""
    original = _load_invoice(db, user_id, invoice_id)
    today = _today()
    if original.due_terms == CUSTOM_DUE_TERMS and original.due_date is not None:
        due_date = today + (original.due_date - original.issue_date)
    else:
        due_date = compute_due_date(today, original.due_terms)

    try:
        invoice_number = allocate_invoice_number(db, user_id)
        copy = Invoice(
            user_id=user_id,
            client_id=original.client_id,
            invoice_number=invoice_number,
            status=lifecycle.DRAFT,
            issue_date=today,
            due_date=due_date,
            due_terms=original.due_terms,
            currency=original.currency,
            tax_rate=original.tax_rate,
            discount_type=original.discount_type,
            discount_value=original.discount_value,
            notes=original.notes,
            terms=original.terms,
            footer=original.footer,
        )
        for item in original.items:
            copy.items.append(
                InvoiceItem(
                    description=item.description,
                    quantity=item.quantity,
                    rate=item.rate,
                    amount=item.amount,
                    sort_order=item.sort_order,
                )
            )
        db.add(copy)
        _apply_totals(copy)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_number_collision(exc):
            raise
        raise AllocationFailure("Invoice number is already in use") from exc
    except Exception:
        db.rollback()
        raise

    logger.info("Duplicated invoice %s as %s", original.invoice_number, copy.invoice_number)
    return copy


def delete_invoice(db: Session, user_id: int, invoice_id: int) -> None:
    try:
        invoice = _load_invoice(db, user_id, invoice_id, lock=True)
        number = invoice.invoice_number
        db.delete(invoice)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Deleted invoice %s", number)


def mark_overdue_invoices(db: Session, today: Optional[date] = None) -> int:
    """Flip unpaid, past-due invoices to overdue and recover the ones that no
    longer are. Only statuses change; monetary fields are left untouched.
    """
    today = today or _today()
    changed = 0
    try:
        past_due = (
            db.query(Invoice)
            .filter(
                Invoice.status.in_((lifecycle.SENT, lifecycle.VIEWED)),
                Invoice.due_date.isnot(None),
                Invoice.due_date < today,
                Invoice.balance_due > 0,
            )
            .with_for_update()
            .all()
        )
        for invoice in past_due:
            lifecycle.apply(invoice, lifecycle.MARK_OVERDUE)
            changed += 1

        recovered = (
            db.query(Invoice)
            .filter(
                Invoice.status == lifecycle.OVERDUE,
                or_(
                    Invoice.due_date.is_(None),
                    Invoice.due_date >= today,
                    Invoice.balance_due <= 0,
                ),
            )
            .with_for_update()
            .all()
        )
        for invoice in recovered:
            lifecycle.apply(invoice, lifecycle.RECOVER)
            changed += 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Overdue sweep for %s changed %d invoices", today, changed)
    return changed
