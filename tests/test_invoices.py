from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from invoicing import ledger
from invoicing.exceptions import (
    ImmutableStateViolation,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from invoicing.models import Client, InvoiceItem, Payment


def line(description="Design work", quantity="2", rate="50.00"):
    return {"description": description, "quantity": quantity, "rate": rate}


def assert_totals_consistent(invoice):
    assert invoice.subtotal == sum((i.amount for i in invoice.items), Decimal("0"))
    assert invoice.total == invoice.subtotal - invoice.discount_amount + invoice.tax_amount
    assert invoice.amount_paid == sum((p.amount for p in invoice.payments), Decimal("0"))
    assert invoice.balance_due == max(Decimal("0"), invoice.total - invoice.amount_paid)


def test_create_invoice_computes_totals(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, tax_rate=10, items=[line()])
    assert inv.status == "draft"
    assert inv.subtotal == Decimal("100.00")
    assert inv.tax_amount == Decimal("10.00")
    assert inv.total == Decimal("110.00")
    assert inv.balance_due == Decimal("110.00")
    assert inv.items[0].amount == Decimal("100.00")
    assert_totals_consistent(inv)


def test_create_invoice_with_percentage_discount(db_session, user, customer):
    inv = ledger.create_invoice(
        db_session,
        user.id,
        customer.id,
        tax_rate=10,
        discount_type="percentage",
        discount_value=20,
        items=[line()],
    )
    assert inv.discount_amount == Decimal("20.00")
    assert inv.tax_amount == Decimal("8.00")
    assert inv.total == Decimal("88.00")


def test_create_defaults(db_session, user, customer, today):
    inv = ledger.create_invoice(db_session, user.id, customer.id)
    assert inv.issue_date == today
    assert inv.due_date == today
    assert inv.due_terms == "on_receipt"
    assert inv.currency == "EUR"
    assert inv.discount_type == "none"
    assert inv.total == Decimal("0.00")
    assert inv.items == []


def test_due_date_follows_terms(db_session, user, customer):
    inv = ledger.create_invoice(
        db_session, user.id, customer.id, issue_date=date(2026, 1, 10), due_terms="net_30"
    )
    assert inv.due_date == date(2026, 2, 9)

    custom = ledger.create_invoice(
        db_session,
        user.id,
        customer.id,
        issue_date=date(2026, 1, 10),
        due_terms="custom",
        due_date=date(2026, 3, 1),
    )
    assert custom.due_date == date(2026, 3, 1)


def test_items_keep_list_order(db_session, user, customer):
    inv = ledger.create_invoice(
        db_session,
        user.id,
        customer.id,
        items=[line("first"), line("second"), line("third")],
    )
    assert [(i.description, i.sort_order) for i in inv.items] == [
        ("first", 0),
        ("second", 1),
        ("third", 2),
    ]


@pytest.mark.parametrize(
    "kwargs,field",
    [
        ({"items": [line(description="  ")]}, "items[0].description"),
        ({"items": [line(quantity="0")]}, "items[0].quantity"),
        ({"items": [line(rate="-1")]}, "items[0].rate"),
        ({"items": [line(rate="abc")]}, "items[0].rate"),
        ({"discount_type": "bogus"}, "discount_type"),
        ({"discount_type": "percentage", "discount_value": 120}, "discount_value"),
        ({"discount_type": "fixed", "discount_value": -5}, "discount_value"),
        ({"tax_rate": 101}, "tax_rate"),
        ({"due_terms": "net_90"}, "due_terms"),
        ({"currency": "EURO"}, "currency"),
    ],
)
def test_create_rejects_malformed_input(db_session, user, customer, kwargs, field):
    with pytest.raises(ValidationError) as excinfo:
        ledger.create_invoice(db_session, user.id, customer.id, **kwargs)
    assert field in excinfo.value.details
    assert ledger.list_invoices(db_session, user.id) == []


def test_create_for_foreign_client_is_not_found(db_session, user, other_user):
    foreign = Client(user_id=other_user.id, name="Not yours")
    db_session.add(foreign)
    db_session.commit()
    with pytest.raises(NotFound):
        ledger.create_invoice(db_session, user.id, foreign.id)


def test_invoices_are_scoped_to_owner(db_session, user, other_user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id)
    with pytest.raises(NotFound):
        ledger.get_invoice(db_session, other_user.id, inv.id)
    with pytest.raises(NotFound):
        ledger.set_status(db_session, other_user.id, inv.id, "sent")


def test_update_replaces_items_and_recomputes(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, items=[line(), line("extra")])
    updated = ledger.update_invoice(
        db_session,
        user.id,
        inv.id,
        {"tax_rate": 20, "notes": "Thanks"},
        items=[line("only", quantity="1", rate="30")],
    )
    assert [(i.description, i.sort_order) for i in updated.items] == [("only", 0)]
    assert db_session.query(InvoiceItem).filter_by(invoice_id=inv.id).count() == 1
    assert updated.subtotal == Decimal("30.00")
    assert updated.tax_amount == Decimal("6.00")
    assert updated.total == Decimal("36.00")
    assert updated.notes == "Thanks"
    assert_totals_consistent(updated)


def test_update_without_items_keeps_items(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, items=[line()])
    updated = ledger.update_invoice(
        db_session, user.id, inv.id, {"discount_type": "fixed", "discount_value": "10"}
    )
    assert len(updated.items) == 1
    assert updated.discount_amount == Decimal("10.00")
    assert updated.total == Decimal("90.00")


def test_item_replacement_is_all_or_nothing(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, items=[line()])
    with pytest.raises(ValidationError):
        ledger.replace_items(db_session, user.id, inv.id, [line("ok"), line(quantity="-3")])
    db_session.expire_all()
    inv = ledger.get_invoice(db_session, user.id, inv.id)
    assert [i.description for i in inv.items] == ["Design work"]
    assert inv.subtotal == Decimal("100.00")


def test_update_recomputes_due_date_when_terms_change(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, issue_date=date(2026, 1, 1))
    updated = ledger.update_invoice(db_session, user.id, inv.id, {"due_terms": "net_14"})
    assert updated.due_date == date(2026, 1, 15)
    updated = ledger.update_invoice(db_session, user.id, inv.id, {"issue_date": date(2026, 2, 1)})
    assert updated.due_date == date(2026, 2, 15)


def test_update_rejects_unknown_fields(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id)
    with pytest.raises(ValidationError) as excinfo:
        ledger.update_invoice(db_session, user.id, inv.id, {"total": 0})
    assert "total" in excinfo.value.details


@pytest.mark.parametrize("locked", ["paid", "cancelled"])
def test_locked_invoices_cannot_be_edited(db_session, user, customer, locked):
    inv = ledger.create_invoice(db_session, user.id, customer.id, tax_rate=10, items=[line()])
    ledger.set_status(db_session, user.id, inv.id, locked)
    before = (inv.subtotal, inv.total, inv.tax_rate, inv.amount_paid, inv.balance_due)

    with pytest.raises(ImmutableStateViolation):
        ledger.replace_items(db_session, user.id, inv.id, [line(rate="1")])
    with pytest.raises(ImmutableStateViolation):
        ledger.update_invoice(db_session, user.id, inv.id, {"tax_rate": 0})

    db_session.expire_all()
    inv = ledger.get_invoice(db_session, user.id, inv.id)
    assert inv.status == locked
    assert [i.amount for i in inv.items] == [Decimal("100.00")]
    assert (inv.subtotal, inv.total, inv.tax_rate, inv.amount_paid, inv.balance_due) == before


def test_set_status_same_value_is_noop(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, items=[line()])
    ledger.set_status(db_session, user.id, inv.id, "sent")
    sent_at = inv.sent_at
    again = ledger.set_status(db_session, user.id, inv.id, "sent")
    assert again.status == "sent"
    assert again.sent_at == sent_at


def test_set_status_rejects_invalid_moves(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, items=[line()])
    ledger.set_status(db_session, user.id, inv.id, "viewed")
    with pytest.raises(InvalidTransition):
        ledger.set_status(db_session, user.id, inv.id, "sent")
    with pytest.raises(InvalidTransition):
        ledger.set_status(db_session, user.id, inv.id, "draft")

    ledger.set_status(db_session, user.id, inv.id, "cancelled")
    for target in ("sent", "viewed", "paid", "overdue"):
        with pytest.raises(InvalidTransition):
            ledger.set_status(db_session, user.id, inv.id, target)
    assert ledger.get_invoice(db_session, user.id, inv.id).status == "cancelled"


def test_paid_invoice_cannot_be_cancelled(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, items=[line()])
    ledger.set_status(db_session, user.id, inv.id, "paid")
    with pytest.raises(InvalidTransition):
        ledger.set_status(db_session, user.id, inv.id, "cancelled")


def test_marking_paid_settles_the_balance(db_session, user, customer, today):
    inv = ledger.create_invoice(db_session, user.id, customer.id, tax_rate=10, items=[line()])
    ledger.set_status(db_session, user.id, inv.id, "sent")
    ledger.add_payment(db_session, user.id, inv.id, "10.00")

    paid = ledger.set_status(db_session, user.id, inv.id, "paid")
    assert paid.status == "paid"
    assert paid.paid_at is not None
    assert paid.amount_paid == Decimal("110.00")
    assert paid.balance_due == Decimal("0.00")
    settlement = paid.payments[-1]
    assert settlement.amount == Decimal("100.00")
    assert settlement.payment_date == today
    assert settlement.notes == "Marked as paid"
    assert_totals_consistent(paid)


def test_marking_overdue_requires_past_due_balance(db_session, user, customer):
    inv = ledger.create_invoice(
        db_session,
        user.id,
        customer.id,
        issue_date=date(2026, 1, 1),
        due_terms="net_7",
        items=[line()],
    )
    ledger.set_status(db_session, user.id, inv.id, "sent")

    with pytest.raises(InvalidTransition):
        ledger.set_status(db_session, user.id, inv.id, "overdue", today=date(2026, 1, 5))
    overdue = ledger.set_status(db_session, user.id, inv.id, "overdue", today=date(2026, 1, 20))
    assert overdue.status == "overdue"


def test_duplicate_creates_fresh_draft(db_session, user, customer, today):
    inv = ledger.create_invoice(
        db_session,
        user.id,
        customer.id,
        issue_date=date(2025, 6, 1),
        due_terms="net_30",
        tax_rate=10,
        discount_type="percentage",
        discount_value=20,
        notes="n",
        terms="t",
        items=[line("a"), line("b", quantity="1", rate="10")],
    )
    ledger.set_status(db_session, user.id, inv.id, "sent")
    ledger.add_payment(db_session, user.id, inv.id, "50")

    copy = ledger.duplicate_invoice(db_session, user.id, inv.id)
    assert copy.id != inv.id
    assert copy.invoice_number == "INV0002"
    assert copy.status == "draft"
    assert copy.sent_at is None
    assert copy.issue_date == today
    assert copy.due_date == today + timedelta(days=30)
    assert copy.client_id == customer.id
    assert (copy.tax_rate, copy.discount_type, copy.discount_value) == (
        Decimal("10.00"),
        "percentage",
        Decimal("20.00"),
    )
    assert (copy.notes, copy.terms) == ("n", "t")
    assert [(i.description, i.amount, i.sort_order) for i in copy.items] == [
        ("a", Decimal("100.00"), 0),
        ("b", Decimal("10.00"), 1),
    ]
    assert copy.payments == []
    assert copy.amount_paid == Decimal("0.00")
    assert copy.total == inv.total
    assert copy.balance_due == copy.total


def test_duplicate_custom_terms_keeps_payment_window(db_session, user, customer, today):
    inv = ledger.create_invoice(
        db_session,
        user.id,
        customer.id,
        issue_date=date(2025, 6, 1),
        due_terms="custom",
        due_date=date(2025, 6, 11),
    )
    copy = ledger.duplicate_invoice(db_session, user.id, inv.id)
    assert copy.due_date == today + timedelta(days=10)


def test_delete_invoice_cascades(db_session, user, customer):
    inv = ledger.create_invoice(db_session, user.id, customer.id, items=[line()])
    ledger.add_payment(db_session, user.id, inv.id, "5")
    invoice_id = inv.id
    ledger.delete_invoice(db_session, user.id, invoice_id)
    assert db_session.query(InvoiceItem).filter_by(invoice_id=invoice_id).count() == 0
    assert db_session.query(Payment).filter_by(invoice_id=invoice_id).count() == 0
    with pytest.raises(NotFound):
        ledger.get_invoice(db_session, user.id, invoice_id)


def test_list_invoices_filters_by_status(db_session, user, customer):
    first = ledger.create_invoice(db_session, user.id, customer.id, issue_date=date(2026, 1, 1))
    second = ledger.create_invoice(db_session, user.id, customer.id, issue_date=date(2026, 2, 1))
    ledger.set_status(db_session, user.id, first.id, "sent")

    assert [i.id for i in ledger.list_invoices(db_session, user.id)] == [second.id, first.id]
    assert [i.id for i in ledger.list_invoices(db_session, user.id, status="sent")] == [first.id]
    with pytest.raises(ValidationError):
        ledger.list_invoices(db_session, user.id, status="archived")


def test_inputs_are_rounded_to_stored_precision(db_session, user, customer):
    inv = ledger.create_invoice(
        db_session,
        user.id,
        customer.id,
        tax_rate="10.555",
        discount_type="fixed",
        discount_value="0.004",
        items=[line(quantity="1", rate="1000"), line("odd", quantity="0.333", rate="3.004")],
    )
    assert inv.tax_rate == Decimal("10.56")
    assert inv.discount_value == Decimal("0.00")
    odd = inv.items[1]
    assert (odd.quantity, odd.rate, odd.amount) == (Decimal("0.33"), Decimal("3.00"), Decimal("0.99"))
    assert inv.subtotal == Decimal("1000.99")
    total = inv.total

    # recomputing from the stored values must not move the totals
    ledger.add_payment(db_session, user.id, inv.id, "1")
    inv = ledger.get_invoice(db_session, user.id, inv.id)
    assert inv.total == total
    assert inv.balance_due == total - Decimal("1.00")
    assert_totals_consistent(inv)


def test_quantity_rounding_to_zero_is_rejected(db_session, user, customer):
    with pytest.raises(ValidationError) as excinfo:
        ledger.create_invoice(db_session, user.id, customer.id, items=[line(quantity="0.004")])
    assert "items[0].quantity" in excinfo.value.details


def test_create_does_not_hide_foreign_key_failures(db_session, user, customer, monkeypatch):
    gone = Client(id=9999, user_id=user.id, name="Deleted meanwhile")
    monkeypatch.setattr(ledger, "_get_client", lambda db, user_id, client_id: gone)
    with pytest.raises(IntegrityError):
        ledger.create_invoice(db_session, user.id, customer.id, items=[line()])
    assert ledger.list_invoices(db_session, user.id) == []


@pytest.fixture
def spread(db_session, user, customer, other_user):
    second = Client(user_id=user.id, name="Acme Studio", company_name="Acme Holdings")
    foreign = Client(user_id=other_user.id, name="Acme elsewhere")
    db_session.add_all([second, foreign])
    db_session.commit()
    made = [
        ledger.create_invoice(db_session, user.id, customer.id, issue_date=date(2026, 1, 10), items=[line(rate="30")]),
        ledger.create_invoice(db_session, user.id, second.id, issue_date=date(2026, 2, 10), items=[line(rate="10")]),
        ledger.create_invoice(db_session, user.id, second.id, issue_date=date(2026, 3, 10), items=[line(rate="20")]),
    ]
    ledger.create_invoice(db_session, other_user.id, foreign.id, issue_date=date(2026, 2, 1))
    return second, made


def test_list_filters_by_client_and_date(db_session, user, spread):
    second, (jan, feb, mar) = spread
    by_client = ledger.list_invoices(db_session, user.id, client_id=second.id)
    assert [i.id for i in by_client] == [mar.id, feb.id]

    ranged = ledger.list_invoices(db_session, user.id, from_date="2026-01-15", to_date=date(2026, 2, 28))
    assert [i.id for i in ranged] == [feb.id]
    assert ledger.count_invoices(db_session, user.id, from_date="2026-01-15") == 2

    with pytest.raises(ValidationError) as excinfo:
        ledger.list_invoices(db_session, user.id, from_date="15/01/2026")
    assert "from_date" in excinfo.value.details


def test_list_search_matches_number_name_or_company(db_session, user, spread):
    _, (jan, feb, mar) = spread
    assert [i.id for i in ledger.list_invoices(db_session, user.id, search="acme")] == [mar.id, feb.id]
    assert [i.id for i in ledger.list_invoices(db_session, user.id, search="HOLDINGS")] == [mar.id, feb.id]
    assert [i.id for i in ledger.list_invoices(db_session, user.id, search="INV0001")] == [jan.id]
    assert ledger.count_invoices(db_session, user.id, search="acme") == 2
    assert len(ledger.list_invoices(db_session, user.id, search="  ")) == 3


def test_list_sorting_and_pages(db_session, user, spread):
    _, (jan, feb, mar) = spread
    by_total = ledger.list_invoices(db_session, user.id, sort_by="total", sort_order="asc")
    assert [i.id for i in by_total] == [feb.id, mar.id, jan.id]

    # unknown sort keys fall back to the issue date
    fallback = ledger.list_invoices(db_session, user.id, sort_by="client_id; drop table", sort_order="ASC")
    assert [i.id for i in fallback] == [jan.id, feb.id, mar.id]

    first_page = ledger.list_invoices(db_session, user.id, sort_by="total", page=1, limit=2)
    second_page = ledger.list_invoices(db_session, user.id, sort_by="total", page=2, limit=2)
    assert [i.id for i in first_page] == [jan.id, mar.id]
    assert [i.id for i in second_page] == [feb.id]

    with pytest.raises(ValidationError):
        ledger.list_invoices(db_session, user.id, page=0, limit=2)
