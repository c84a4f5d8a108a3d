"""Invoice status transitions.

The table below is the single source of truth for which status an event
leads to. Persistence is the caller's business; these functions only touch
the status and lifecycle timestamps of the invoice they are handed.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Union

from .exceptions import InvalidTransition, ValidationError

logger = logging.getLogger(__name__)

DRAFT = "draft"
SENT = "sent"
VIEWED = "viewed"
PAID = "paid"
OVERDUE = "overdue"
CANCELLED = "cancelled"

STATUSES = (DRAFT, SENT, VIEWED, PAID, OVERDUE, CANCELLED)
LOCKED_STATUSES = (PAID, CANCELLED)

SEND = "send"
VIEW = "view"
PAY = "pay"
CANCEL = "cancel"
MARK_OVERDUE = "overdue"
RECOVER = "recover"
REVERSE = "reverse"


def _reversal_target(invoice) -> str:
    return SENT if invoice.sent_at else DRAFT


def _recovery_target(invoice) -> str:
    return VIEWED if invoice.viewed_at else SENT


Target = Union[str, Callable[[object], str]]

TRANSITIONS: Dict[Tuple[str, str], Target] = {
    (DRAFT, SEND): SENT,
    (DRAFT, VIEW): VIEWED,
    (SENT, VIEW): VIEWED,
    (VIEWED, VIEW): VIEWED,
    (OVERDUE, VIEW): VIEWED,
    (DRAFT, PAY): PAID,
    (SENT, PAY): PAID,
    (VIEWED, PAY): PAID,
    (OVERDUE, PAY): PAID,
    (DRAFT, CANCEL): CANCELLED,
    (SENT, CANCEL): CANCELLED,
    (VIEWED, CANCEL): CANCELLED,
    (OVERDUE, CANCEL): CANCELLED,
    (SENT, MARK_OVERDUE): OVERDUE,
    (VIEWED, MARK_OVERDUE): OVERDUE,
    (OVERDUE, RECOVER): _recovery_target,
    (PAID, REVERSE): _reversal_target,
}

# Event used when a caller asks for a status by name.
STATUS_EVENTS = {
    SENT: SEND,
    VIEWED: VIEW,
    PAID: PAY,
    CANCELLED: CANCEL,
    OVERDUE: MARK_OVERDUE,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def resolve(invoice, event: str) -> str:
    """Return the status ``event`` leads to, or raise InvalidTransition."""
    target = TRANSITIONS.get((invoice.status, event))
    if target is None:
        raise InvalidTransition(
            f"Cannot {event} an invoice that is {invoice.status}",
            {"status": invoice.status, "event": event},
        )
    if callable(target):
        return target(invoice)
    return target


def apply(invoice, event: str, now: Optional[datetime] = None) -> str:
    """Move ``invoice`` along ``event`` and stamp lifecycle timestamps."""
    new_status = resolve(invoice, event)
    now = now or _now()
    old_status = invoice.status

    if new_status == SENT and invoice.sent_at is None:
        invoice.sent_at = now
    if new_status == VIEWED and invoice.viewed_at is None:
        invoice.viewed_at = now
    if new_status == PAID and invoice.paid_at is None:
        invoice.paid_at = now
    if old_status == PAID and new_status != PAID:
        invoice.paid_at = None

    invoice.status = new_status
    if old_status != new_status:
        logger.info(
            "Invoice %s: %s -> %s (%s)",
            getattr(invoice, "invoice_number", None),
            old_status,
            new_status,
            event,
        )
    return new_status


def event_for_status(current: str, requested: str) -> Optional[str]:
    """Map a requested status to its event.

    Returns None when the request is a no-op (the invoice already has that
    status). Raises ValidationError for unknown statuses and InvalidTransition
    for statuses that can only be reached as a side effect.
    """
    if requested not in STATUSES:
        raise ValidationError(f"Unknown status {requested!r}", {"status": "Unsupported status."})
    if requested == current:
        return None
    event = STATUS_EVENTS.get(requested)
    if event is None:
        raise InvalidTransition(
            f"Cannot move an invoice from {current} to {requested}",
            {"status": current, "requested": requested},
        )
    return event
