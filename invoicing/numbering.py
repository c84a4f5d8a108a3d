"""Per-user invoice number allocation."""

import logging
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import DEFAULT_INVOICE_PADDING, DEFAULT_INVOICE_PREFIX
from .exceptions import AllocationFailure, ValidationError
from .models import InvoiceSequence

logger = logging.getLogger(__name__)

MAX_PREFIX_LENGTH = 20
MAX_PADDING = 10


def format_invoice_number(prefix: str, number: int, padding: int) -> str:
    return f"{prefix}{number:0{padding}d}"


def _increment(db: Session, user_id: int):
    sequences = InvoiceSequence.__table__
    stmt = (
        update(sequences)
        .where(sequences.c.user_id == user_id)
        .values(next_number=sequences.c.next_number + 1)
        .returning(
            sequences.c.prefix,
            (sequences.c.next_number - 1).label("number"),
            sequences.c.padding,
        )
    )
    return db.execute(stmt).first()


def allocate_invoice_number(db: Session, user_id: int) -> str:
    """Issue the next invoice number for ``user_id``.

    The read and the increment happen in one UPDATE ... RETURNING, so two
    concurrent callers can never see the same value. The increment belongs to
    the caller's transaction: rolling it back gives the number back.
    """
    try:
        row = _increment(db, user_id)
        if row is None:
            try:
                with db.begin_nested():
                    db.add(
                        InvoiceSequence(
                            user_id=user_id,
                            prefix=DEFAULT_INVOICE_PREFIX,
                            next_number=1,
                            padding=DEFAULT_INVOICE_PADDING,
                        )
                    )
            except IntegrityError:
                logger.info("Invoice sequence for user %s created concurrently", user_id)
            row = _increment(db, user_id)
    except SQLAlchemyError as exc:
        logger.error("Invoice number allocation failed for user %s: %s", user_id, exc)
        raise AllocationFailure("Could not allocate an invoice number") from exc

    if row is None:
        raise AllocationFailure("Could not allocate an invoice number")

    invoice_number = format_invoice_number(row.prefix, row.number, row.padding)
    logger.info("Allocated invoice number %s for user %s", invoice_number, user_id)
    return invoice_number


def _settings_payload(prefix: str, next_number: int, padding: int) -> Dict:
    return {
        "prefix": prefix,
        "next_number": next_number,
        "padding": padding,
        "preview": format_invoice_number(prefix, next_number, padding),
    }


def get_sequence_settings(db: Session, user_id: int) -> Dict:
    seq = (
        db.query(InvoiceSequence)
        .populate_existing()
        .filter(InvoiceSequence.user_id == user_id)
        .first()
    )
    if not seq:
        return _settings_payload(DEFAULT_INVOICE_PREFIX, 1, DEFAULT_INVOICE_PADDING)
    return _settings_payload(seq.prefix, seq.next_number, seq.padding)


def _validate_sequence_settings(prefix: Optional[str], padding: Optional[int]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if prefix is not None:
        if not prefix.strip():
            errors["prefix"] = "Prefix cannot be empty."
        elif len(prefix) > MAX_PREFIX_LENGTH:
            errors["prefix"] = f"At most {MAX_PREFIX_LENGTH} characters."
    if padding is not None and not 1 <= padding <= MAX_PADDING:
        errors["padding"] = f"Padding must be between 1 and {MAX_PADDING}."
    return errors


def update_sequence_settings(
    db: Session, user_id: int, prefix: Optional[str] = None, padding: Optional[int] = None
) -> Dict:
    """Change how future numbers are formatted. Issued numbers are left alone."""
    errors = _validate_sequence_settings(prefix, padding)
    if errors:
        raise ValidationError("Invalid invoice sequence settings", errors)

    try:
        seq = (
            db.query(InvoiceSequence)
            .populate_existing()
            .filter(InvoiceSequence.user_id == user_id)
            .with_for_update()
            .first()
        )
        if not seq:
            seq = InvoiceSequence(
                user_id=user_id,
                prefix=DEFAULT_INVOICE_PREFIX,
                next_number=1,
                padding=DEFAULT_INVOICE_PADDING,
            )
            db.add(seq)
        if prefix is not None:
            seq.prefix = prefix.strip()
        if padding is not None:
            seq.padding = padding
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Invoice sequence for user %s set to prefix=%s padding=%s", user_id, seq.prefix, seq.padding)
    return _settings_payload(seq.prefix, seq.next_number, seq.padding)
