"""Errors raised by the invoice ledger.

Every error is recoverable by the caller: a rejected operation leaves the
invoice exactly as it was before the call.
"""

from typing import Dict, Optional


class LedgerError(Exception):
    """Base class for ledger errors."""

    kind = "LedgerError"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(LedgerError):
    """Invoice, payment or client missing, or not owned by the user."""

    kind = "NotFound"
    status_code = 404


class InvalidTransition(LedgerError):
    """Requested status change is not allowed from the current status."""

    kind = "InvalidTransition"
    status_code = 409


class ImmutableStateViolation(LedgerError):
    """Edit attempted on a paid or cancelled invoice."""

    kind = "ImmutableStateViolation"
    status_code = 409


class ValidationError(LedgerError):
    """Malformed input. ``details`` maps field names to messages."""

    kind = "ValidationError"
    status_code = 400


class AllocationFailure(LedgerError):
    """The invoice number could not be allocated."""

    kind = "AllocationFailure"
    status_code = 503
