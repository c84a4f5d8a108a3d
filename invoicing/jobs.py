"""Periodic maintenance entry points. Scheduling them is left to cron or
whatever runs the deployment."""

import logging

from .config import LOG_LEVEL
from .database import SessionLocal
from .ledger import mark_overdue_invoices

logger = logging.getLogger(__name__)


def main() -> int:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db = SessionLocal()
    try:
        changed = mark_overdue_invoices(db)
    finally:
        db.close()
    logger.info("Overdue sweep finished, %d invoices updated", changed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
