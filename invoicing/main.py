import logging
import math
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import ledger, numbering
from .config import LOG_LEVEL
from .database import get_db
from .exceptions import LedgerError
from .schemas import (
    InvoiceCreateIn,
    InvoiceOut,
    InvoicePageOut,
    InvoiceSummaryOut,
    InvoiceUpdateIn,
    PaginationOut,
    PaymentIn,
    PaymentOut,
    SequenceSettingsIn,
    SequenceSettingsOut,
    StatusIn,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Invoice Ledger")


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.warning("%s %s rejected: %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "message": exc.message, "details": exc.details},
    )


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """Owner of the request, as resolved by the authentication layer."""
    try:
        return int(x_user_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")


@app.get("/invoices", response_model=InvoicePageOut)
def list_invoices(
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    search: Optional[str] = None,
    sort_by: str = "issue_date",
    sort_order: str = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> InvoicePageOut:
    filters = {
        "status": status_filter,
        "client_id": client_id,
        "from_date": from_date,
        "to_date": to_date,
        "search": search,
    }
    invoices = ledger.list_invoices(
        db, user_id, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit, **filters
    )
    total = ledger.count_invoices(db, user_id, **filters)
    return InvoicePageOut(
        invoices=[InvoiceSummaryOut.model_validate(invoice) for invoice in invoices],
        pagination=PaginationOut(
            page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)
        ),
    )


@app.post("/invoices", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> InvoiceOut:
    data = payload.model_dump()
    items = data.pop("items")
    invoice = ledger.create_invoice(db, user_id, items=items, **data)
    return InvoiceOut.model_validate(invoice)


@app.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> InvoiceOut:
    return InvoiceOut.model_validate(ledger.get_invoice(db, user_id, invoice_id))


@app.put("/invoices/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> InvoiceOut:
    changes = payload.model_dump(exclude_unset=True)
    items = changes.pop("items", None)
    invoice = ledger.update_invoice(db, user_id, invoice_id, changes, items=items)
    return InvoiceOut.model_validate(invoice)


@app.patch("/invoices/{invoice_id}/status", response_model=InvoiceOut)
def set_invoice_status(
    invoice_id: int,
    payload: StatusIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> InvoiceOut:
    invoice = ledger.set_status(db, user_id, invoice_id, payload.status)
    return InvoiceOut.model_validate(invoice)


@app.post(
    "/invoices/{invoice_id}/payments",
    response_model=PaymentOut,
    status_code=status.HTTP_201_CREATED,
)
def add_payment(
    invoice_id: int,
    payload: PaymentIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> PaymentOut:
    payment = ledger.add_payment(db, user_id, invoice_id, **payload.model_dump())
    return PaymentOut.model_validate(payment)


@app.delete("/invoices/{invoice_id}/payments/{payment_id}")
def delete_payment(
    invoice_id: int,
    payment_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> dict:
    ledger.delete_payment(db, user_id, invoice_id, payment_id)
    return {"message": "Payment deleted successfully"}


@app.post(
    "/invoices/{invoice_id}/duplicate",
    response_model=InvoiceOut,
    status_code=status.HTTP_201_CREATED,
)
def duplicate_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> InvoiceOut:
    return InvoiceOut.model_validate(ledger.duplicate_invoice(db, user_id, invoice_id))


@app.delete("/invoices/{invoice_id}")
def delete_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> dict:
    ledger.delete_invoice(db, user_id, invoice_id)
    return {"message": "Invoice deleted successfully"}


@app.get("/settings/invoice-sequence", response_model=SequenceSettingsOut)
def get_invoice_sequence(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> SequenceSettingsOut:
    return SequenceSettingsOut(**numbering.get_sequence_settings(db, user_id))


@app.put("/settings/invoice-sequence", response_model=SequenceSettingsOut)
def update_invoice_sequence(
    payload: SequenceSettingsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
) -> SequenceSettingsOut:
    settings = numbering.update_sequence_settings(
        db, user_id, prefix=payload.prefix, padding=payload.padding
    )
    return SequenceSettingsOut(**settings)
