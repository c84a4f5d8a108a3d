"""Request and response bodies.

Requests accept both snake_case and camelCase keys; everything past this
module uses snake_case only.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineItemIn(RequestModel):
    description: str = ""
    quantity: Optional[Decimal] = None
    rate: Optional[Decimal] = None


class InvoiceCreateIn(RequestModel):
    client_id: int
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    due_terms: str = "on_receipt"
    currency: Optional[str] = None
    tax_rate: Decimal = Decimal("0")
    discount_type: Optional[str] = None
    discount_value: Decimal = Decimal("0")
    notes: Optional[str] = None
    terms: Optional[str] = None
    footer: Optional[str] = None
    items: List[LineItemIn] = []


class InvoiceUpdateIn(RequestModel):
    client_id: Optional[int] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    due_terms: Optional[str] = None
    currency: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    footer: Optional[str] = None
    items: Optional[List[LineItemIn]] = None


class StatusIn(RequestModel):
    status: str


class PaymentIn(RequestModel):
    amount: Decimal
    payment_date: Optional[date] = None
    method: Optional[str] = Field(
        None, validation_alias=AliasChoices("method", "payment_method", "paymentMethod")
    )
    reference: Optional[str] = None
    notes: Optional[str] = None


class SequenceSettingsIn(RequestModel):
    prefix: Optional[str] = None
    padding: Optional[int] = None


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal
    sort_order: int


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    amount: Decimal
    payment_date: date
    method: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


class InvoiceSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    client_id: int
    client_name: Optional[str] = None
    invoice_number: str
    status: str
    issue_date: date
    due_date: Optional[date] = None
    currency: str
    total: Decimal
    amount_paid: Decimal
    balance_due: Decimal


class InvoiceOut(InvoiceSummaryOut):
    due_terms: str
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount_type: str
    discount_value: Decimal
    discount_amount: Decimal
    notes: Optional[str] = None
    terms: Optional[str] = None
    footer: Optional[str] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    items: List[LineItemOut] = []
    payments: List[PaymentOut] = []


class PaginationOut(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class InvoicePageOut(BaseModel):
    invoices: List[InvoiceSummaryOut]
    pagination: PaginationOut


class SequenceSettingsOut(BaseModel):
    prefix: str
    next_number: int
    padding: int
    preview: str
