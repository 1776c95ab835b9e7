from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


InvoiceStatus = Literal["draft", "sent", "paid", "cancelled"]


class InvoiceLineCreate(BaseModel):
    component_id: int | None = None
    description: str | None = None
    quantity: Decimal = Field(gt=Decimal("0"))
    rate: Decimal = Field(ge=Decimal("0"))
    discount_percent: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class InvoiceCreate(BaseModel):
    client_id: int = Field(gt=0)
    issue_date: date | None = None
    due_date: date | None = None
    tax_applicable: bool | None = None
    notes: str | None = None
    lines: list[InvoiceLineCreate] = Field(default_factory=list)


class InvoiceUpdate(BaseModel):
    due_date: date | None = None
    tax_applicable: bool | None = None
    notes: str | None = None


class InvoiceStatusChange(BaseModel):
    status: InvoiceStatus


class InvoiceLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    position: int
    component_id: int | None
    description: str | None
    quantity: Decimal | str
    rate: Decimal | str
    discount_percent: Decimal | str
    currency: str
    amount: Decimal | str


class InvoiceRead(BaseModel):
    id: UUID
    client_id: int
    invoice_number: str
    year_month: str
    sequence: int
    currency: str
    status: InvoiceStatus | str
    tax_applicable: bool
    issue_date: date
    due_date: date | None
    notes: str | None
    created_by: str | None
    subtotal: Decimal | str
    tax: Decimal | str
    total: Decimal | str
    created_at: datetime
    updated_at: datetime
    lines: list[InvoiceLineRead] = Field(default_factory=list)
