from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from usage_billing.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingInvoice(Base):
    __tablename__ = "billing_invoice"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("billing_client.client_id", ondelete="RESTRICT"),
        nullable=False,
    )
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    year_month: Mapped[str] = mapped_column(String(6), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    tax_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    issue_date: Mapped[date] = mapped_column(Date(), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lines: Mapped[list[BillingInvoiceLine]] = relationship(
        "usage_billing.business.billing.models.BillingInvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BillingInvoiceLine.position",
    )

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_billing_invoice_number"),
        Index("ix_billing_invoice_client_month", "client_id", "year_month"),
    )


class BillingInvoiceLine(Base):
    __tablename__ = "billing_invoice_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("billing_invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    component_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    discount_percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False, default=Decimal("0"), server_default="0")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    invoice: Mapped[BillingInvoice] = relationship(
        "usage_billing.business.billing.models.BillingInvoice",
        back_populates="lines",
    )

    __table_args__ = (Index("ix_billing_invoice_line_invoice", "invoice_id"),)


class BillingInvoiceSequence(Base):
    """Per client and month counter. ``last_value`` is the last number handed out."""

    __tablename__ = "billing_invoice_sequence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("billing_client.client_id", ondelete="RESTRICT"),
        nullable=False,
    )
    year_month: Mapped[str] = mapped_column(String(6), nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    __table_args__ = (UniqueConstraint("client_id", "year_month", name="uq_billing_invoice_sequence_key"),)
