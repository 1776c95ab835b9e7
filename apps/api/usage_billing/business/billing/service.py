from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from usage_billing import events
from usage_billing.business.billing.models import BillingInvoice, BillingInvoiceLine
from usage_billing.business.billing.schemas import (
    InvoiceCreate,
    InvoiceLineRead,
    InvoiceRead,
    InvoiceStatusChange,
    InvoiceUpdate,
)
from usage_billing.business.billing.sequence import (
    SequenceAllocator,
    format_invoice_number,
    sequence_allocator,
    year_month_of,
)
from usage_billing.business.billing.totals import compute_totals, line_amount
from usage_billing.business.clients.directory import ClientDirectory, client_directory, require_client
from usage_billing.core.config import get_settings
from usage_billing.core.errors import (
    DuplicateInvoiceNumber,
    InvalidStatusTransition,
    InvoiceNotEditable,
    InvoiceNotFound,
)
from usage_billing.metrics import observe_duplicate_invoice_number, observe_invoice_created
from usage_billing.otel import get_tracer


logger = logging.getLogger("usage_billing.billing.service")
tracer = get_tracer(__name__)

INVOICE_NUMBER_CONSTRAINT = "uq_billing_invoice_number"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"sent", "paid", "cancelled"}),
    "sent": frozenset({"paid", "cancelled"}),
    "paid": frozenset(),
    "cancelled": frozenset(),
}


def is_invoice_number_violation(exc: IntegrityError) -> bool:
    """True only when the unique invoice number constraint rejected the insert."""
    diag = getattr(exc.orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name is not None:
        return constraint_name == INVOICE_NUMBER_CONSTRAINT
    # SQLite names the columns instead of the constraint.
    message = str(exc.orig)
    return INVOICE_NUMBER_CONSTRAINT in message or "billing_invoice.invoice_number" in message


@dataclass(slots=True)
class InvoiceService:
    directory: ClientDirectory = client_directory
    allocator: SequenceAllocator = sequence_allocator

    def create_invoice(self, session: Session, actor_id: str | None, payload: InvoiceCreate) -> InvoiceRead:
        settings = get_settings()
        client = require_client(self.directory, session, payload.client_id)
        issue_date = payload.issue_date or date.today()
        due_date = payload.due_date or issue_date + timedelta(days=settings.invoice_payment_terms_days)
        tax_applicable = client.tax_registered if payload.tax_applicable is None else payload.tax_applicable
        year_month = year_month_of(issue_date)

        with tracer.start_as_current_span("billing.invoice.create") as span:
            span.set_attribute("client_id", client.client_id)
            span.set_attribute("year_month", year_month)

            # Allocation, invoice row and lines commit or roll back together.
            sequence = self.allocator.allocate(session, client.client_id, year_month)
            invoice_number = format_invoice_number(settings.invoice_number_prefix, client.client_id, year_month, sequence)
            invoice = BillingInvoice(
                client_id=client.client_id,
                invoice_number=invoice_number,
                year_month=year_month,
                sequence=sequence,
                currency=client.default_currency,
                status="draft",
                tax_applicable=tax_applicable,
                issue_date=issue_date,
                due_date=due_date,
                notes=payload.notes,
                created_by=actor_id,
            )
            invoice.lines = [
                BillingInvoiceLine(
                    position=position,
                    component_id=line.component_id,
                    description=line.description,
                    quantity=line.quantity,
                    rate=line.rate,
                    discount_percent=line.discount_percent,
                    currency=(line.currency or client.default_currency).upper(),
                )
                for position, line in enumerate(payload.lines, start=1)
            ]
            session.add(invoice)
            try:
                session.flush()
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if not is_invoice_number_violation(exc):
                    logger.error(
                        "invoice.insert_rejected",
                        extra={"client_id": client.client_id, "invoice_number": invoice_number, "error": str(exc.orig)},
                    )
                    raise
                observe_duplicate_invoice_number()
                logger.error(
                    "invoice.duplicate_number",
                    extra={
                        "client_id": client.client_id,
                        "year_month": year_month,
                        "invoice_number": invoice_number,
                        "error": str(exc.orig),
                    },
                )
                raise DuplicateInvoiceNumber(
                    f"invoice number {invoice_number} already exists",
                    details={"invoice_number": invoice_number},
                )
            span.set_attribute("invoice_number", invoice_number)

        observe_invoice_created()
        logger.info(
            "invoice.created",
            extra={"invoice_id": str(invoice.id), "invoice_number": invoice_number, "client_id": client.client_id},
        )
        read = self.get_invoice(session, invoice.id)
        events.publish(
            {
                "event_type": "invoice.created",
                "invoice_id": str(read.id),
                "invoice_number": read.invoice_number,
                "client_id": read.client_id,
                "total": str(read.total),
            }
        )
        return read

    def get_invoice(self, session: Session, invoice_id: uuid.UUID) -> InvoiceRead:
        return self._to_read(self._load(session, invoice_id))

    def list_invoices(
        self,
        session: Session,
        *,
        client_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[InvoiceRead]:
        stmt = select(BillingInvoice).options(selectinload(BillingInvoice.lines))
        if client_id is not None:
            stmt = stmt.where(BillingInvoice.client_id == client_id)
        if status:
            stmt = stmt.where(BillingInvoice.status == status)
        stmt = stmt.order_by(BillingInvoice.issue_date.desc(), BillingInvoice.invoice_number).offset(offset).limit(limit)
        return [self._to_read(row) for row in session.scalars(stmt).all()]

    def update_invoice(self, session: Session, invoice_id: uuid.UUID, payload: InvoiceUpdate) -> InvoiceRead:
        invoice = self._load(session, invoice_id, for_update=True)
        if invoice.status != "draft":
            current = invoice.status
            session.rollback()
            raise InvoiceNotEditable(f"invoice is {current}; only drafts can be edited", details={"status": current})

        for key, value in payload.model_dump(exclude_unset=True).items():
            if key == "tax_applicable" and value is None:
                continue
            setattr(invoice, key, value)
        session.commit()
        return self.get_invoice(session, invoice_id)

    def change_status(self, session: Session, invoice_id: uuid.UUID, payload: InvoiceStatusChange) -> InvoiceRead:
        invoice = self._load(session, invoice_id, for_update=True)
        previous = invoice.status
        if payload.status not in ALLOWED_TRANSITIONS.get(previous, frozenset()):
            session.rollback()
            raise InvalidStatusTransition(
                f"cannot move invoice from {previous} to {payload.status}",
                details={"from": previous, "to": payload.status},
            )

        invoice.status = payload.status
        invoice_number = invoice.invoice_number
        session.commit()
        logger.info(
            "invoice.status_changed",
            extra={"invoice_id": str(invoice_id), "invoice_number": invoice_number, "status": payload.status},
        )
        events.publish(
            {
                "event_type": "invoice.status_changed",
                "invoice_id": str(invoice_id),
                "invoice_number": invoice_number,
                "from_status": previous,
                "to_status": payload.status,
            }
        )
        return self.get_invoice(session, invoice_id)

    def delete_invoice(self, session: Session, invoice_id: uuid.UUID) -> None:
        invoice = self._load(session, invoice_id, for_update=True)
        if invoice.status != "draft":
            current = invoice.status
            session.rollback()
            raise InvoiceNotEditable(f"invoice is {current}; only drafts can be deleted", details={"status": current})
        invoice_number = invoice.invoice_number
        session.delete(invoice)
        session.commit()
        logger.info("invoice.deleted", extra={"invoice_id": str(invoice_id), "invoice_number": invoice_number})

    def _load(self, session: Session, invoice_id: uuid.UUID, *, for_update: bool = False) -> BillingInvoice:
        stmt = (
            select(BillingInvoice)
            .where(BillingInvoice.id == invoice_id)
            .options(selectinload(BillingInvoice.lines))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        invoice = session.scalar(stmt)
        if invoice is None:
            raise InvoiceNotFound(f"invoice {invoice_id} not found")
        return invoice

    def _to_read(self, invoice: BillingInvoice) -> InvoiceRead:
        totals = compute_totals(invoice.lines, invoice.tax_applicable, get_settings().invoice_tax_rate)
        return InvoiceRead(
            id=invoice.id,
            client_id=invoice.client_id,
            invoice_number=invoice.invoice_number,
            year_month=invoice.year_month,
            sequence=invoice.sequence,
            currency=invoice.currency,
            status=invoice.status,
            tax_applicable=invoice.tax_applicable,
            issue_date=invoice.issue_date,
            due_date=invoice.due_date,
            notes=invoice.notes,
            created_by=invoice.created_by,
            subtotal=totals.subtotal,
            tax=totals.tax,
            total=totals.total,
            created_at=invoice.created_at,
            updated_at=invoice.updated_at,
            lines=[
                InvoiceLineRead(
                    id=line.id,
                    invoice_id=line.invoice_id,
                    position=line.position,
                    component_id=line.component_id,
                    description=line.description,
                    quantity=line.quantity,
                    rate=line.rate,
                    discount_percent=line.discount_percent,
                    currency=line.currency,
                    amount=line_amount(line.quantity, line.rate, line.discount_percent),
                )
                for line in invoice.lines
            ],
        )


invoice_service = InvoiceService()
