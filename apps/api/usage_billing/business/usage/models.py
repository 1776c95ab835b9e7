from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from usage_billing.business.usage.validator import AMOUNT_PRECISION, AMOUNT_SCALE, CURRENCY_LENGTH, TEXT_FIELD_LIMITS
from usage_billing.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageImportJob(Base):
    __tablename__ = "usage_import_job"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("billing_client.client_id", ondelete="RESTRICT"),
        nullable=False,
    )
    source_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    source_file_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    billing_period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    account_scope: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_flushed_row: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_sample: Mapped[list[dict[str, object]] | None] = mapped_column(JSON, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    requested_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_progress_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_usage_import_job_client_created", "client_id", "created_at"),
        Index("ix_usage_import_job_status_progress", "status", "last_progress_at"),
    )


class UsageRecord(Base):
    __tablename__ = "usage_record"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("usage_import_job.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[str] = mapped_column(String(TEXT_FIELD_LIMITS["account_id"]), nullable=False, default="")
    service_code: Mapped[str] = mapped_column(String(TEXT_FIELD_LIMITS["service_code"]), nullable=False, default="")
    usage_type: Mapped[str] = mapped_column(String(TEXT_FIELD_LIMITS["usage_type"]), nullable=False)
    operation: Mapped[str] = mapped_column(String(TEXT_FIELD_LIMITS["operation"]), nullable=False, default="")
    resource_id: Mapped[str] = mapped_column(Text, nullable=False, default="")
    usage_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_quantity: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False, default=Decimal("0"))
    cost: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False)
    currency: Mapped[str] = mapped_column(String(CURRENCY_LENGTH), nullable=False)
    region: Mapped[str] = mapped_column(String(TEXT_FIELD_LIMITS["region"]), nullable=False, default="")
    availability_zone: Mapped[str] = mapped_column(String(TEXT_FIELD_LIMITS["availability_zone"]), nullable=False, default="")

    __table_args__ = (
        UniqueConstraint("job_id", "row_number", name="uq_usage_record_job_row"),
        Index("ix_usage_record_job", "job_id"),
    )
