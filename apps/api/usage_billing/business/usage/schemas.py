from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ImportStatus = Literal["pending", "processing", "completed", "failed"]
SourceKind = Literal["file", "external-api", "manual"]


class UsageImportAccepted(BaseModel):
    job_id: UUID
    status: ImportStatus | str


class UsageImportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: int
    source_kind: SourceKind | str
    file_name: str | None
    billing_period_start: date
    billing_period_end: date
    account_scope: list[str] = Field(default_factory=list)
    status: ImportStatus | str
    total_records: int
    processed_records: int
    failed_records: int
    last_flushed_row: int
    error_summary: str | None
    error_sample: list[dict[str, Any]] | None
    cancel_requested: bool
    requested_by: str | None
    correlation_id: str | None
    created_at: datetime
    started_at: datetime | None
    last_progress_at: datetime | None
    completed_at: datetime | None


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: UUID
    row_number: int
    account_id: str
    service_code: str
    usage_type: str
    operation: str
    resource_id: str
    usage_start: datetime | None
    usage_end: datetime | None
    usage_quantity: Decimal | str
    rate: Decimal | str
    cost: Decimal | str
    currency: str
    region: str
    availability_zone: str


class StalledImportsResponse(BaseModel):
    failed_job_ids: list[UUID] = Field(default_factory=list)


class UsageImportCreate(BaseModel):
    client_id: int = Field(gt=0)
    source_kind: SourceKind = "file"
    billing_period_start: date
    billing_period_end: date
    account_ids: list[str] | None = None
    file_name: str | None = Field(default=None, max_length=255)
