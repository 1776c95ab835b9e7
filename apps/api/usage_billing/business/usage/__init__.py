from usage_billing.business.usage.api import router
from usage_billing.business.usage.batch_writer import BatchWriter, BatchWriteResult, is_systemic_fault
from usage_billing.business.usage.controller import ImportJobController
from usage_billing.business.usage.models import UsageImportJob, UsageRecord
from usage_billing.business.usage.schemas import (
    StalledImportsResponse,
    UsageImportAccepted,
    UsageImportCreate,
    UsageImportRead,
    UsageRecordRead,
)
from usage_billing.business.usage.service import UsageImportService, usage_import_service
from usage_billing.business.usage.validator import RowError, ValidatedUsageRecord, validate_row

__all__ = [
    "router",
    "BatchWriter",
    "BatchWriteResult",
    "is_systemic_fault",
    "ImportJobController",
    "UsageImportJob",
    "UsageRecord",
    "StalledImportsResponse",
    "UsageImportAccepted",
    "UsageImportCreate",
    "UsageImportRead",
    "UsageRecordRead",
    "UsageImportService",
    "usage_import_service",
    "RowError",
    "ValidatedUsageRecord",
    "validate_row",
]
