from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class BillingError(HTTPException):
    """Domain failure surfaced to API callers with a stable machine-readable code."""

    code = "BILLING_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(status_code=self.http_status, detail=message)
        self.message = message
        self.details = details


class ClientNotFound(BillingError):
    code = "CLIENT_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class InvalidPeriod(BillingError):
    code = "INVALID_PERIOD"
    http_status = 422


class MissingSource(BillingError):
    code = "MISSING_SOURCE"
    http_status = 422


class UnsupportedSourceType(BillingError):
    code = "UNSUPPORTED_SOURCE_TYPE"
    http_status = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


class SourceTooLarge(BillingError):
    code = "SOURCE_TOO_LARGE"
    http_status = 413


class ImportNotFound(BillingError):
    code = "IMPORT_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class ImportInProgress(BillingError):
    code = "IMPORT_IN_PROGRESS"
    http_status = status.HTTP_409_CONFLICT


class ImportNotCancellable(BillingError):
    code = "IMPORT_NOT_CANCELLABLE"
    http_status = status.HTTP_409_CONFLICT


class InvoiceNotFound(BillingError):
    code = "INVOICE_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class InvoiceNotEditable(BillingError):
    code = "INVOICE_NOT_EDITABLE"
    http_status = status.HTTP_409_CONFLICT


class InvalidStatusTransition(BillingError):
    code = "INVALID_STATUS_TRANSITION"
    http_status = status.HTTP_409_CONFLICT


class DuplicateInvoiceNumber(BillingError):
    """A unique-number violation. Only reachable through an allocator defect."""

    code = "DUPLICATE_INVOICE_NUMBER"
    http_status = status.HTTP_409_CONFLICT
