from usage_billing.business.billing.api import router
from usage_billing.business.billing.models import BillingInvoice, BillingInvoiceLine, BillingInvoiceSequence
from usage_billing.business.billing.schemas import (
    InvoiceCreate,
    InvoiceLineCreate,
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
from usage_billing.business.billing.service import InvoiceService, invoice_service
from usage_billing.business.billing.totals import InvoiceTotals, compute_totals, line_amount

__all__ = [
    "router",
    "BillingInvoice",
    "BillingInvoiceLine",
    "BillingInvoiceSequence",
    "InvoiceCreate",
    "InvoiceLineCreate",
    "InvoiceLineRead",
    "InvoiceRead",
    "InvoiceStatusChange",
    "InvoiceUpdate",
    "SequenceAllocator",
    "format_invoice_number",
    "sequence_allocator",
    "year_month_of",
    "InvoiceService",
    "invoice_service",
    "InvoiceTotals",
    "compute_totals",
    "line_amount",
]
