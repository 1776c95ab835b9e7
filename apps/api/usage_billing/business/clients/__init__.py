from usage_billing.business.clients.directory import (
    ClientDirectory,
    ClientRecord,
    SqlClientDirectory,
    client_directory,
    require_client,
)
from usage_billing.business.clients.models import BillingClient

__all__ = [
    "BillingClient",
    "ClientDirectory",
    "ClientRecord",
    "SqlClientDirectory",
    "client_directory",
    "require_client",
]
