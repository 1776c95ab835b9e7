from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from usage_billing.business.clients.models import BillingClient
from usage_billing.core.errors import ClientNotFound


@dataclass(frozen=True, slots=True)
class ClientRecord:
    client_id: int
    client_name: str
    default_currency: str
    tax_registered: bool
    account_ids: tuple[str, ...] = ()


class ClientDirectory(Protocol):
    def get(self, session: Session, client_id: int) -> ClientRecord | None: ...


class SqlClientDirectory:
    """Reads client facts owned by the client administration module."""

    def get(self, session: Session, client_id: int) -> ClientRecord | None:
        client = session.scalar(select(BillingClient).where(BillingClient.client_id == client_id))
        if client is None:
            return None
        return ClientRecord(
            client_id=client.client_id,
            client_name=client.client_name,
            default_currency=(client.default_currency or "USD").upper(),
            tax_registered=bool(client.tax_registered),
            account_ids=tuple(str(item) for item in (client.account_ids or [])),
        )


def require_client(directory: ClientDirectory, session: Session, client_id: int) -> ClientRecord:
    client = directory.get(session, client_id)
    if client is None:
        raise ClientNotFound(f"client {client_id} not found")
    return client


client_directory = SqlClientDirectory()
