from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from usage_billing.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingClient(Base):
    __tablename__ = "billing_client"

    client_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    tax_registered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    account_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
