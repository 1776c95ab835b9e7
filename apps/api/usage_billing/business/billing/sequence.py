"""Per client and month invoice numbering.

Numbers come from a counter row keyed by ``(client_id, year_month)``. The row is
created on first use with an insert that ignores conflicts and is then bumped
with a single ``UPDATE ... RETURNING``. The update takes the row lock, so callers
for the same key queue behind each other until the surrounding transaction ends
while callers for other keys never wait. A transaction that rolls back releases
its increment together with everything else it wrote.
"""

from __future__ import annotations

import time
from datetime import date

from sqlalchemy import and_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from usage_billing.business.billing.models import BillingInvoiceSequence
from usage_billing.metrics import observe_sequence_allocation


def year_month_of(value: date) -> str:
    return value.strftime("%Y%m")


def format_invoice_number(prefix: str, client_id: int, year_month: str, sequence: int) -> str:
    return f"{prefix}-{client_id:03d}-{year_month}-{sequence:03d}"


class SequenceAllocator:
    def allocate(self, session: Session, client_id: int, year_month: str) -> int:
        """Return the next number for the key. Must run inside the caller's transaction."""
        started = time.perf_counter()
        self._ensure_row(session, client_id, year_month)
        value = session.execute(
            update(BillingInvoiceSequence)
            .where(
                and_(
                    BillingInvoiceSequence.client_id == client_id,
                    BillingInvoiceSequence.year_month == year_month,
                )
            )
            .values(last_value=BillingInvoiceSequence.last_value + 1)
            .returning(BillingInvoiceSequence.last_value)
            .execution_options(synchronize_session=False)
        ).scalar_one()
        observe_sequence_allocation(time.perf_counter() - started)
        return int(value)

    def peek(self, session: Session, client_id: int, year_month: str) -> int:
        value = session.scalar(
            select(BillingInvoiceSequence.last_value).where(
                and_(
                    BillingInvoiceSequence.client_id == client_id,
                    BillingInvoiceSequence.year_month == year_month,
                )
            )
        )
        return int(value or 0)

    def _ensure_row(self, session: Session, client_id: int, year_month: str) -> None:
        values = {"client_id": client_id, "year_month": year_month, "last_value": 0}
        dialect_name = session.get_bind().dialect.name
        if dialect_name == "postgresql":
            stmt = postgresql.insert(BillingInvoiceSequence).values(**values)
        elif dialect_name == "sqlite":
            stmt = sqlite.insert(BillingInvoiceSequence).values(**values)
        else:
            if self.peek(session, client_id, year_month) == 0:
                try:
                    with session.begin_nested():
                        session.add(BillingInvoiceSequence(**values))
                except IntegrityError:
                    pass
            return
        session.execute(stmt.on_conflict_do_nothing(index_elements=["client_id", "year_month"]))


sequence_allocator = SequenceAllocator()
