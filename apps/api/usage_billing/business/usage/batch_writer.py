from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import and_, func, insert, select
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from usage_billing.business.usage.models import UsageRecord
from usage_billing.business.usage.validator import ValidatedUsageRecord


@dataclass(frozen=True, slots=True)
class BatchWriteResult:
    succeeded: int
    failed: int
    error: SQLAlchemyError | None = None


def is_systemic_fault(exc: BaseException) -> bool:
    """Storage is unreachable rather than one batch being bad."""
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


class BatchWriter:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def write(self, job_id: uuid.UUID, batch: Sequence[ValidatedUsageRecord]) -> BatchWriteResult:
        if not batch:
            return BatchWriteResult(succeeded=0, failed=0)

        rows = [{"job_id": job_id, **record.to_row()} for record in batch]
        try:
            with self.session_factory() as session:
                with session.begin():
                    session.execute(insert(UsageRecord), rows)
        except SQLAlchemyError as exc:
            return BatchWriteResult(succeeded=0, failed=len(batch), error=exc)
        return BatchWriteResult(succeeded=len(batch), failed=0)

    def committed_count(self, job_id: uuid.UUID, first_row: int, last_row: int) -> int:
        with self.session_factory() as session:
            count = session.scalar(
                select(func.count())
                .select_from(UsageRecord)
                .where(
                    and_(
                        UsageRecord.job_id == job_id,
                        UsageRecord.row_number >= first_row,
                        UsageRecord.row_number <= last_row,
                    )
                )
            )
        return int(count or 0)
