from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from usage_billing import events, files
from usage_billing.business.clients.directory import ClientDirectory, client_directory, require_client
from usage_billing.business.clients.models import BillingClient
from usage_billing.business.usage.controller import ImportJobController
from usage_billing.business.usage.dispatch import ImportDispatcher
from usage_billing.business.usage.models import UsageImportJob, UsageRecord
from usage_billing.business.usage.schemas import (
    UsageImportAccepted,
    UsageImportCreate,
    UsageImportRead,
    UsageRecordRead,
)
from usage_billing.context import get_correlation_id
from usage_billing.core.config import get_settings
from usage_billing.core.errors import (
    ImportInProgress,
    ImportNotCancellable,
    ImportNotFound,
    InvalidPeriod,
    MissingSource,
)
from usage_billing.metrics import observe_stalled_imports


logger = logging.getLogger("usage_billing.usage.service")

TERMINAL_STATUSES = frozenset({"completed", "failed"})
DELETABLE_STATUSES = frozenset({"pending", "failed"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class UsageImportService:
    directory: ClientDirectory = client_directory

    def create_import(
        self,
        session: Session,
        actor_id: str | None,
        payload: UsageImportCreate,
        source_file_id: uuid.UUID | None,
        *,
        dispatcher: ImportDispatcher | None = None,
    ) -> UsageImportAccepted:
        client = require_client(self.directory, session, payload.client_id)
        if payload.billing_period_start > payload.billing_period_end:
            raise InvalidPeriod(
                "billing period start is after its end",
                details={
                    "billing_period_start": payload.billing_period_start.isoformat(),
                    "billing_period_end": payload.billing_period_end.isoformat(),
                },
            )
        if payload.source_kind == "file" and source_file_id is None:
            raise MissingSource("file imports require an uploaded source file")

        account_scope = payload.account_ids if payload.account_ids is not None else list(client.account_ids)
        job = UsageImportJob(
            client_id=client.client_id,
            source_kind=payload.source_kind,
            source_file_id=source_file_id,
            file_name=payload.file_name,
            billing_period_start=payload.billing_period_start,
            billing_period_end=payload.billing_period_end,
            account_scope=[str(item) for item in account_scope],
            status="pending",
            requested_by=actor_id,
            correlation_id=get_correlation_id(),
        )
        session.add(job)
        session.commit()

        logger.info(
            "usage_import.created",
            extra={"job_id": str(job.id), "client_id": client.client_id, "source_kind": job.source_kind},
        )
        if source_file_id is not None and dispatcher is not None:
            dispatcher.dispatch(job.id)
        return UsageImportAccepted(job_id=job.id, status=job.status)

    def run_import_sync(self, session_factory: sessionmaker[Session], job_id: uuid.UUID) -> UsageImportRead:
        job = ImportJobController(session_factory, directory=self.directory).run(job_id)
        if job is None:
            raise ImportNotFound(f"import {job_id} not found")
        return UsageImportRead.model_validate(job)

    def get_status(self, session: Session, job_id: uuid.UUID) -> UsageImportRead:
        return UsageImportRead.model_validate(self._get_job(session, job_id))

    def list_imports(
        self,
        session: Session,
        *,
        client_id: int | None = None,
        status: str | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[UsageImportRead]:
        stmt = select(UsageImportJob)
        term = (search or "").strip()
        if term:
            pattern = f"%{term}%"
            stmt = stmt.outerjoin(BillingClient, BillingClient.client_id == UsageImportJob.client_id).where(
                or_(UsageImportJob.file_name.ilike(pattern), BillingClient.client_name.ilike(pattern))
            )
        if client_id is not None:
            stmt = stmt.where(UsageImportJob.client_id == client_id)
        if status:
            stmt = stmt.where(UsageImportJob.status == status)
        stmt = stmt.order_by(UsageImportJob.created_at.desc(), UsageImportJob.id).offset(offset).limit(limit)
        return [UsageImportRead.model_validate(row) for row in session.scalars(stmt).all()]

    def list_records(
        self,
        session: Session,
        job_id: uuid.UUID,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[UsageRecordRead]:
        self._get_job(session, job_id)
        rows = session.scalars(
            select(UsageRecord)
            .where(UsageRecord.job_id == job_id)
            .order_by(UsageRecord.row_number)
            .offset(offset)
            .limit(limit)
        ).all()
        return [UsageRecordRead.model_validate(row) for row in rows]

    def cancel_import(self, session: Session, job_id: uuid.UUID) -> UsageImportRead:
        job = self._get_job(session, job_id, for_update=True)
        if job.status == "processing":
            job.cancel_requested = True
            session.commit()
            logger.info("usage_import.cancel_requested", extra={"job_id": str(job_id), "status": job.status})
            return UsageImportRead.model_validate(job)
        if job.status == "pending":
            now = utcnow()
            job.cancel_requested = True
            job.status = "failed"
            job.error_summary = "cancelled"
            job.completed_at = now
            job.last_progress_at = now
            session.commit()
            logger.info("usage_import.cancelled", extra={"job_id": str(job_id), "status": job.status})
            events.publish({"event_type": "usage_import.failed", "job_id": str(job_id), "error_summary": "cancelled"})
            return UsageImportRead.model_validate(job)

        current = job.status
        session.rollback()
        raise ImportNotCancellable(f"import {job_id} is already {current}", details={"status": current})

    def delete_import(self, session: Session, job_id: uuid.UUID) -> None:
        job = self._get_job(session, job_id, for_update=True)
        if job.status not in DELETABLE_STATUSES:
            current = job.status
            session.rollback()
            raise ImportInProgress(
                f"import {job_id} is {current} and cannot be deleted",
                details={"status": current},
            )
        self._remove(session, job)

    def purge_import(self, session: Session, job_id: uuid.UUID) -> None:
        job = self._get_job(session, job_id, for_update=True)
        if job.status not in TERMINAL_STATUSES:
            current = job.status
            session.rollback()
            raise ImportInProgress(
                f"import {job_id} is {current} and cannot be purged",
                details={"status": current},
            )
        self._remove(session, job)

    def fail_stalled_imports(self, session: Session, now: datetime | None = None) -> list[uuid.UUID]:
        settings = get_settings()
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.usage_import_stall_timeout_seconds)
        last_seen = func.coalesce(UsageImportJob.last_progress_at, UsageImportJob.started_at, UsageImportJob.created_at)
        stalled = or_(
            and_(UsageImportJob.status == "processing", last_seen < cutoff),
            # Dispatched but never picked up, e.g. the worker died before its first write.
            and_(
                UsageImportJob.status == "pending",
                UsageImportJob.source_file_id.is_not(None),
                UsageImportJob.created_at < cutoff,
            ),
        )

        candidates = list(session.scalars(select(UsageImportJob.id).where(stalled)).all())
        summary = f"stalled: no progress for {settings.usage_import_stall_timeout_seconds} seconds"
        failed: list[uuid.UUID] = []
        for job_id in candidates:
            result = session.execute(
                update(UsageImportJob)
                .where(and_(UsageImportJob.id == job_id, stalled))
                .values(status="failed", error_summary=summary, completed_at=now, last_progress_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                failed.append(job_id)
        session.commit()

        observe_stalled_imports(len(failed))
        for job_id in failed:
            logger.warning("usage_import.stalled", extra={"job_id": str(job_id), "status": "failed"})
            events.publish({"event_type": "usage_import.failed", "job_id": str(job_id), "error_summary": summary})
        return failed

    def _remove(self, session: Session, job: UsageImportJob) -> None:
        job_id = job.id
        status = job.status
        source_file_id = job.source_file_id
        session.execute(delete(UsageRecord).where(UsageRecord.job_id == job_id))
        session.execute(delete(UsageImportJob).where(UsageImportJob.id == job_id))
        session.commit()

        logger.info("usage_import.deleted", extra={"job_id": str(job_id), "status": status})
        if source_file_id is not None:
            files.delete(source_file_id)

    def _get_job(self, session: Session, job_id: uuid.UUID, *, for_update: bool = False) -> UsageImportJob:
        stmt = select(UsageImportJob).where(UsageImportJob.id == job_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        job = session.scalar(stmt)
        if job is None:
            raise ImportNotFound(f"import {job_id} not found")
        return job


usage_import_service = UsageImportService()
