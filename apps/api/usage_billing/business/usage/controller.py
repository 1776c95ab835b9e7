from __future__ import annotations

import csv
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry.trace import Span, Status, StatusCode
from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from usage_billing import events, files
from usage_billing.business.clients.directory import ClientDirectory, client_directory
from usage_billing.business.usage.batch_writer import BatchWriter, is_systemic_fault
from usage_billing.business.usage.models import UsageImportJob
from usage_billing.business.usage.validator import RowError, ValidatedUsageRecord, validate_row
from usage_billing.context import reset_correlation_id, reset_import_job_id, set_correlation_id, set_import_job_id
from usage_billing.core.config import Settings, get_settings
from usage_billing.metrics import observe_flush_failure, observe_import_job, observe_import_rows
from usage_billing.otel import get_tracer


logger = logging.getLogger("usage_billing.usage.controller")
tracer = get_tracer(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _JobAborted(Exception):
    """Job-level fault: the job ends ``failed`` with this summary."""

    def __init__(self, summary: str) -> None:
        super().__init__(summary)
        self.summary = summary


class _JobSuperseded(Exception):
    """The job row left ``processing`` underneath us (stall sweep or purge)."""


@dataclass
class _Progress:
    total: int = 0
    processed: int = 0
    failed: int = 0
    last_flushed_row: int = 0
    rows_since_checkpoint: int = 0
    error_sample: list[dict[str, Any]] = field(default_factory=list)

    def record_row_error(self, error: RowError, cap: int) -> None:
        self.failed += 1
        if len(self.error_sample) < cap:
            self.error_sample.append(error.to_dict())

    def move_to_failed(self, count: int) -> None:
        self.processed -= count
        self.failed += count

    def counters(self) -> dict[str, Any]:
        return {
            "total_records": self.total,
            "processed_records": self.processed,
            "failed_records": self.failed,
            "last_flushed_row": self.last_flushed_row,
            "error_sample": list(self.error_sample) or None,
        }


@dataclass(frozen=True, slots=True)
class _JobSnapshot:
    id: uuid.UUID
    client_id: int
    source_kind: str
    status: str
    source_file_id: uuid.UUID | None
    account_scope: frozenset[str]
    cancel_requested: bool
    correlation_id: str | None


class ImportJobController:
    """Drives one usage import from ``pending`` to ``completed`` or ``failed``.

    Rows are streamed from the stored source one at a time. Valid rows are buffered
    and flushed through the batch writer whenever ``usage_import_batch_size`` rows
    have been read and once more at end of stream. After every flush the counters
    are persisted with a compare-and-set on ``status = 'processing'`` so the
    stored counters always describe a consistent prefix of the file and can never
    move again once the job is terminal.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        directory: ClientDirectory = client_directory,
        writer: BatchWriter | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.directory = directory
        self.writer = writer or BatchWriter(session_factory)
        self.settings = settings
        self.sleep = sleep

    def run(self, job_id: uuid.UUID) -> UsageImportJob | None:
        try:
            snapshot = self._snapshot(job_id)
        except _JobAborted as exc:
            # Best effort; a job left pending is failed by the stall sweeper.
            self._fail(job_id, _Progress(), exc.summary, self.settings or get_settings())
            logger.error("usage_import.snapshot_failed", extra={"job_id": str(job_id), "error": exc.summary})
            return None
        if snapshot is None:
            logger.warning("usage_import.missing", extra={"job_id": str(job_id)})
            return None
        if snapshot.status != "pending":
            logger.info("usage_import.skipped", extra={"job_id": str(job_id), "status": snapshot.status})
            return self._load(job_id)

        settings = self.settings or get_settings()
        correlation_token = set_correlation_id(snapshot.correlation_id)
        job_token = set_import_job_id(str(job_id))
        started = time.perf_counter()
        final_status = "skipped"

        with tracer.start_as_current_span("usage.import.run") as span:
            span.set_attribute("job_id", str(job_id))
            span.set_attribute("client_id", snapshot.client_id)
            span.set_attribute("source_kind", snapshot.source_kind)
            if snapshot.correlation_id:
                span.set_attribute("correlation_id", snapshot.correlation_id)
            try:
                final_status = self._execute(snapshot, settings, span)
            finally:
                if final_status != "skipped":
                    observe_import_job(
                        source_kind=snapshot.source_kind,
                        status=final_status,
                        duration=time.perf_counter() - started,
                    )
                reset_import_job_id(job_token)
                reset_correlation_id(correlation_token)

        return self._load(job_id)

    def _execute(self, snapshot: _JobSnapshot, settings: Settings, span: Span) -> str:
        progress = _Progress()
        started = time.perf_counter()
        try:
            if snapshot.cancel_requested:
                raise _JobAborted("cancelled before start")

            try:
                with self.session_factory() as session:
                    client = self.directory.get(session, snapshot.client_id)
            except SQLAlchemyError as exc:
                raise _JobAborted(f"storage unavailable: {exc}")
            if client is None:
                raise _JobAborted(f"client {snapshot.client_id} not found")
            if snapshot.source_file_id is None:
                raise _JobAborted("no source handle attached to import")

            try:
                stream = files.open_text(snapshot.source_file_id)
            except OSError as exc:
                raise _JobAborted(f"source unreadable: {exc}")

            with stream:
                if not self._mark_processing(snapshot.id):
                    logger.info("usage_import.skipped", extra={"job_id": str(snapshot.id), "status": "not pending"})
                    return "skipped"
                logger.info(
                    "usage_import.started",
                    extra={"job_id": str(snapshot.id), "client_id": snapshot.client_id, "source_kind": snapshot.source_kind},
                )
                self._stream_rows(snapshot, stream, client.default_currency, progress, settings)

            self._complete(snapshot.id, progress)
            span.set_attribute("total", progress.total)
            span.set_attribute("failed", progress.failed)
            logger.info(
                "usage_import.finished",
                extra={
                    "job_id": str(snapshot.id),
                    "status": "completed",
                    "total": progress.total,
                    "processed": progress.processed,
                    "failed": progress.failed,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return "completed"
        except _JobSuperseded:
            logger.warning("usage_import.superseded", extra={"job_id": str(snapshot.id), "total": progress.total})
            return "superseded"
        except _JobAborted as exc:
            span.set_status(Status(StatusCode.ERROR, exc.summary))
            self._fail(snapshot.id, progress, exc.summary, settings)
            logger.info(
                "usage_import.finished",
                extra={
                    "job_id": str(snapshot.id),
                    "status": "failed",
                    "total": progress.total,
                    "processed": progress.processed,
                    "failed": progress.failed,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error": exc.summary,
                },
            )
            return "failed"
        finally:
            observe_import_rows(progress.processed, progress.failed)

    def _stream_rows(
        self,
        snapshot: _JobSnapshot,
        stream: Any,
        default_currency: str,
        progress: _Progress,
        settings: Settings,
    ) -> None:
        batch_size = max(1, settings.usage_import_batch_size)
        buffer: list[ValidatedUsageRecord] = []
        reader = csv.DictReader(stream)
        try:
            for raw in reader:
                progress.total += 1
                progress.rows_since_checkpoint += 1
                result = validate_row(
                    raw,
                    row_number=progress.total,
                    default_currency=default_currency,
                    account_scope=snapshot.account_scope,
                )
                if isinstance(result, RowError):
                    progress.record_row_error(result, settings.usage_import_error_sample_size)
                else:
                    buffer.append(result)
                    progress.processed += 1

                if progress.rows_since_checkpoint >= batch_size:
                    self._flush(snapshot.id, buffer, progress, settings)
                    buffer = []
                    self._checkpoint(snapshot.id, progress)
        except (csv.Error, UnicodeDecodeError) as exc:
            progress.move_to_failed(len(buffer))
            raise _JobAborted(f"source unreadable at row {progress.total + 1}: {exc}")

        self._flush(snapshot.id, buffer, progress, settings)

    def _flush(
        self,
        job_id: uuid.UUID,
        buffer: list[ValidatedUsageRecord],
        progress: _Progress,
        settings: Settings,
    ) -> None:
        if not buffer:
            return
        first_row = buffer[0].row_number
        last_row = buffer[-1].row_number

        with tracer.start_as_current_span("usage.import.flush") as span:
            span.set_attribute("job_id", str(job_id))
            span.set_attribute("batch_size", len(buffer))
            span.set_attribute("first_row", first_row)
            span.set_attribute("last_row", last_row)

            result = self.writer.write(job_id, buffer)
            if result.error is None:
                progress.last_flushed_row = last_row
                return

            fault = "systemic" if is_systemic_fault(result.error) else "batch"
            self._log_flush_failure(job_id, buffer, fault, attempt=1, error=result.error)
            if fault == "systemic":
                progress.move_to_failed(len(buffer))
                span.set_status(Status(StatusCode.ERROR, "storage unavailable"))
                raise _JobAborted(f"storage unavailable: {result.error}")

            self.sleep(settings.usage_import_flush_retry_backoff_seconds)
            try:
                already_committed = self.writer.committed_count(job_id, first_row, last_row) == len(buffer)
            except SQLAlchemyError as exc:
                progress.move_to_failed(len(buffer))
                raise _JobAborted(f"storage unavailable: {exc}")
            if already_committed:
                progress.last_flushed_row = last_row
                return

            retry = self.writer.write(job_id, buffer)
            if retry.error is None:
                progress.last_flushed_row = last_row
                return

            fault = "systemic" if is_systemic_fault(retry.error) else "batch"
            self._log_flush_failure(job_id, buffer, fault, attempt=2, error=retry.error)
            progress.move_to_failed(len(buffer))
            span.set_status(Status(StatusCode.ERROR, "batch dropped"))
            if fault == "systemic":
                raise _JobAborted(f"storage unavailable: {retry.error}")

    def _log_flush_failure(
        self,
        job_id: uuid.UUID,
        buffer: list[ValidatedUsageRecord],
        fault: str,
        *,
        attempt: int,
        error: Exception,
    ) -> None:
        observe_flush_failure(fault)
        logger.warning(
            "usage_import.flush_failed",
            extra={
                "job_id": str(job_id),
                "fault": fault,
                "attempt": attempt,
                "batch_size": len(buffer),
                "first_row": buffer[0].row_number,
                "last_row": buffer[-1].row_number,
                "error": str(error),
            },
        )

    def _snapshot(self, job_id: uuid.UUID) -> _JobSnapshot | None:
        with self.session_factory() as session:
            try:
                job = session.get(UsageImportJob, job_id)
            except SQLAlchemyError as exc:
                raise _JobAborted(f"storage unavailable: {exc}")
            if job is None:
                return None
            return _JobSnapshot(
                id=job.id,
                client_id=job.client_id,
                source_kind=job.source_kind,
                status=job.status,
                source_file_id=job.source_file_id,
                account_scope=frozenset(str(item) for item in (job.account_scope or [])),
                cancel_requested=bool(job.cancel_requested),
                correlation_id=job.correlation_id,
            )

    def _mark_processing(self, job_id: uuid.UUID) -> bool:
        now = utcnow()
        try:
            with self.session_factory() as session:
                with session.begin():
                    result = session.execute(
                        update(UsageImportJob)
                        .where(
                            and_(
                                UsageImportJob.id == job_id,
                                UsageImportJob.status == "pending",
                                UsageImportJob.cancel_requested.is_(False),
                            )
                        )
                        .values(status="processing", started_at=now, last_progress_at=now)
                    )
        except SQLAlchemyError as exc:
            raise _JobAborted(f"storage unavailable: {exc}")
        return result.rowcount == 1

    def _checkpoint(self, job_id: uuid.UUID, progress: _Progress) -> None:
        try:
            with self.session_factory() as session:
                with session.begin():
                    result = session.execute(
                        update(UsageImportJob)
                        .where(and_(UsageImportJob.id == job_id, UsageImportJob.status == "processing"))
                        .values(**progress.counters(), last_progress_at=utcnow())
                        .returning(UsageImportJob.cancel_requested)
                    )
                    row = result.first()
        except SQLAlchemyError as exc:
            raise _JobAborted(f"storage unavailable: {exc}")
        progress.rows_since_checkpoint = 0

        if row is None:
            raise _JobSuperseded()
        if row[0]:
            raise _JobAborted("cancelled")

    def _complete(self, job_id: uuid.UUID, progress: _Progress) -> None:
        now = utcnow()
        try:
            with self.session_factory() as session:
                with session.begin():
                    result = session.execute(
                        update(UsageImportJob)
                        .where(and_(UsageImportJob.id == job_id, UsageImportJob.status == "processing"))
                        .values(
                            **progress.counters(),
                            status="completed",
                            error_summary=None,
                            last_progress_at=now,
                            completed_at=now,
                        )
                    )
        except SQLAlchemyError as exc:
            raise _JobAborted(f"storage unavailable: {exc}")
        if result.rowcount != 1:
            raise _JobSuperseded()

        events.publish(
            {
                "event_type": "usage_import.completed",
                "job_id": str(job_id),
                "total": progress.total,
                "processed": progress.processed,
                "failed": progress.failed,
            }
        )

    def _fail(self, job_id: uuid.UUID, progress: _Progress, summary: str, settings: Settings) -> None:
        now = utcnow()
        bounded = summary[: settings.usage_import_error_summary_max_length]
        try:
            with self.session_factory() as session:
                with session.begin():
                    result = session.execute(
                        update(UsageImportJob)
                        .where(
                            and_(
                                UsageImportJob.id == job_id,
                                UsageImportJob.status.in_(("pending", "processing")),
                            )
                        )
                        .values(
                            **progress.counters(),
                            status="failed",
                            error_summary=bounded,
                            last_progress_at=now,
                            completed_at=now,
                        )
                    )
        except SQLAlchemyError:
            # Left processing; the stall sweeper fails it once storage is back.
            logger.exception("usage_import.fail_not_recorded", extra={"job_id": str(job_id), "error": bounded})
            return
        if result.rowcount != 1:
            return

        events.publish(
            {
                "event_type": "usage_import.failed",
                "job_id": str(job_id),
                "total": progress.total,
                "processed": progress.processed,
                "failed": progress.failed,
                "error_summary": bounded,
            }
        )

    def _load(self, job_id: uuid.UUID) -> UsageImportJob | None:
        with self.session_factory() as session:
            job = session.get(UsageImportJob, job_id)
            if job is not None:
                session.expunge(job)
            return job
