from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

from sqlalchemy.orm import Session, sessionmaker

from usage_billing.business.usage.controller import ImportJobController
from usage_billing.core.config import get_settings


logger = logging.getLogger("usage_billing.usage.dispatch")

_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


class ImportDispatcher(Protocol):
    def dispatch(self, job_id: uuid.UUID) -> Any: ...


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=max(1, get_settings().usage_import_max_workers),
                thread_name_prefix="usage-import",
            )
        return _executor


def shutdown_executor(wait: bool = True) -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=wait)
            _executor = None


def _run_logged(controller: ImportJobController, job_id: uuid.UUID) -> None:
    try:
        controller.run(job_id)
    except Exception:
        # A crash here leaves the job processing; the stall sweeper fails it later.
        logger.exception("usage_import.crashed", extra={"job_id": str(job_id)})
        raise


class ThreadImportDispatcher:
    """Runs imports on a bounded in-process pool. The returned future is the task handle."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def dispatch(self, job_id: uuid.UUID) -> Future[None]:
        controller = ImportJobController(self.session_factory)
        logger.info("usage_import.dispatched", extra={"job_id": str(job_id), "status": "thread"})
        return _get_executor().submit(_run_logged, controller, job_id)


class CeleryImportDispatcher:
    def dispatch(self, job_id: uuid.UUID) -> Any:
        from usage_billing.business.usage.tasks import run_import_task

        logger.info("usage_import.dispatched", extra={"job_id": str(job_id), "status": "celery"})
        return run_import_task.delay(str(job_id))


def get_import_dispatcher(session_factory: sessionmaker[Session]) -> ImportDispatcher:
    if get_settings().usage_import_dispatch.lower() == "celery":
        return CeleryImportDispatcher()
    return ThreadImportDispatcher(session_factory)
