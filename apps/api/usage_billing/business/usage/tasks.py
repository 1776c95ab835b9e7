from __future__ import annotations

import uuid

from usage_billing.business.usage.controller import ImportJobController
from usage_billing.core.celery_app import celery_app
from usage_billing.core.database import SessionLocal


@celery_app.task(name="usage_billing.usage.run_import")
def run_import_task(job_id: str) -> str | None:
    job = ImportJobController(SessionLocal).run(uuid.UUID(job_id))
    return job.status if job is not None else None


@celery_app.task(name="usage_billing.usage.fail_stalled_imports")
def fail_stalled_imports_task() -> int:
    from usage_billing.business.usage.service import usage_import_service

    with SessionLocal() as session:
        return len(usage_import_service.fail_stalled_imports(session))
