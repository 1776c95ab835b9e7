from celery import Celery

from usage_billing.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "usage_billing",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["usage_billing.business.usage.tasks"],
)
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.beat_schedule = {
    "usage-import-stall-sweep": {
        "task": "usage_billing.usage.fail_stalled_imports",
        "schedule": float(max(60, settings.usage_import_stall_timeout_seconds // 3)),
    },
}
