from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from usage_billing.api.errors import billing_error_handler
from usage_billing.api.routes import router as api_router
from usage_billing.business.usage.dispatch import shutdown_executor
from usage_billing.core.config import get_settings
from usage_billing.core.events import InternalEvent, event_bus
from usage_billing.core.errors import BillingError
from usage_billing.logging import configure_logging
from usage_billing.middleware.correlation_id import CorrelationIdMiddleware
from usage_billing.middleware.request_logging import RequestLoggingMiddleware
from usage_billing.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("usage_billing.lifecycle")
_subscriptions_registered = False

_lifecycle_event_types = [
    "system.started",
    "usage_import.completed",
    "usage_import.failed",
    "invoice.created",
    "invoice.status_changed",
]


def _on_lifecycle_event(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "job_id": event.payload.get("job_id")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_name in _lifecycle_event_types:
            event_bus.subscribe(event_name, _on_lifecycle_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield
    shutdown_executor(wait=False)


app = FastAPI(title="Usage Billing API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(BillingError, billing_error_handler)
app.add_exception_handler(HTTPException, billing_error_handler)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("usage-billing-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
