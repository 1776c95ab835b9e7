from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

usage_import_jobs_total = Counter(
    "usage_import_jobs_total",
    "Total usage import jobs by final status",
    ["source_kind", "status"],
)

usage_import_job_duration_seconds = Histogram(
    "usage_import_job_duration_seconds",
    "Usage import job duration in seconds",
    ["source_kind"],
)

usage_import_rows_total = Counter(
    "usage_import_rows_total",
    "Usage rows read by outcome",
    ["outcome"],
)

usage_import_flush_failures_total = Counter(
    "usage_import_flush_failures_total",
    "Failed usage batch flushes by fault class",
    ["fault"],
)

usage_import_stalled_total = Counter(
    "usage_import_stalled_total",
    "Usage import jobs failed by the stall sweeper",
)

invoices_created_total = Counter(
    "invoices_created_total",
    "Total invoices created",
)

invoice_duplicate_number_total = Counter(
    "invoice_duplicate_number_total",
    "Invoice inserts rejected by the unique invoice number constraint",
)

invoice_sequence_allocation_seconds = Histogram(
    "invoice_sequence_allocation_seconds",
    "Latency of invoice sequence allocation",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_import_job(source_kind: str, status: str, duration: float) -> None:
    usage_import_jobs_total.labels(source_kind=source_kind, status=status).inc()
    usage_import_job_duration_seconds.labels(source_kind=source_kind).observe(duration)


def observe_import_rows(processed: int, failed: int) -> None:
    if processed > 0:
        usage_import_rows_total.labels(outcome="processed").inc(processed)
    if failed > 0:
        usage_import_rows_total.labels(outcome="failed").inc(failed)


def observe_flush_failure(fault: str) -> None:
    usage_import_flush_failures_total.labels(fault=fault).inc()


def observe_stalled_imports(count: int) -> None:
    if count > 0:
        usage_import_stalled_total.inc(count)


def observe_invoice_created() -> None:
    invoices_created_total.inc()


def observe_duplicate_invoice_number() -> None:
    invoice_duplicate_number_total.inc()


def observe_sequence_allocation(duration: float) -> None:
    invoice_sequence_allocation_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
