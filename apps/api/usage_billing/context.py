from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
import_job_id_var: ContextVar[str | None] = ContextVar("import_job_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_import_job_id(value: str | None) -> Token[str | None]:
    return import_job_id_var.set(value)


def reset_import_job_id(token: Token[str | None]) -> None:
    import_job_id_var.reset(token)


def get_import_job_id() -> str | None:
    return import_job_id_var.get()
