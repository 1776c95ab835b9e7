from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from usage_billing import files
from usage_billing.api.errors import error_response
from usage_billing.business.usage.dispatch import ImportDispatcher, get_import_dispatcher
from usage_billing.business.usage.schemas import (
    StalledImportsResponse,
    UsageImportAccepted,
    UsageImportCreate,
    UsageImportRead,
    UsageRecordRead,
)
from usage_billing.business.usage.service import usage_import_service
from usage_billing.core.auth import AuthUser, get_current_user
from usage_billing.core.config import get_settings
from usage_billing.core.database import get_db, get_session_factory
from usage_billing.core.errors import UnsupportedSourceType


router = APIRouter(prefix="/usage", tags=["usage"])


def _parse_str_list(raw: str | None) -> list[str] | None:
    if raw is None:
        return None
    return [item.strip() for item in raw.replace(";", ",").split(",") if item.strip()]


def _require_csv(file: UploadFile) -> None:
    filename = file.filename or ""
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if filename.lower().endswith(".csv") or content_type == "text/csv":
        return
    raise UnsupportedSourceType(
        "usage uploads must be CSV files",
        details={"file_name": filename, "content_type": content_type},
    )


def get_dispatcher(session_factory: sessionmaker[Session] = Depends(get_session_factory)) -> ImportDispatcher:
    return get_import_dispatcher(session_factory)


@router.post(
    "/imports",
    response_model=UsageImportRead | UsageImportAccepted,
    status_code=status.HTTP_201_CREATED,
)
def create_usage_import(
    request: Request,
    client_id: int = Form(...),
    billing_period_start: date = Form(...),
    billing_period_end: date = Form(...),
    source_kind: str = Form(default="file"),
    account_ids: str | None = Form(default=None),
    file: UploadFile | None = File(default=None),
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    dispatcher: ImportDispatcher = Depends(get_dispatcher),
    user: AuthUser = Depends(get_current_user),
) -> UsageImportRead | UsageImportAccepted | JSONResponse:
    try:
        payload = UsageImportCreate(
            client_id=client_id,
            source_kind=source_kind,
            billing_period_start=billing_period_start,
            billing_period_end=billing_period_end,
            account_ids=_parse_str_list(account_ids),
            file_name=file.filename if file is not None else None,
        )
    except ValidationError as exc:
        return error_response(
            request,
            status_code=422,
            code="VALIDATION_ERROR",
            message="invalid import request",
            details=exc.errors(include_url=False, include_context=False),
        )

    source_file_id = None
    if file is not None:
        _require_csv(file)
        source_file_id = files.store_stream(
            file.file,
            file.filename or "usage.csv",
            max_bytes=get_settings().usage_import_max_file_bytes,
        )
    try:
        accepted = usage_import_service.create_import(
            db,
            user.sub,
            payload,
            source_file_id,
            dispatcher=None if sync else dispatcher,
        )
    except Exception:
        if source_file_id is not None:
            files.delete(source_file_id)
        raise

    if sync and source_file_id is not None:
        return usage_import_service.run_import_sync(session_factory, accepted.job_id)
    return accepted


@router.get("/imports", response_model=list[UsageImportRead])
def list_usage_imports(
    client_id: int | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=255),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[UsageImportRead]:
    return usage_import_service.list_imports(
        db,
        client_id=client_id,
        status=status_filter,
        search=search,
        limit=limit,
        offset=offset,
    )


@router.post("/imports/sweep-stalled", response_model=StalledImportsResponse)
def sweep_stalled_imports(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> StalledImportsResponse:
    return StalledImportsResponse(failed_job_ids=usage_import_service.fail_stalled_imports(db))


@router.get("/imports/{job_id}", response_model=UsageImportRead)
def get_usage_import(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UsageImportRead:
    return usage_import_service.get_status(db, job_id)


@router.get("/imports/{job_id}/records", response_model=list[UsageRecordRead])
def list_usage_records(
    job_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[UsageRecordRead]:
    return usage_import_service.list_records(db, job_id, limit=limit, offset=offset)


@router.post("/imports/{job_id}/cancel", response_model=UsageImportRead)
def cancel_usage_import(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> UsageImportRead:
    return usage_import_service.cancel_import(db, job_id)


@router.delete("/imports/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_usage_import(
    job_id: uuid.UUID,
    purge: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    if purge:
        usage_import_service.purge_import(db, job_id)
    else:
        usage_import_service.delete_import(db, job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
