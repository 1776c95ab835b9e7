from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from usage_billing.business.billing.schemas import InvoiceCreate, InvoiceRead, InvoiceStatusChange, InvoiceUpdate
from usage_billing.business.billing.service import invoice_service
from usage_billing.core.auth import AuthUser, get_current_user
from usage_billing.core.database import get_db


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead:
    return invoice_service.create_invoice(db, user.sub, payload)


@router.get("/invoices", response_model=list[InvoiceRead])
def list_invoices(
    client_id: int | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[InvoiceRead]:
    return invoice_service.list_invoices(db, client_id=client_id, status=status_filter, limit=limit, offset=offset)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead:
    return invoice_service.get_invoice(db, invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceRead)
def update_invoice(
    invoice_id: uuid.UUID,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead:
    return invoice_service.update_invoice(db, invoice_id, payload)


@router.post("/invoices/{invoice_id}/status", response_model=InvoiceRead)
def change_invoice_status(
    invoice_id: uuid.UUID,
    payload: InvoiceStatusChange,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead:
    return invoice_service.change_status(db, invoice_id, payload)


@router.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    invoice_service.delete_invoice(db, invoice_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
