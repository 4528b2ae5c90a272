"""Invoice ledger endpoints."""
from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from paycore.config import get_settings
from paycore.db import get_db
from paycore.dependencies import get_provider_client, get_status_cache
from paycore.models import Invoice
from paycore.schemas.invoice import (
    InvoiceCreate,
    InvoiceFromSessionCreate,
    InvoicePage,
    InvoiceRead,
    InvoiceStatusUpdate,
    Pagination,
)
from paycore.security import require_api_key
from paycore.services import invoices as invoices_service
from paycore.services import reconciliation as reconciliation_service
from paycore.services.provider_client import ProviderClient
from paycore.services.status_cache import StatusCache
from paycore.utils.errors import NotFound

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    response: Response,
    db: Session = Depends(get_db),
    status_cache: StatusCache = Depends(get_status_cache),
) -> Invoice:
    """Create a pending invoice; an existing order code returns the stored invoice."""

    invoice, created = invoices_service.create_invoice(
        db,
        payer_id=payload.payer_id,
        order_code=payload.order_code,
        amount=payload.amount,
        bonus=payload.bonus,
        description=payload.description,
        payment_method=payload.payment_method,
        status_cache=status_cache,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return invoice


@router.post("/from-session", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice_from_session(
    payload: InvoiceFromSessionCreate,
    response: Response,
    db: Session = Depends(get_db),
    status_cache: StatusCache = Depends(get_status_cache),
) -> Invoice:
    invoice, created = invoices_service.create_invoice_from_session(
        db,
        payer_id=payload.payer_id,
        uuid=str(payload.uuid),
        order_code=payload.order_code,
        amount=payload.amount,
        bonus=payload.bonus,
        description=payload.description,
        status_cache=status_cache,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return invoice


@router.patch("", response_model=InvoiceRead)
def update_invoice_status(
    payload: InvoiceStatusUpdate,
    db: Session = Depends(get_db),
    status_cache: StatusCache = Depends(get_status_cache),
    actor: str = Depends(require_api_key),
) -> Invoice:
    """Admin status update; transitions out of a terminal status are ignored."""

    return invoices_service.update_status(
        db,
        payload.order_code,
        payload.status,
        payload.payment_date,
        status_cache=status_cache,
        actor=actor,
    )


@router.get("", response_model=InvoicePage)
def list_invoices(
    payer_id: str = Query(min_length=1),
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    db: Session = Depends(get_db),
) -> InvoicePage:
    page = max(1, page)
    limit = min(get_settings().INVOICE_PAGE_MAX_LIMIT, max(1, limit))
    items, total = invoices_service.list_invoices(
        db, payer_id, status=status_filter, page=page, limit=limit
    )
    return InvoicePage(
        items=[InvoiceRead.model_validate(item) for item in items],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.get("/{order_code}", response_model=InvoiceRead)
def get_invoice(order_code: int, db: Session = Depends(get_db)) -> Invoice:
    invoice = invoices_service.get_invoice(db, order_code=order_code)
    if invoice is None:
        raise NotFound("Invoice not found.", details={"order_code": order_code})
    return invoice


@router.post("/{order_code}/reconcile", response_model=InvoiceRead)
def reconcile_invoice(
    order_code: int,
    db: Session = Depends(get_db),
    status_cache: StatusCache = Depends(get_status_cache),
    client: ProviderClient = Depends(get_provider_client),
    actor: str = Depends(require_api_key),
) -> Invoice:
    """Ask the provider for the payment status and apply it to the ledger."""

    return reconciliation_service.reconcile_invoice(
        db,
        order_code,
        client,
        status_cache=status_cache,
        policy=get_settings().RETRY_EXHAUSTION_POLICY,
        actor=actor,
    )


__all__ = ["router"]
