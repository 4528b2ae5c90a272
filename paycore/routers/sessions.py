"""Payment session opening: admission guard plus invoice creation."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from paycore.db import get_db
from paycore.dependencies import get_status_cache
from paycore.schemas.invoice import InvoiceRead
from paycore.schemas.webhook import PaymentSessionCreate, PaymentSessionRead
from paycore.services import invoices as invoices_service
from paycore.services import sessions as sessions_service
from paycore.services.status_cache import StatusCache
from paycore.utils.errors import SessionLimitReached

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment-sessions", tags=["sessions"])


@router.post("", response_model=PaymentSessionRead, status_code=status.HTTP_201_CREATED)
def open_payment_session(
    payload: PaymentSessionCreate,
    response: Response,
    db: Session = Depends(get_db),
    status_cache: StatusCache = Depends(get_status_cache),
) -> PaymentSessionRead:
    """Open (or resume) a payment session for a payer.

    A UUID that was already registered resumes its session without consuming
    quota. New sessions are refused once the account holds
    ``MAX_PENDING_SESSIONS`` pending ones in the trailing window.
    """

    uuid = str(payload.uuid)
    resumed = sessions_service.check_session_exists(db, uuid)["exists"]
    quota = sessions_service.check_can_create_session(db, payload.account_number)
    if not resumed and not quota["can_create"]:
        raise SessionLimitReached(
            "Too many pending payment sessions.",
            details={"pending_count": quota["pending_count"], "max_allowed": quota["max_allowed"]},
        )

    invoice, created = invoices_service.create_invoice_from_session(
        db,
        payer_id=payload.payer_id,
        uuid=uuid,
        order_code=payload.order_code,
        amount=payload.amount,
        bonus=payload.bonus,
        description=payload.description,
        status_cache=status_cache,
    )
    sessions_service.register_session(
        db,
        account_number=payload.account_number,
        uuid=uuid,
        order_code=invoice.order_code,
        amount=invoice.amount,
        description=invoice.description,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
        logger.info("Payment session resumed", extra={"uuid": uuid, "order_code": invoice.order_code})

    return PaymentSessionRead(
        created=created,
        invoice=InvoiceRead.model_validate(invoice),
        pending_count=sessions_service.count_pending_sessions(db, payload.account_number),
        max_allowed=quota["max_allowed"],
    )


__all__ = ["router"]
