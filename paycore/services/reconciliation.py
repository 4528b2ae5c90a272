"""Reconcile pending invoices against the provider's status API."""
from __future__ import annotations

import enum
import logging
from typing import Any, Protocol

from sqlalchemy.orm import Session

from paycore.models import Invoice, InvoiceStatus
from paycore.services import invoices as invoices_service
from paycore.services.status_cache import StatusCache
from paycore.utils.audit import log_audit
from paycore.utils.errors import NotFound, RetryExhaustedError
from paycore.utils.time import parse_iso_utc

logger = logging.getLogger(__name__)


class RetryExhaustionPolicy(str, enum.Enum):
    """What to do with a pending invoice when the status check keeps failing."""

    MARK_FAILED = "mark_failed"
    MANUAL_REVIEW = "manual_review"
    AWAIT_EXPIRY = "await_expiry"


PROVIDER_STATUS_MAP = {
    "PAID": InvoiceStatus.COMPLETED,
    "CANCELLED": InvoiceStatus.FAILED,
    "FAILED": InvoiceStatus.FAILED,
    "EXPIRED": InvoiceStatus.EXPIRED,
}


class StatusProvider(Protocol):
    def get_payment_status(self, order_code: int) -> dict[str, Any]: ...


def map_provider_status(value: str | None) -> InvoiceStatus:
    return PROVIDER_STATUS_MAP.get((value or "").upper(), InvoiceStatus.PENDING)


def reconcile_invoice(
    db: Session,
    order_code: int,
    client: StatusProvider,
    *,
    status_cache: StatusCache | None = None,
    policy: RetryExhaustionPolicy | str = RetryExhaustionPolicy.MANUAL_REVIEW,
    actor: str = "reconciliation",
) -> Invoice:
    """Pull the provider status for ``order_code`` and apply it to the ledger."""

    policy = RetryExhaustionPolicy(policy)
    invoice = invoices_service.get_invoice(db, order_code=order_code)
    if invoice is None:
        raise NotFound("Invoice not found.", details={"order_code": order_code})
    if invoice.status.is_terminal:
        return invoice

    try:
        data = client.get_payment_status(order_code)
    except RetryExhaustedError as exc:
        logger.error(
            "Provider status check exhausted retries",
            extra={"order_code": order_code, "attempts": exc.attempts, "policy": policy.value},
        )
        if policy is RetryExhaustionPolicy.MARK_FAILED:
            return invoices_service.update_status(
                db,
                order_code,
                InvoiceStatus.FAILED,
                status_cache=status_cache,
                actor=actor,
            )
        if policy is RetryExhaustionPolicy.MANUAL_REVIEW:
            log_audit(
                db,
                actor=actor,
                action="RECONCILIATION_EXHAUSTED",
                entity="Invoice",
                entity_id=invoice.id,
                data={"order_code": order_code, "attempts": exc.attempts, "error": str(exc.last_error)},
            )
            db.commit()
        raise

    target = map_provider_status(data.get("status"))
    payment_date = None
    paid_at = data.get("paidAt") or data.get("transactionDateTime")
    if target is InvoiceStatus.COMPLETED and isinstance(paid_at, str):
        try:
            payment_date = parse_iso_utc(paid_at)
        except ValueError:
            logger.warning("Unparseable provider payment date", extra={"order_code": order_code})
    return invoices_service.update_status(
        db,
        order_code,
        target,
        payment_date,
        status_cache=status_cache,
        actor=actor,
    )


__all__ = ["RetryExhaustionPolicy", "map_provider_status", "reconcile_invoice"]
