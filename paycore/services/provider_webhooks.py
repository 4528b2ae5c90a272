"""Processing of authenticated provider payment callbacks."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from paycore.models import InvoiceStatus
from paycore.schemas.webhook import ProviderWebhookData
from paycore.services import invoices as invoices_service
from paycore.services import sessions as sessions_service
from paycore.services.status_cache import StatusCache
from paycore.services.webhook_security import RequestDeduplicator
from paycore.utils.time import parse_iso_utc, utcnow

logger = logging.getLogger(__name__)


def _payment_date(payload: ProviderWebhookData):
    try:
        return parse_iso_utc(payload.transaction_datetime)
    except ValueError:
        return utcnow()


def _apply_callback(
    db: Session,
    payload: ProviderWebhookData,
    status_cache: StatusCache | None,
) -> dict[str, Any]:
    data = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    sessions_service.record_provider_callback(db, data)

    correlation_id = sessions_service.extract_correlation_id(payload.description)
    invoice = invoices_service.get_invoice(db, order_code=payload.order_code, uuid=correlation_id)
    if invoice is None:
        logger.warning(
            "Provider callback for unknown invoice",
            extra={"order_code": payload.order_code, "uuid": correlation_id},
        )
        return {
            "processed": False,
            "reason": "INVOICE_NOT_FOUND",
            "order_code": payload.order_code,
            "uuid": correlation_id,
            "status": None,
        }

    target = InvoiceStatus.COMPLETED
    if payload.amount < invoice.amount:
        logger.warning(
            "Provider callback amount below invoice amount",
            extra={
                "order_code": invoice.order_code,
                "paid": str(payload.amount),
                "expected": str(invoice.amount),
            },
        )
        target = InvoiceStatus.FAILED
    invoice = invoices_service.update_status(
        db,
        invoice.order_code,
        target,
        _payment_date(payload) if target is InvoiceStatus.COMPLETED else None,
        status_cache=status_cache,
        actor="provider_webhook",
    )
    return {
        "processed": True,
        "reason": None,
        "order_code": invoice.order_code,
        "uuid": invoice.uuid,
        "status": invoice.status.value,
    }


def process_provider_callback(
    db: Session,
    payload: ProviderWebhookData,
    *,
    deduplicator: RequestDeduplicator,
    status_cache: StatusCache | None = None,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    """Apply a verified callback to the ledger; repeated deliveries replay the first result.

    The idempotency token is claimed before any ledger work, so a delivery
    racing an in-flight one is answered as a duplicate. Must only be called
    after the signature has been verified.
    """

    token = idempotency_key or payload.reference
    if not deduplicator.claim(token):
        previous = deduplicator.get_result(token) or {"processed": False, "reason": "IN_PROGRESS"}
        logger.info("Duplicate provider callback", extra={"idempotency_key": token})
        return {**previous, "duplicate": True}

    try:
        result = _apply_callback(db, payload, status_cache)
    except Exception:
        deduplicator.release(token)
        raise

    deduplicator.record(token, result)
    logger.info(
        "Provider callback processed",
        extra={"order_code": result["order_code"], "status": result["status"], "processed": result["processed"]},
    )
    return {**result, "duplicate": False}


__all__ = ["process_provider_callback"]
