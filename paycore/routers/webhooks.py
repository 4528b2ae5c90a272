"""Provider callback intake, session checks and the live status stream."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from paycore.config import get_settings
from paycore.db import get_db
from paycore.dependencies import get_deduplicator, get_rate_limiter, get_status_cache
from paycore.schemas.webhook import ProviderWebhookData, SessionExistsRead, SessionLimitRead, WebhookAck
from paycore.services import invoices as invoices_service
from paycore.services import provider_webhooks
from paycore.services import sessions as sessions_service
from paycore.services.status_cache import StatusCache
from paycore.services.status_stream import stream_status
from paycore.services.webhook_security import RateLimiter, RequestDeduplicator, verify_provider_signature
from paycore.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(request: Request, rate_limiter: RateLimiter) -> None:
    key = client_key(request)
    if not rate_limiter.is_allowed(key):
        logger.warning("Rate limit exceeded", extra={"client": key, "path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=error_response("RATE_LIMITED", "Too many requests."),
        )


@router.post("/provider", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def provider_webhook(
    request: Request,
    db: Session = Depends(get_db),
    deduplicator: RequestDeduplicator = Depends(get_deduplicator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    status_cache: StatusCache = Depends(get_status_cache),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict:
    enforce_rate_limit(request, rate_limiter)

    raw_body = await request.body()
    verify_provider_signature(raw_body, dict(request.headers.items()))

    try:
        payload = ProviderWebhookData.from_body(json.loads(raw_body))
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INVALID", "Webhook body is not valid JSON."),
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response(
                "WEBHOOK_PAYLOAD_INVALID",
                "Webhook payload is missing required fields.",
                {"errors": [".".join(str(part) for part in err["loc"]) for err in exc.errors()]},
            ),
        )

    return provider_webhooks.process_provider_callback(
        db,
        payload,
        deduplicator=deduplicator,
        status_cache=status_cache,
        idempotency_key=idempotency_key,
    )


@router.get("/check-session-limit", response_model=SessionExistsRead | SessionLimitRead)
def check_session_limit(
    uuid: str | None = Query(default=None),
    order_code: int | None = Query(default=None, alias="orderCode"),
    account_number: str | None = Query(default=None, alias="accountNumber"),
    db: Session = Depends(get_db),
):
    """Resume an existing session by UUID/order code, or report the account's quota."""

    if uuid:
        return SessionExistsRead(**sessions_service.check_session_exists(db, uuid))
    if order_code is not None:
        return SessionExistsRead(**sessions_service.check_order_code_exists(db, order_code))
    if account_number:
        return SessionLimitRead(**sessions_service.check_can_create_session(db, account_number))
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=error_response("MISSING_PARAMETER", "uuid, orderCode or accountNumber is required."),
    )


@router.get("/stream")
async def status_stream(
    request: Request,
    uuid: str | None = Query(default=None),
    order_code: int | None = Query(default=None, alias="orderCode"),
    db: Session = Depends(get_db),
    status_cache: StatusCache = Depends(get_status_cache),
) -> StreamingResponse:
    # UUID survives QR regeneration, so it wins over the order code.
    key = uuid.strip().lower() if uuid else (str(order_code) if order_code is not None else None)
    if not key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("MISSING_PARAMETER", "uuid or orderCode is required."),
        )

    if status_cache.get(key) is None:
        # Warm the cache from the ledger after a restart.
        invoice = invoices_service.get_invoice(db, order_code=order_code, uuid=uuid)
        if invoice is not None:
            invoices_service.publish_status(status_cache, invoice, if_absent=True)

    return StreamingResponse(
        stream_status(
            status_cache,
            key,
            heartbeat_seconds=get_settings().STREAM_HEARTBEAT_SECONDS,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


__all__ = ["router", "client_key", "enforce_rate_limit"]
