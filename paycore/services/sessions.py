"""Session admission guard backed by short-lived webhook records."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from paycore.config import get_settings
from paycore.models import WebhookRecord, WebhookRecordStatus
from paycore.utils.time import utcnow

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)


def extract_correlation_id(description: str | None) -> str | None:
    """Return the first UUID embedded in a free-text description."""

    if not description:
        return None
    match = UUID_PATTERN.search(description)
    return match.group(0).lower() if match else None


def _window_start(now: datetime) -> datetime:
    return now - timedelta(hours=get_settings().SESSION_WINDOW_HOURS)


def _alive(now: datetime):
    """Records past their hard TTL are absent even before the purge runs."""

    return WebhookRecord.expires_at > now


def check_session_exists(db: Session, uuid: str, *, now: datetime | None = None) -> dict[str, Any]:
    """Report whether a session for ``uuid`` was registered in the trailing window."""

    now = now or utcnow()
    token = uuid.strip().lower()
    stmt = (
        select(WebhookRecord)
        .where(
            or_(
                WebhookRecord.correlation_id == token,
                # Records whose description carried no parseable UUID.
                and_(WebhookRecord.correlation_id.is_(None), WebhookRecord.description.contains(uuid.strip())),
            ),
            WebhookRecord.created_at >= _window_start(now),
            _alive(now),
        )
        .order_by(WebhookRecord.created_at.desc())
        .limit(1)
    )
    record = db.scalars(stmt).first()
    return {"exists": record is not None, "status": record.status.value if record else None}


def check_order_code_exists(db: Session, order_code: int, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    stmt = (
        select(WebhookRecord)
        .where(WebhookRecord.order_code == order_code, _alive(now))
        .order_by(WebhookRecord.created_at.desc())
        .limit(1)
    )
    record = db.scalars(stmt).first()
    return {"exists": record is not None, "status": record.status.value if record else None}


def count_pending_sessions(db: Session, account_identity: str, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    stmt = select(func.count()).select_from(WebhookRecord).where(
        WebhookRecord.account_number == account_identity,
        WebhookRecord.status == WebhookRecordStatus.PENDING,
        WebhookRecord.created_at >= _window_start(now),
        _alive(now),
    )
    return int(db.scalar(stmt) or 0)


def check_can_create_session(
    db: Session, account_identity: str, *, now: datetime | None = None
) -> dict[str, Any]:
    """Advisory quota check: at most ``MAX_PENDING_SESSIONS`` open sessions per identity."""

    max_allowed = get_settings().MAX_PENDING_SESSIONS
    pending_count = count_pending_sessions(db, account_identity, now=now)
    can_create = pending_count < max_allowed
    if not can_create:
        logger.info(
            "Session limit reached",
            extra={"pending_count": pending_count, "max_allowed": max_allowed},
        )
    return {"can_create": can_create, "pending_count": pending_count, "max_allowed": max_allowed}


def _new_record(
    *,
    account_number: str,
    amount: Decimal,
    description: str,
    reference: str,
    transaction_datetime: str,
    order_code: int | None,
    correlation_id: str | None,
    raw_json: dict[str, Any],
    status: WebhookRecordStatus,
) -> WebhookRecord:
    now = utcnow()
    return WebhookRecord(
        account_number=account_number,
        amount=amount,
        description=description,
        reference=reference,
        transaction_datetime=transaction_datetime,
        order_code=order_code,
        correlation_id=correlation_id,
        raw_json=raw_json,
        status=status,
        created_at=now,
        expires_at=now + timedelta(hours=get_settings().WEBHOOK_RECORD_TTL_HOURS),
    )


def register_session(
    db: Session,
    *,
    account_number: str,
    uuid: str,
    order_code: int,
    amount: Decimal,
    description: str | None = None,
) -> tuple[WebhookRecord, bool]:
    """Store the pending record counted by the guard; idempotent per UUID."""

    token = uuid.strip().lower()
    now = utcnow()
    existing = db.scalars(
        select(WebhookRecord)
        .where(WebhookRecord.correlation_id == token, _alive(now))
        .order_by(WebhookRecord.created_at.desc())
        .limit(1)
    ).first()
    if existing is not None:
        return existing, False

    text = description or token
    if token not in text.lower():
        text = f"{text} {token}"
    record = _new_record(
        account_number=account_number,
        amount=Decimal(str(amount)),
        description=text,
        reference=f"session-{token}",
        transaction_datetime=now.isoformat(),
        order_code=order_code,
        correlation_id=token,
        raw_json={"uuid": token, "orderCode": order_code, "amount": str(amount)},
        status=WebhookRecordStatus.PENDING,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Payment session registered", extra={"uuid": token, "order_code": order_code})
    return record, True


def record_provider_callback(db: Session, data: dict[str, Any]) -> WebhookRecord:
    """Resolve the pending session matching a callback, or store the callback itself.

    Only the status of an existing record changes; amount and reference stay
    as registered.
    """

    now = utcnow()
    correlation_id = extract_correlation_id(data.get("description"))
    order_code = data.get("orderCode")

    record = None
    if correlation_id:
        record = db.scalars(
            select(WebhookRecord)
            .where(
                WebhookRecord.correlation_id == correlation_id,
                WebhookRecord.status == WebhookRecordStatus.PENDING,
                _alive(now),
            )
            .limit(1)
        ).first()
    if record is None and order_code is not None:
        record = db.scalars(
            select(WebhookRecord)
            .where(
                WebhookRecord.order_code == order_code,
                WebhookRecord.status == WebhookRecordStatus.PENDING,
                _alive(now),
            )
            .limit(1)
        ).first()

    if record is not None:
        record.status = WebhookRecordStatus.COMPLETED
        db.commit()
        db.refresh(record)
        logger.info(
            "Pending session resolved by callback",
            extra={"record_id": record.id, "order_code": record.order_code},
        )
        return record

    record = _new_record(
        account_number=str(data.get("accountNumber") or ""),
        amount=Decimal(str(data["amount"])),
        description=str(data["description"]),
        reference=str(data["reference"]),
        transaction_datetime=str(data["transactionDateTime"]),
        order_code=order_code,
        correlation_id=correlation_id,
        raw_json=data,
        status=WebhookRecordStatus.COMPLETED,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Provider callback recorded", extra={"record_id": record.id, "order_code": order_code})
    return record


def release_session(
    db: Session,
    *,
    uuid: str | None,
    order_code: int,
    resolved_status: WebhookRecordStatus,
) -> int:
    """Move the pending records of a resolved invoice out of the admission count.

    Matches on the correlation UUID, falling back to the order code. The
    caller owns the transaction.
    """

    now = utcnow()
    released = 0
    if uuid:
        released = db.execute(
            update(WebhookRecord)
            .where(
                WebhookRecord.correlation_id == uuid.strip().lower(),
                WebhookRecord.status == WebhookRecordStatus.PENDING,
                _alive(now),
            )
            .values(status=resolved_status, updated_at=now)
            .execution_options(synchronize_session="fetch")
        ).rowcount or 0
    if not released:
        released = db.execute(
            update(WebhookRecord)
            .where(
                WebhookRecord.order_code == order_code,
                WebhookRecord.status == WebhookRecordStatus.PENDING,
                _alive(now),
            )
            .values(status=resolved_status, updated_at=now)
            .execution_options(synchronize_session="fetch")
        ).rowcount or 0
    if released:
        logger.info(
            "Pending session released",
            extra={"order_code": order_code, "record_status": resolved_status.value, "count": released},
        )
    return released


def purge_expired_webhook_records(db: Session, *, now: datetime | None = None) -> int:
    """Physically delete records whose hard TTL has passed."""

    now = now or utcnow()
    result = db.execute(delete(WebhookRecord).where(WebhookRecord.expires_at <= now))
    db.commit()
    purged = result.rowcount or 0
    if purged:
        logger.info("Purged expired webhook records", extra={"count": purged})
    return purged


__all__ = [
    "check_can_create_session",
    "check_order_code_exists",
    "check_session_exists",
    "count_pending_sessions",
    "extract_correlation_id",
    "purge_expired_webhook_records",
    "record_provider_callback",
    "register_session",
    "release_session",
]
