"""Invoice ledger: creation, one-way status transitions and listings."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paycore.config import get_settings
from paycore.models import Invoice, InvoiceStatus, WebhookRecordStatus
from paycore.services import accounts as accounts_service
from paycore.services import sessions as sessions_service
from paycore.services.idempotency import get_existing_by_key, get_or_create_idempotent
from paycore.services.status_cache import StatusCache, StatusEntry
from paycore.utils.audit import log_audit
from paycore.utils.errors import DuplicateOrderCode, InvalidAmount, InvalidStatus, NotFound
from paycore.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_status(value: str | InvoiceStatus) -> InvoiceStatus:
    """Return the matching ``InvoiceStatus`` or raise ``InvalidStatus``."""

    if isinstance(value, InvoiceStatus):
        return value
    try:
        return InvoiceStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidStatus(
            f"Invalid status '{value}'.",
            details={"allowed": [member.value for member in InvoiceStatus]},
        ) from None


def _validate_amounts(amount: Decimal, bonus: Decimal) -> None:
    minimum = Decimal(get_settings().MIN_DEPOSIT_AMOUNT)
    if amount < minimum:
        raise InvalidAmount(
            f"Amount must be at least {minimum:,}.",
            details={"minimum": str(minimum), "amount": str(amount)},
        )
    if bonus < 0:
        raise InvalidAmount("Bonus cannot be negative.", details={"bonus": str(bonus)})


def _build_invoice(
    *,
    payer_id: str,
    order_code: int,
    amount: Decimal,
    bonus: Decimal,
    description: str,
    payment_method: str,
    uuid: str | None = None,
) -> Invoice:
    now = utcnow()
    return Invoice(
        payer_id=payer_id,
        order_code=order_code,
        uuid=uuid,
        amount=amount,
        bonus=bonus,
        total_amount=amount + bonus,
        status=InvoiceStatus.PENDING,
        description=description,
        payment_method=payment_method,
        created_at=now,
        expires_at=now + timedelta(days=get_settings().INVOICE_TTL_DAYS),
    )


def status_entry_for(invoice: Invoice) -> StatusEntry:
    payment_date = ensure_utc(invoice.payment_date)
    return StatusEntry(
        status=invoice.status.value,
        order_code=invoice.order_code,
        uuid=invoice.uuid,
        amount=str(invoice.amount),
        total_amount=str(invoice.total_amount),
        payment_date=payment_date.isoformat() if payment_date else None,
    )


def publish_status(status_cache: StatusCache | None, invoice: Invoice, *, if_absent: bool = False) -> None:
    """Mirror the invoice status under its UUID and its order code.

    With ``if_absent`` keys that already hold a status are left untouched.
    """

    if status_cache is None:
        return
    entry = status_entry_for(invoice)
    store = status_cache.set_if_absent if if_absent else status_cache.set
    if invoice.uuid:
        store(invoice.uuid, entry)
    store(str(invoice.order_code), entry)


def create_invoice(
    db: Session,
    *,
    payer_id: str,
    order_code: int,
    amount: Decimal | int | str,
    bonus: Decimal | int | str = Decimal("0"),
    description: str,
    payment_method: str = "payos",
    status_cache: StatusCache | None = None,
) -> tuple[Invoice, bool]:
    """Create a pending invoice, or return the one already holding ``order_code``."""

    amount = _to_decimal(amount)
    bonus = _to_decimal(bonus)
    _validate_amounts(amount, bonus)

    invoice, created = get_or_create_idempotent(
        db,
        Invoice,
        order_code,
        lambda: _build_invoice(
            payer_id=payer_id,
            order_code=order_code,
            amount=amount,
            bonus=bonus,
            description=description,
            payment_method=payment_method,
        ),
        key_field="order_code",
        commit=False,
    )
    if not created:
        logger.info(
            "Invoice already exists for order code",
            extra={"order_code": order_code, "invoice_id": invoice.id},
        )
        return invoice, False

    log_audit(
        db,
        actor=f"payer:{payer_id}",
        action="INVOICE_CREATED",
        entity="Invoice",
        entity_id=invoice.id,
        data={"order_code": order_code, "amount": str(amount), "bonus": str(bonus)},
    )
    db.commit()
    db.refresh(invoice)
    logger.info("Invoice created", extra={"order_code": order_code, "invoice_id": invoice.id})
    publish_status(status_cache, invoice)
    return invoice, True


def create_invoice_from_session(
    db: Session,
    *,
    payer_id: str,
    uuid: str,
    order_code: int,
    amount: Decimal | int | str,
    bonus: Decimal | int | str = Decimal("0"),
    description: str | None = None,
    status_cache: StatusCache | None = None,
) -> tuple[Invoice, bool]:
    """Create an invoice keyed by a correlation UUID; repeated calls return it unchanged."""

    uuid = uuid.strip().lower()
    existing = get_existing_by_key(db, Invoice, uuid, key_field="uuid")
    if existing is not None:
        logger.info(
            "Invoice already exists for session",
            extra={"uuid": uuid, "order_code": existing.order_code},
        )
        return existing, False

    amount = _to_decimal(amount)
    bonus = _to_decimal(bonus)
    _validate_amounts(amount, bonus)

    clash = get_existing_by_key(db, Invoice, order_code, key_field="order_code")
    if clash is not None:
        raise DuplicateOrderCode(
            "Order code is already bound to another payment session.",
            details={"order_code": order_code},
        )

    if not description:
        description = f"Top-up {amount:,.0f} {get_settings().CURRENCY}"

    invoice = _build_invoice(
        payer_id=payer_id,
        order_code=order_code,
        amount=amount,
        bonus=bonus,
        description=description,
        payment_method="payos",
        uuid=uuid,
    )
    try:
        db.add(invoice)
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_existing_by_key(db, Invoice, uuid, key_field="uuid")
        if existing is not None:
            return existing, False
        raise DuplicateOrderCode(
            "Order code is already bound to another payment session.",
            details={"order_code": order_code},
        ) from None

    log_audit(
        db,
        actor=f"payer:{payer_id}",
        action="INVOICE_CREATED",
        entity="Invoice",
        entity_id=invoice.id,
        data={"order_code": order_code, "uuid": uuid, "amount": str(amount), "bonus": str(bonus)},
    )
    db.commit()
    db.refresh(invoice)
    logger.info(
        "Invoice created from session",
        extra={"order_code": order_code, "uuid": uuid, "invoice_id": invoice.id},
    )
    publish_status(status_cache, invoice)
    return invoice, True


def get_invoice(db: Session, *, order_code: int | None = None, uuid: str | None = None) -> Invoice | None:
    """Look an invoice up by UUID (preferred) or order code."""

    if uuid:
        invoice = get_existing_by_key(db, Invoice, uuid.strip().lower(), key_field="uuid")
        if invoice is not None:
            return invoice
    if order_code is not None:
        return get_existing_by_key(db, Invoice, order_code, key_field="order_code")
    return None


def update_status(
    db: Session,
    order_code: int,
    new_status: str | InvoiceStatus,
    payment_date: datetime | None = None,
    *,
    status_cache: StatusCache | None = None,
    actor: str = "system",
) -> Invoice:
    """Apply a status change; terminal statuses are final.

    The pending -> terminal move is a compare-and-set on the current status,
    so the balance credit for ``completed`` happens at most once even when
    the same callback is processed concurrently.
    """

    target = parse_status(new_status)
    invoice = get_existing_by_key(db, Invoice, order_code, key_field="order_code")
    if invoice is None:
        raise NotFound("Invoice not found.", details={"order_code": order_code})

    if invoice.status.is_terminal:
        if invoice.status is target:
            logger.info(
                "Invoice already in requested status",
                extra={"order_code": order_code, "status": target.value},
            )
        else:
            logger.warning(
                "Ignoring transition out of terminal status",
                extra={
                    "order_code": order_code,
                    "current_status": invoice.status.value,
                    "requested_status": target.value,
                },
            )
        return invoice

    if target is InvoiceStatus.PENDING:
        if payment_date is not None:
            invoice.payment_date = payment_date
            db.commit()
            db.refresh(invoice)
        publish_status(status_cache, invoice)
        return invoice

    if target is InvoiceStatus.COMPLETED:
        payment_date = payment_date or utcnow()

    result = db.execute(
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.status == InvoiceStatus.PENDING)
        .values(status=target, payment_date=payment_date, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Another writer resolved the invoice between our read and the update.
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Invoice resolved concurrently",
            extra={"order_code": order_code, "status": invoice.status.value},
        )
        return invoice

    if target is InvoiceStatus.COMPLETED:
        accounts_service.credit_balance(db, invoice.payer_id, invoice.total_amount)
    sessions_service.release_session(
        db,
        uuid=invoice.uuid,
        order_code=invoice.order_code,
        resolved_status=(
            WebhookRecordStatus.COMPLETED if target is InvoiceStatus.COMPLETED else WebhookRecordStatus.EXPIRED
        ),
    )

    log_audit(
        db,
        actor=actor,
        action=f"INVOICE_{target.name}",
        entity="Invoice",
        entity_id=invoice.id,
        data={
            "order_code": order_code,
            "previous_status": InvoiceStatus.PENDING.value,
            "status": target.value,
            "total_amount": str(invoice.total_amount),
        },
    )
    db.commit()
    db.refresh(invoice)
    logger.info(
        "Invoice status updated",
        extra={"order_code": order_code, "status": target.value, "actor": actor},
    )
    publish_status(status_cache, invoice)
    return invoice


def list_invoices(
    db: Session,
    payer_id: str,
    status: str | InvoiceStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Invoice], int]:
    """Return one page of a payer's invoices, newest first, and the total count."""

    page = max(1, page)
    limit = min(get_settings().INVOICE_PAGE_MAX_LIMIT, max(1, limit))
    filters = [Invoice.payer_id == payer_id]
    if status:
        filters.append(Invoice.status == parse_status(status))

    total = db.scalar(select(func.count()).select_from(Invoice).where(*filters)) or 0
    stmt = (
        select(Invoice)
        .where(*filters)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(db.scalars(stmt)), int(total)


def expire_stale_invoices(
    db: Session,
    *,
    now: datetime | None = None,
    status_cache: StatusCache | None = None,
) -> int:
    """Move pending invoices past their expiry to ``expired``."""

    now = now or utcnow()
    order_codes = db.scalars(
        select(Invoice.order_code).where(
            Invoice.status == InvoiceStatus.PENDING,
            Invoice.expires_at <= now,
        )
    ).all()
    for order_code in order_codes:
        update_status(
            db,
            order_code,
            InvoiceStatus.EXPIRED,
            status_cache=status_cache,
            actor="scheduler",
        )
    if order_codes:
        logger.info("Expired stale invoices", extra={"count": len(order_codes)})
    return len(order_codes)


__all__ = [
    "create_invoice",
    "create_invoice_from_session",
    "expire_stale_invoices",
    "get_invoice",
    "list_invoices",
    "parse_status",
    "publish_status",
    "status_entry_for",
    "update_status",
]
