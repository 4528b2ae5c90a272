"""Payer balance collaborator used by the invoice ledger."""
import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from paycore.models import PayerAccount
from paycore.services.idempotency import get_or_create_idempotent

logger = logging.getLogger(__name__)


def get_balance(db: Session, payer_id: str) -> Decimal:
    value = db.scalar(select(PayerAccount.balance).where(PayerAccount.external_id == payer_id))
    return Decimal(value) if value is not None else Decimal("0")


def credit_balance(db: Session, payer_id: str, amount: Decimal) -> None:
    """Add ``amount`` to the payer's balance without committing.

    The increment runs as a single UPDATE so concurrent credits cannot lose
    writes.
    """

    account, _ = get_or_create_idempotent(
        db,
        PayerAccount,
        payer_id,
        lambda: PayerAccount(external_id=payer_id, balance=Decimal("0")),
        key_field="external_id",
        commit=False,
    )
    db.execute(
        update(PayerAccount)
        .where(PayerAccount.id == account.id)
        .values(balance=PayerAccount.balance + amount)
        .execution_options(synchronize_session=False)
    )
    db.expire(account, ["balance"])
    logger.info("Balance credited", extra={"payer_id": payer_id, "amount": str(amount)})
