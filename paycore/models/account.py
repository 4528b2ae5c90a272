"""Payer account model."""
from decimal import Decimal

from sqlalchemy import Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PayerAccount(Base):
    """Balance holder credited when one of its invoices completes."""

    __tablename__ = "payer_accounts"

    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
