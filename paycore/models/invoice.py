"""Invoice model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum as SqlEnum, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class InvoiceStatus(str, enum.Enum):
    """Possible statuses for an invoice."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not InvoiceStatus.PENDING


TERMINAL_INVOICE_STATUSES = frozenset(
    {InvoiceStatus.COMPLETED, InvoiceStatus.FAILED, InvoiceStatus.EXPIRED}
)


class Invoice(Base):
    """A payment intent tracked from creation to terminal resolution."""

    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_invoice_positive_amount"),
        CheckConstraint("bonus >= 0", name="ck_invoice_non_negative_bonus"),
        Index("ix_invoices_payer_created", "payer_id", "created_at"),
        Index("ix_invoices_status", "status"),
        Index("ix_invoices_expires_at", "expires_at"),
    )

    order_code: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    uuid: Mapped[str | None] = mapped_column(String(36), unique=True, nullable=True)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    bonus: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SqlEnum(InvoiceStatus, values_callable=lambda enum_cls: [member.value for member in enum_cls]),
        nullable=False,
        default=InvoiceStatus.PENDING,
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="payos")
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
