"""Webhook delivery records used for admission accounting and replay checks."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Enum as SqlEnum, Index, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class WebhookRecordStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class WebhookRecord(Base):
    """A received or synthesized provider notification, alive for 24 hours."""

    __tablename__ = "webhook_records"
    __table_args__ = (
        Index("ix_webhook_records_expires_at", "expires_at"),
        Index("ix_webhook_records_correlation_status", "correlation_id", "status"),
        Index("ix_webhook_records_order_code_status", "order_code", "status"),
        Index("ix_webhook_records_account_status_created", "account_number", "status", "created_at"),
    )

    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[str] = mapped_column(String(128), nullable=False)
    transaction_datetime: Mapped[str] = mapped_column(String(64), nullable=False)
    order_code: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[WebhookRecordStatus] = mapped_column(
        SqlEnum(WebhookRecordStatus, values_callable=lambda enum_cls: [member.value for member in enum_cls]),
        nullable=False,
        default=WebhookRecordStatus.PENDING,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
