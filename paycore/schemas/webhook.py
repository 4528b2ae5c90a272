"""Schemas for provider callbacks, payment sessions and admission checks."""
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from paycore.schemas.invoice import InvoiceRead


class ProviderWebhookData(BaseModel):
    """Transaction data carried by a provider callback."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    account_number: str | None = Field(default=None, alias="accountNumber")
    amount: Decimal = Field(gt=Decimal("0"))
    description: str = Field(min_length=1)
    reference: str = Field(min_length=1)
    transaction_datetime: str = Field(alias="transactionDateTime")
    order_code: int | None = Field(default=None, alias="orderCode")
    currency: str | None = None

    @classmethod
    def from_body(cls, body: Any) -> "ProviderWebhookData":
        """Accept both the enveloped ``{"code", "desc", "data": {...}}`` form and a flat payload."""

        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        return cls.model_validate(body)


class WebhookAck(BaseModel):
    processed: bool
    duplicate: bool = False
    reason: str | None = None
    order_code: int | None = None
    uuid: str | None = None
    status: str | None = None


class SessionExistsRead(BaseModel):
    exists: bool
    status: str | None = None


class SessionLimitRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    can_create: bool = Field(alias="canCreate")
    pending_count: int = Field(alias="pendingCount")
    max_allowed: int = Field(alias="maxAllowed")


class PaymentSessionCreate(BaseModel):
    payer_id: str = Field(min_length=1, max_length=64)
    account_number: str = Field(min_length=1, max_length=64)
    uuid: UUID
    order_code: int = Field(gt=0)
    amount: Decimal = Field(gt=Decimal("0"))
    bonus: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    description: str | None = Field(default=None, max_length=255)


class PaymentSessionRead(BaseModel):
    created: bool
    invoice: InvoiceRead
    pending_count: int
    max_allowed: int
