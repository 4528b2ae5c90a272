"""Schemas for invoice entities."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from paycore.models.invoice import InvoiceStatus


class InvoiceCreate(BaseModel):
    payer_id: str = Field(min_length=1, max_length=64)
    order_code: int = Field(gt=0)
    amount: Decimal = Field(gt=Decimal("0"))
    bonus: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    description: str = Field(min_length=1, max_length=255)
    payment_method: str = Field(default="payos", max_length=32)


class InvoiceFromSessionCreate(BaseModel):
    payer_id: str = Field(min_length=1, max_length=64)
    uuid: UUID
    order_code: int = Field(gt=0)
    amount: Decimal = Field(gt=Decimal("0"))
    bonus: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    description: str | None = Field(default=None, max_length=255)


class InvoiceStatusUpdate(BaseModel):
    order_code: int = Field(gt=0)
    # Validated by the ledger so unknown values map to INVALID_STATUS.
    status: str
    payment_date: datetime | None = None


class InvoiceRead(BaseModel):
    id: int
    order_code: int
    uuid: str | None
    payer_id: str
    amount: Decimal
    bonus: Decimal
    total_amount: Decimal
    status: InvoiceStatus
    description: str
    payment_method: str
    payment_date: datetime | None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class InvoicePage(BaseModel):
    items: list[InvoiceRead]
    pagination: Pagination
