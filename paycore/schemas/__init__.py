"""Pydantic schemas for API requests and responses."""
from .invoice import (
    InvoiceCreate,
    InvoiceFromSessionCreate,
    InvoicePage,
    InvoiceRead,
    InvoiceStatusUpdate,
    Pagination,
)
from .webhook import (
    PaymentSessionCreate,
    PaymentSessionRead,
    ProviderWebhookData,
    SessionExistsRead,
    SessionLimitRead,
    WebhookAck,
)

__all__ = [
    "InvoiceCreate",
    "InvoiceFromSessionCreate",
    "InvoicePage",
    "InvoiceRead",
    "InvoiceStatusUpdate",
    "Pagination",
    "PaymentSessionCreate",
    "PaymentSessionRead",
    "ProviderWebhookData",
    "SessionExistsRead",
    "SessionLimitRead",
    "WebhookAck",
]
