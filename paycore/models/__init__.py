"""ORM models package."""
from .account import PayerAccount
from .audit import AuditLog
from .base import Base
from .invoice import TERMINAL_INVOICE_STATUSES, Invoice, InvoiceStatus
from .webhook_record import WebhookRecord, WebhookRecordStatus

__all__ = [
    "AuditLog",
    "Base",
    "Invoice",
    "InvoiceStatus",
    "PayerAccount",
    "TERMINAL_INVOICE_STATUSES",
    "WebhookRecord",
    "WebhookRecordStatus",
]
