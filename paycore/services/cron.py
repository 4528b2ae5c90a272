"""Background cron jobs for maintenance tasks."""
from __future__ import annotations

import logging

from paycore import db as db_module
from paycore.services import invoices as invoices_service
from paycore.services import sessions as sessions_service
from paycore.services.status_cache import StatusCache

logger = logging.getLogger(__name__)


def purge_expired_webhook_records_once() -> int:
    """Enforce the hard TTL on webhook records."""

    with db_module.session_scope() as db:
        return sessions_service.purge_expired_webhook_records(db)


def expire_stale_invoices_once(status_cache: StatusCache | None = None) -> int:
    """Expire pending invoices whose validity period has elapsed."""

    with db_module.session_scope() as db:
        return invoices_service.expire_stale_invoices(db, status_cache=status_cache)


def evict_status_cache_once(status_cache: StatusCache, older_than_seconds: float) -> int:
    return status_cache.evict_terminal(older_than_seconds)


__all__ = [
    "purge_expired_webhook_records_once",
    "expire_stale_invoices_once",
    "evict_status_cache_once",
]
