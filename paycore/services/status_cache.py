"""In-process cache of the latest payment status with subscriber fan-out.

The cache is a latency optimisation for live notification only: the invoice
ledger stays the source of truth, and entries are lost on restart. It mirrors
exactly what it is told; transition rules are enforced by the ledger.

This design is correct for a single process. Running several replicas would
require replacing it with a shared broker.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from paycore.utils.time import utcnow

logger = logging.getLogger(__name__)

PENDING_STATUS = "pending"

# Subscribers receive a payload dict, or ``None`` when the cache shuts down.
StatusCallback = Callable[[Optional[dict[str, Any]]], None]


@dataclass(frozen=True)
class StatusEntry:
    """Last known status of a payment key."""

    status: str
    order_code: int | None = None
    uuid: str | None = None
    amount: str | None = None
    total_amount: str | None = None
    payment_date: str | None = None
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.status != PENDING_STATUS

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "orderCode": self.order_code,
            "uuid": self.uuid,
            "amount": self.amount,
            "totalAmount": self.total_amount,
            "paymentDate": self.payment_date,
            "updatedAt": self.updated_at,
        }


@dataclass
class _Slot:
    entry: StatusEntry | None = None
    stored_at: float = 0.0
    subscribers: dict[int, StatusCallback] = field(default_factory=dict)


class StatusCache:
    """Thread-safe map of payment key -> last status plus live subscribers."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # Re-entrant so a callback may unsubscribe itself during notification.
        self._lock = threading.RLock()
        self._slots: dict[str, _Slot] = {}
        self._next_token = 0

    def get(self, key: str) -> StatusEntry | None:
        with self._lock:
            slot = self._slots.get(key)
            return slot.entry if slot else None

    def set(self, key: str, entry: StatusEntry) -> int:
        """Store ``entry`` and notify subscribers in registration order.

        Notification happens under the lock so a subscriber always observes
        updates for one key in the order ``set`` was called. Returns the number
        of subscribers notified.
        """

        with self._lock:
            notified = self._store_locked(key, entry)
        logger.debug(
            "Status cached",
            extra={"key": key, "status": entry.status, "subscribers": notified},
        )
        return notified

    def set_if_absent(self, key: str, entry: StatusEntry) -> bool:
        """Store ``entry`` only while ``key`` holds no status yet.

        Used to seed the cache from the ledger without overwriting a newer
        status published in the meantime.
        """

        with self._lock:
            slot = self._slots.get(key)
            if slot is not None and slot.entry is not None:
                return False
            self._store_locked(key, entry)
        return True

    def _store_locked(self, key: str, entry: StatusEntry) -> int:
        slot = self._slots.setdefault(key, _Slot())
        slot.entry = entry
        slot.stored_at = self._clock()
        payload = entry.to_payload()
        callbacks = list(slot.subscribers.values())
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:  # noqa: BLE001
                logger.exception("Status subscriber failed", extra={"key": key})
        return len(callbacks)

    def subscribe(self, key: str, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback`` for future updates; return an idempotent unsubscribe."""

        _, unsubscribe = self.subscribe_with_snapshot(key, callback)
        return unsubscribe

    def subscribe_with_snapshot(
        self, key: str, callback: StatusCallback
    ) -> tuple[StatusEntry | None, Callable[[], None]]:
        """Atomically read the current entry and subscribe to later updates."""

        with self._lock:
            slot = self._slots.setdefault(key, _Slot())
            self._next_token += 1
            token = self._next_token
            slot.subscribers[token] = callback
            snapshot = slot.entry

        def unsubscribe() -> None:
            with self._lock:
                current = self._slots.get(key)
                if current is None:
                    return
                current.subscribers.pop(token, None)
                if current.entry is None and not current.subscribers:
                    self._slots.pop(key, None)

        return snapshot, unsubscribe

    def subscriber_count(self, key: str) -> int:
        with self._lock:
            slot = self._slots.get(key)
            return len(slot.subscribers) if slot else 0

    def evict_terminal(self, older_than_seconds: float) -> int:
        """Drop terminal entries nobody listens to anymore."""

        cutoff = self._clock() - older_than_seconds
        evicted = 0
        with self._lock:
            for key, slot in list(self._slots.items()):
                if slot.subscribers or slot.entry is None:
                    continue
                if slot.entry.is_terminal and slot.stored_at <= cutoff:
                    del self._slots[key]
                    evicted += 1
        if evicted:
            logger.info("Evicted terminal status entries", extra={"evicted": evicted})
        return evicted

    def close(self) -> None:
        """Wake every subscriber with ``None`` so open streams terminate."""

        with self._lock:
            for slot in self._slots.values():
                for callback in list(slot.subscribers.values()):
                    try:
                        callback(None)
                    except Exception:  # noqa: BLE001
                        logger.exception("Status subscriber failed during shutdown")
                slot.subscribers.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "keys": len(self._slots),
                "subscribers": sum(len(slot.subscribers) for slot in self._slots.values()),
            }


__all__ = ["StatusCache", "StatusEntry", "StatusCallback", "PENDING_STATUS"]
