"""Authenticity, replay and flood guards for the provider callback path."""
from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from fastapi import HTTPException, status

from paycore.config import get_settings
from paycore.utils.errors import SignatureInvalid, error_response

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"


def _current_secrets() -> tuple[str | None, str | None]:
    settings = get_settings()
    return settings.psp_webhook_secret, settings.psp_webhook_secret_next


def masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue
        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``raw_body`` keyed by ``secret``."""

    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check ``signature`` against the HMAC of the exact raw body.

    The comparison is constant-time over the exact bytes received; any
    mismatch, including case or length, is a failure.
    """

    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret).encode("ascii")
    try:
        provided = signature.encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected, provided)


def _get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def verify_provider_signature(raw_body: bytes, headers: Mapping[str, str]) -> None:
    """Validate the callback signature against the primary or rotated secret."""

    primary_secret, secondary_secret = _current_secrets()
    secrets = [s for s in (primary_secret, secondary_secret) if s]
    secrets_info = {"primary": primary_secret, "secondary": secondary_secret}
    if not secrets:
        logger.error(
            "Provider webhook secrets are not configured",
            extra={"psp_secret_status": masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(
                "WEBHOOK_SECRET_NOT_CONFIGURED",
                "Provider webhook secrets are not configured.",
            ),
        )

    provided_sig = _get_header(headers, SIGNATURE_HEADER)
    if not provided_sig:
        logger.warning("Missing provider webhook signature")
        raise SignatureInvalid("Signature header missing.")

    for secret in secrets:
        if verify_signature(raw_body, provided_sig, secret):
            return

    logger.warning(
        "Provider webhook signature mismatch",
        extra={"psp_secret_status": masked_secret_status(secrets_info)},
    )
    raise SignatureInvalid("Invalid provider webhook signature.")


@dataclass
class _DedupEntry:
    result: Any
    recorded_at: float


class RequestDeduplicator:
    """Remember results by idempotency token for a short TTL."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _DedupEntry] = {}

    def _expired(self, entry: _DedupEntry, now: float) -> bool:
        return now - entry.recorded_at > self.ttl_seconds

    def record(self, request_id: str, result: Any) -> None:
        with self._lock:
            now = self._clock()
            self._entries[request_id] = _DedupEntry(result=result, recorded_at=now)
            self._cleanup_locked(now)

    def claim(self, request_id: str) -> bool:
        """Reserve ``request_id``; False when it is already claimed or recorded.

        The reservation holds no result until ``record`` is called.
        """

        with self._lock:
            now = self._clock()
            entry = self._entries.get(request_id)
            if entry is not None and not self._expired(entry, now):
                return False
            self._entries[request_id] = _DedupEntry(result=None, recorded_at=now)
            return True

    def release(self, request_id: str) -> None:
        """Drop a claim whose processing failed so a redelivery can retry it."""

        with self._lock:
            self._entries.pop(request_id, None)

    def is_duplicate(self, request_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None:
                return False
            if self._expired(entry, self._clock()):
                del self._entries[request_id]
                return False
            return True

    def get_result(self, request_id: str) -> Any:
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None or self._expired(entry, self._clock()):
                return None
            return entry.result

    def cleanup(self) -> int:
        with self._lock:
            return self._cleanup_locked(self._clock())

    def _cleanup_locked(self, now: float) -> int:
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimiter:
    """Per-key token bucket; new keys start with a full bucket."""

    def __init__(
        self,
        max_tokens: int = 100,
        refill_rate: float = 10.0,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_tokens < 1 or refill_rate < 0 or window_seconds <= 0:
            raise ValueError("Invalid token bucket configuration")
        self.max_tokens = float(max_tokens)
        self.refill_rate = refill_rate
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, tuple[float, float]] = {}

    def _refilled(self, key: str, now: float) -> float:
        tokens, last = self._buckets.get(key, (self.max_tokens, now))
        elapsed = max(0.0, now - last)
        return min(self.max_tokens, tokens + (elapsed / self.window_seconds) * self.refill_rate)

    def is_allowed(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            tokens = self._refilled(key, now)
            if tokens >= 1:
                self._buckets[key] = (tokens - 1, now)
                return True
            self._buckets[key] = (tokens, now)
            return False

    def remaining(self, key: str) -> float:
        with self._lock:
            return self._refilled(key, self._clock())

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)


__all__ = [
    "SIGNATURE_HEADER",
    "compute_signature",
    "verify_signature",
    "verify_provider_signature",
    "masked_secret_status",
    "RequestDeduplicator",
    "RateLimiter",
]
