"""HTTP client for the payment provider's status API."""
from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from paycore.config import Settings, get_settings
from paycore.services.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class ProviderClient:
    """Wrapper around the provider REST API to isolate PSP concerns."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self._client = http_client or httpx.Client(
            base_url=settings.PROVIDER_API_BASE_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
        self._sleep = sleep

    @classmethod
    def from_env(cls) -> "ProviderClient":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.PROVIDER_CLIENT_ID:
            headers["x-client-id"] = self.settings.PROVIDER_CLIENT_ID
        if self.settings.PROVIDER_API_KEY:
            headers["x-api-key"] = self.settings.PROVIDER_API_KEY
        return headers

    def _fetch_status(self, order_code: int) -> dict[str, Any]:
        response = self._client.get(f"/v2/payment-requests/{order_code}", headers=self._headers())
        response.raise_for_status()
        body = response.json()
        data = body.get("data") if isinstance(body, dict) else None
        return data if isinstance(data, dict) else body

    def get_payment_status(self, order_code: int) -> dict[str, Any]:
        """Return the provider's view of a payment, retrying transient failures."""

        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        data = retry_with_backoff(
            lambda: self._fetch_status(order_code),
            max_retries=self.settings.RETRY_MAX_RETRIES,
            initial_delay=self.settings.RETRY_INITIAL_DELAY_SECONDS,
            **kwargs,
        )
        logger.info(
            "Provider status fetched",
            extra={"order_code": order_code, "provider_status": data.get("status")},
        )
        return data

    def close(self) -> None:
        self._client.close()


__all__ = ["ProviderClient"]
