"""API key dependency guarding the ledger's administrative write paths."""
from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Header, HTTPException, status

from paycore.config import get_settings
from paycore.utils.errors import error_response

logger = logging.getLogger(__name__)


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``X-API-Key`` or ``Authorization: Bearer ...``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def require_api_key(token: str | None = Depends(_extract_key)) -> str:
    """Validate the service API key and return an actor label for audit entries."""

    configured = get_settings().API_KEY
    if not configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("API_KEY_NOT_CONFIGURED", "Admin API key is not configured."),
        )
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )
    if not hmac.compare_digest(token.encode("utf-8"), configured.encode("utf-8")):
        logger.warning("Rejected admin request with invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid API key."),
        )
    return "admin:apikey"


__all__ = ["require_api_key"]
