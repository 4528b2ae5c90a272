"""API routers for the payment core."""
from fastapi import APIRouter

from . import health, invoices, sessions, webhooks


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(invoices.router)
    api_router.include_router(sessions.router)
    api_router.include_router(webhooks.router)
    return api_router
