"""Process-local service objects shared by requests, wired through ``app.state``."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import FastAPI, Request

from paycore.config import Settings
from paycore.services.provider_client import ProviderClient
from paycore.services.status_cache import StatusCache
from paycore.services.webhook_security import RateLimiter, RequestDeduplicator


@dataclass
class PipelineServices:
    status_cache: StatusCache
    deduplicator: RequestDeduplicator
    rate_limiter: RateLimiter
    provider_client: ProviderClient


def build_services(settings: Settings) -> PipelineServices:
    return PipelineServices(
        status_cache=StatusCache(),
        deduplicator=RequestDeduplicator(ttl_seconds=settings.DEDUP_TTL_SECONDS),
        rate_limiter=RateLimiter(
            max_tokens=settings.RATE_LIMIT_MAX_TOKENS,
            refill_rate=settings.RATE_LIMIT_REFILL_RATE,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        ),
        provider_client=ProviderClient(settings),
    )


def install_services(app: FastAPI, services: PipelineServices) -> PipelineServices:
    app.state.services = services
    return services


def get_services(request: Request) -> PipelineServices:
    return request.app.state.services


def get_status_cache(request: Request) -> StatusCache:
    return get_services(request).status_cache


def get_deduplicator(request: Request) -> RequestDeduplicator:
    return get_services(request).deduplicator


def get_rate_limiter(request: Request) -> RateLimiter:
    return get_services(request).rate_limiter


def get_provider_client(request: Request) -> ProviderClient:
    return get_services(request).provider_client


__all__ = [
    "PipelineServices",
    "build_services",
    "install_services",
    "get_services",
    "get_status_cache",
    "get_deduplicator",
    "get_rate_limiter",
    "get_provider_client",
]
