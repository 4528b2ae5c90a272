from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paycore import db
from paycore.config import AppInfo, get_settings
from paycore.core.logging import get_logger, setup_logging
from paycore.core.runtime_state import set_scheduler_active
import paycore.models  # noqa: F401  registers the tables
from paycore.dependencies import PipelineServices, build_services, install_services
from paycore.routers import get_api_router
from paycore.services.cron import (
    evict_status_cache_once,
    expire_stale_invoices_once,
    purge_expired_webhook_records_once,
)
from paycore.utils.errors import PaymentCoreError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _current_settings():
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-API-Key", "X-Signature"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_psp_webhook_secrets(settings: Any) -> None:
    """Fail fast when webhook secrets are missing outside dev."""

    secrets_configured = bool(settings.psp_webhook_secret or settings.psp_webhook_secret_next)
    env_lower = settings.app_env.lower()
    if env_lower != "dev" and not secrets_configured:
        logger.error(
            "PSP webhook secrets are missing; configure PSP_WEBHOOK_SECRET or PSP_WEBHOOK_SECRET_NEXT before startup.",
            extra={"env": settings.app_env},
        )
        raise RuntimeError("Missing PSP webhook secrets in non-dev environment.")
    if env_lower == "dev" and not secrets_configured:
        logger.warning(
            "PSP webhook secrets are not configured; allowed in dev only.",
            extra={"env": settings.app_env},
        )


def _start_scheduler(services: PipelineServices, settings: Any) -> AsyncIOScheduler:
    maintenance = AsyncIOScheduler()
    maintenance.start()
    maintenance.add_job(
        purge_expired_webhook_records_once,
        "interval",
        minutes=1,
        id="purge-webhook-records",
        replace_existing=True,
    )
    maintenance.add_job(
        expire_stale_invoices_once,
        "interval",
        minutes=60,
        id="expire-invoices",
        kwargs={"status_cache": services.status_cache},
        replace_existing=True,
    )
    maintenance.add_job(
        evict_status_cache_once,
        "interval",
        minutes=1,
        id="evict-status-cache",
        args=[services.status_cache, settings.STATUS_CACHE_TERMINAL_TTL_SECONDS],
        replace_existing=True,
    )
    return maintenance


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    setup_logging()
    settings = _current_settings()
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_psp_webhook_secrets(settings)

    if settings.psp_webhook_secret is None and settings.psp_webhook_secret_next:
        logger.warning(
            "Primary PSP webhook secret unset; relying on PSP_WEBHOOK_SECRET_NEXT only.",
            extra={"env": settings.app_env},
        )
    db.init_engine()
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    # The status cache, deduplicator and rate limiter are process-local:
    # run a single replica, or enable SCHEDULER_ENABLED on one runner only.
    set_scheduler_active(False)
    if settings.SCHEDULER_ENABLED:
        scheduler = _start_scheduler(app.state.services, settings)
        set_scheduler_active(True, tuple(job.id for job in scheduler.get_jobs()))
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        set_scheduler_active(False)
        services: PipelineServices = app.state.services
        services.status_cache.close()
        services.provider_client.close()
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)
install_services(app, build_services(get_settings()))

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(PaymentCoreError)
async def payment_core_exception_handler(request: Request, exc: PaymentCoreError) -> JSONResponse:
    logger.info(
        "Request rejected",
        extra={"code": exc.code, "path": request.url.path, "status_code": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
