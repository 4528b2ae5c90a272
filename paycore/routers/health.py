"""Health check endpoint."""
from __future__ import annotations

import hashlib
import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Depends
from sqlalchemy import text

from paycore.config import Settings, get_settings
from paycore.core.runtime_state import is_scheduler_active, maintenance_jobs
from paycore.db import get_engine
from paycore.dependencies import get_services, PipelineServices

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _secret_status(primary: str | None, secondary: str | None) -> str:
    """Return 'missing' | 'partial' | 'ok' for the webhook secret pair."""

    if primary and not secondary:
        return "ok"
    if primary or secondary:
        # Rotation in progress, or only the next secret configured.
        return "partial"
    return "missing"


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        config = Config("alembic.ini")
        script = ScriptDirectory.from_config(config)
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
        if expected_head and current == expected_head:
            return True, "up_to_date"
        if expected_head is None:
            return False, "unknown"
        return False, "out_of_date"
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"


def _psp_secret_fingerprints(settings: Settings) -> dict[str, str | None]:
    def _fp(value: str | None) -> str | None:
        if not value:
            return None
        return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]

    return {
        "primary": _fp(settings.psp_webhook_secret),
        "next": _fp(settings.psp_webhook_secret_next),
    }


@router.get("", summary="Health check")
def healthcheck(services: PipelineServices = Depends(get_services)) -> dict[str, object]:
    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"

    return {
        "status": "ok" if db_ok else "degraded",
        "env": settings.app_env,
        "psp_webhook_configured": bool(settings.psp_webhook_secret or settings.psp_webhook_secret_next),
        "psp_webhook_secret_status": _secret_status(
            settings.psp_webhook_secret, settings.psp_webhook_secret_next
        ),
        "psp_webhook_secret_fingerprints": _psp_secret_fingerprints(settings),
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_jobs": list(maintenance_jobs()),
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "status_cache": services.status_cache.stats(),
        "deduplicator_entries": len(services.deduplicator),
        "retry_exhaustion_policy": settings.RETRY_EXHAUSTION_POLICY,
    }
