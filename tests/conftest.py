"""Test configuration."""
import hashlib
import hmac
import json
import os
from collections.abc import AsyncIterator, Callable, Iterator
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./paycore_test.db")
os.environ.setdefault("API_KEY", "test-secret-key")
os.environ.setdefault("PSP_WEBHOOK_SECRET", "test-psp-secret")
os.environ.setdefault("PAYCORE_ENV", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from paycore.main import app  # noqa: E402
from paycore import db as db_module  # noqa: E402
from paycore.config import get_settings  # noqa: E402
from paycore.db import get_db  # noqa: E402
from paycore.dependencies import PipelineServices, build_services, install_services  # noqa: E402
from paycore.models import Invoice  # noqa: E402
from paycore.services import invoices as invoices_service  # noqa: E402
from paycore.services.status_cache import StatusCache  # noqa: E402

DB_PATH = Path("./paycore_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False,
                                   future=True, expire_on_commit=False)

_run_migrations()


@pytest.fixture(scope="session", autouse=True)
def startup_engine() -> Iterator[None]:
    db_module.init_engine()
    yield
    db_module.close_engine()


@pytest.fixture
def db_session() -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session
    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def services() -> Iterator[PipelineServices]:
    """Fresh process-local caches for every test."""

    installed = install_services(app, build_services(get_settings()))
    yield installed
    installed.status_cache.close()
    installed.provider_client.close()


@pytest.fixture
def status_cache(services: PipelineServices) -> StatusCache:
    return services.status_cache


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def signed() -> Callable[[dict[str, Any]], tuple[bytes, dict[str, str]]]:
    """Serialize a callback body and sign it with the configured provider secret."""

    def _sign(payload: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(payload).encode()
        signature = hmac.new(
            os.environ["PSP_WEBHOOK_SECRET"].encode(), body, hashlib.sha256
        ).hexdigest()
        return body, {"Content-Type": "application/json", "X-Signature": signature}

    return _sign


@pytest.fixture
def make_invoice(db_session: Session, status_cache: StatusCache) -> Callable[..., Invoice]:
    """Factory creating a pending invoice through the ledger."""

    counter = iter(range(1, 10_000))

    def _factory(
        *,
        payer_id: str | None = None,
        order_code: int | None = None,
        amount: str = "50000",
        bonus: str = "0",
        uuid: str | None = None,
    ) -> Invoice:
        payer = payer_id or f"payer-{uuid4().hex[:8]}"
        code = order_code or 500_000 + next(counter)
        if uuid is not None:
            invoice, _ = invoices_service.create_invoice_from_session(
                db_session,
                payer_id=payer,
                uuid=uuid,
                order_code=code,
                amount=Decimal(amount),
                bonus=Decimal(bonus),
                status_cache=status_cache,
            )
            return invoice
        invoice, _ = invoices_service.create_invoice(
            db_session,
            payer_id=payer,
            order_code=code,
            amount=Decimal(amount),
            bonus=Decimal(bonus),
            description=f"Invoice {code}",
            status_cache=status_cache,
        )
        return invoice

    return _factory
