"""Provider callback intake, admission checks and payment session endpoints."""
from __future__ import annotations

import json
import os
from decimal import Decimal
from uuid import uuid4

import pytest

from paycore.models import InvoiceStatus
from paycore.schemas.webhook import ProviderWebhookData
from paycore.services import accounts as accounts_service
from paycore.services import invoices as invoices_service
from paycore.services import provider_webhooks
from paycore.services import sessions as sessions_service
from paycore.services.status_cache import StatusEntry
from paycore.services.webhook_security import RateLimiter, RequestDeduplicator, compute_signature


def _callback(session_uuid: str | None, *, order_code: int | None, amount: int = 50000, reference: str = "FT001") -> dict:
    description = f"CK {session_uuid}" if session_uuid else "plain transfer"
    data = {
        "accountNumber": "0123456789",
        "amount": amount,
        "description": description,
        "reference": reference,
        "transactionDateTime": "2026-10-19T08:00:00Z",
    }
    if order_code is not None:
        data["orderCode"] = order_code
    return {"code": "00", "desc": "success", "data": data}


async def _open_session(client, *, account: str = "ACC-API", session_uuid: str | None = None, order_code: int = 8001):
    return await client.post(
        "/payment-sessions",
        json={
            "payer_id": "payer-api",
            "account_number": account,
            "uuid": session_uuid or str(uuid4()),
            "order_code": order_code,
            "amount": "50000",
        },
    )


@pytest.mark.anyio
async def test_callback_with_bad_signature_is_rejected(client, signed):
    body, headers = signed(_callback(str(uuid4()), order_code=1))
    headers["X-Signature"] = "0" * 64

    response = await client.post("/webhooks/provider", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"


@pytest.mark.anyio
async def test_callback_without_signature_is_rejected(client):
    response = await client.post("/webhooks/provider", json=_callback(None, order_code=1))
    assert response.status_code == 401


@pytest.mark.anyio
async def test_callback_body_must_be_json(client):
    body = b"not-json"
    headers = {
        "Content-Type": "application/json",
        "X-Signature": compute_signature(body, os.environ["PSP_WEBHOOK_SECRET"]),
    }
    response = await client.post("/webhooks/provider", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_PAYLOAD_INVALID"


@pytest.mark.anyio
async def test_callback_missing_fields(client, signed):
    body, headers = signed({"data": {"amount": 1000}})

    response = await client.post("/webhooks/provider", content=body, headers=headers)

    assert response.status_code == 400
    assert "reference" in response.json()["error"]["details"]["errors"]


@pytest.mark.anyio
async def test_callback_completes_invoice_once(client, signed, db_session, status_cache):
    session_uuid = str(uuid4())
    opened = await _open_session(client, session_uuid=session_uuid, order_code=8101)
    assert opened.status_code == 201

    body, headers = signed(_callback(session_uuid, order_code=8101, reference="FT-ONCE"))
    first = await client.post("/webhooks/provider", content=body, headers=headers)
    second = await client.post("/webhooks/provider", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {
        "processed": True,
        "duplicate": False,
        "reason": None,
        "order_code": 8101,
        "uuid": session_uuid,
        "status": "completed",
    }
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["status"] == "completed"
    assert accounts_service.get_balance(db_session, "payer-api") == Decimal("50000")
    assert status_cache.get(session_uuid).status == "completed"


@pytest.mark.anyio
async def test_redelivery_after_dedup_window_does_not_double_credit(client, signed, db_session, services):
    session_uuid = str(uuid4())
    await _open_session(client, session_uuid=session_uuid, order_code=8102)
    body, headers = signed(_callback(session_uuid, order_code=8102, reference="FT-LATE"))

    await client.post("/webhooks/provider", content=body, headers=headers)
    # Simulates a redelivery arriving after the dedup TTL.
    services.deduplicator = RequestDeduplicator(ttl_seconds=60)
    late = await client.post("/webhooks/provider", content=body, headers=headers)

    assert late.json()["duplicate"] is False
    assert late.json()["status"] == "completed"
    assert accounts_service.get_balance(db_session, "payer-api") == Decimal("50000")


@pytest.mark.anyio
async def test_delivery_racing_an_in_flight_one_is_not_processed(client, signed, db_session, services):
    session_uuid = str(uuid4())
    await _open_session(client, session_uuid=session_uuid, order_code=8104)
    body, headers = signed(_callback(session_uuid, order_code=8104, reference="FT-RACE"))
    # Another worker holds the token and has not recorded a result yet.
    assert services.deduplicator.claim("FT-RACE")

    response = await client.post("/webhooks/provider", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    assert response.json()["processed"] is False
    assert response.json()["reason"] == "IN_PROGRESS"
    invoice = invoices_service.get_invoice(db_session, order_code=8104)
    db_session.refresh(invoice)
    assert invoice.status is InvoiceStatus.PENDING
    assert accounts_service.get_balance(db_session, "payer-api") == Decimal("0")


def test_failed_processing_releases_the_claim(db_session, monkeypatch):
    deduplicator = RequestDeduplicator(ttl_seconds=60)
    payload = ProviderWebhookData.from_body(_callback(None, order_code=8105, reference="FT-BOOM"))

    def broken_record(db, data):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(sessions_service, "record_provider_callback", broken_record)
    with pytest.raises(RuntimeError):
        provider_webhooks.process_provider_callback(db_session, payload, deduplicator=deduplicator)

    assert deduplicator.claim("FT-BOOM")


@pytest.mark.anyio
async def test_underpaid_callback_fails_invoice(client, signed, db_session):
    session_uuid = str(uuid4())
    await _open_session(client, session_uuid=session_uuid, order_code=8103)

    body, headers = signed(_callback(session_uuid, order_code=8103, amount=20000, reference="FT-SHORT"))
    response = await client.post("/webhooks/provider", content=body, headers=headers)

    assert response.json()["status"] == InvoiceStatus.FAILED.value
    assert accounts_service.get_balance(db_session, "payer-api") == Decimal("0")


@pytest.mark.anyio
async def test_callback_for_unknown_invoice_is_acknowledged(client, signed):
    body, headers = signed(_callback(None, order_code=99999, reference="FT-UNKNOWN"))

    response = await client.post("/webhooks/provider", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["processed"] is False
    assert response.json()["reason"] == "INVOICE_NOT_FOUND"


@pytest.mark.anyio
async def test_callback_rate_limited(client, services):
    services.rate_limiter = RateLimiter(max_tokens=1, refill_rate=0)

    first = await client.post("/webhooks/provider", json=_callback(None, order_code=1))
    second = await client.post("/webhooks/provider", json=_callback(None, order_code=1))

    assert first.status_code == 401
    assert second.status_code == 429
    assert second.json()["error"]["code"] == "RATE_LIMITED"


@pytest.mark.anyio
async def test_payment_session_limit(client):
    for index in range(5):
        response = await _open_session(client, account="ACC-LIMIT", order_code=8200 + index)
        assert response.status_code == 201

    refused = await _open_session(client, account="ACC-LIMIT", order_code=8299)
    assert refused.status_code == 429
    assert refused.json()["error"]["code"] == "SESSION_LIMIT_REACHED"

    check = await client.get("/webhooks/check-session-limit", params={"accountNumber": "ACC-LIMIT"})
    assert check.json() == {"canCreate": False, "pendingCount": 5, "maxAllowed": 5}


@pytest.mark.anyio
async def test_payment_session_resume_does_not_consume_quota(client):
    session_uuid = str(uuid4())
    first = await _open_session(client, account="ACC-RESUME", session_uuid=session_uuid, order_code=8301)
    again = await _open_session(client, account="ACC-RESUME", session_uuid=session_uuid, order_code=8302)

    assert first.status_code == 201
    assert again.status_code == 200
    body = again.json()
    assert body["created"] is False
    assert body["invoice"]["order_code"] == 8301
    assert body["pending_count"] == 1


@pytest.mark.anyio
async def test_check_session_by_uuid_and_order_code(client):
    session_uuid = str(uuid4())
    await _open_session(client, session_uuid=session_uuid, order_code=8401)

    by_uuid = await client.get("/webhooks/check-session-limit", params={"uuid": session_uuid})
    by_code = await client.get("/webhooks/check-session-limit", params={"orderCode": 8401})
    missing = await client.get("/webhooks/check-session-limit", params={"uuid": str(uuid4())})

    assert by_uuid.json() == {"exists": True, "status": "pending"}
    assert by_code.json() == {"exists": True, "status": "pending"}
    assert missing.json() == {"exists": False, "status": None}


@pytest.mark.anyio
async def test_check_session_requires_a_parameter(client):
    response = await client.get("/webhooks/check-session-limit")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_PARAMETER"


@pytest.mark.anyio
async def test_stream_requires_a_key(client):
    response = await client.get("/webhooks/stream")
    assert response.status_code == 400


@pytest.mark.anyio
async def test_stream_warms_cache_from_ledger(client, db_session, services):
    invoice, _ = invoices_service.create_invoice(
        db_session, payer_id="payer-warm", order_code=8501, amount="50000", description="warm"
    )
    invoices_service.update_status(db_session, invoice.order_code, "completed")
    assert services.status_cache.get(str(invoice.order_code)) is None

    response = await client.get("/webhooks/stream", params={"orderCode": invoice.order_code})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [line for line in response.text.split("\n\n") if line.startswith("data: ")]
    assert len(frames) == 1
    event = json.loads(frames[0][len("data: "):])
    assert event["status"] == "completed"
    assert event["cached"] is True


@pytest.mark.anyio
async def test_stream_warmup_keeps_status_published_during_ledger_read(client, db_session, services, monkeypatch):
    invoice, _ = invoices_service.create_invoice(
        db_session, payer_id="payer-race", order_code=8601, amount="50000", description="race"
    )
    key = str(invoice.order_code)
    read_invoice = invoices_service.get_invoice

    def read_then_resolved_elsewhere(db, **kwargs):
        found = read_invoice(db, **kwargs)
        # A worker thread publishes the terminal status after the ledger read.
        services.status_cache.set(key, StatusEntry(status="completed", order_code=invoice.order_code))
        return found

    monkeypatch.setattr(invoices_service, "get_invoice", read_then_resolved_elsewhere)

    response = await client.get("/webhooks/stream", params={"orderCode": invoice.order_code})

    frames = [line for line in response.text.split("\n\n") if line.startswith("data: ")]
    assert len(frames) == 1
    assert json.loads(frames[0][len("data: "):])["status"] == "completed"
    assert services.status_cache.get(key).status == "completed"
