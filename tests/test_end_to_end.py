"""Invoice creation through live status delivery and the terminal guard."""
import asyncio
import json
from decimal import Decimal
from uuid import uuid4

import pytest


def _events(body: str) -> list[dict]:
    return [
        json.loads(frame[len("data: "):])
        for frame in body.split("\n\n")
        if frame.startswith("data: ")
    ]


@pytest.mark.anyio
async def test_invoice_status_stream_end_to_end(client, auth_headers, status_cache):
    session_uuid = str(uuid4())
    created = await client.post(
        "/invoices/from-session",
        json={
            "payer_id": "payer-e2e",
            "uuid": session_uuid,
            "order_code": 1001,
            "amount": "50000",
            "bonus": "0",
        },
    )
    assert created.status_code == 201
    assert created.json()["status"] == "pending"
    assert Decimal(created.json()["total_amount"]) == Decimal("50000")

    stream_task = asyncio.create_task(client.get("/webhooks/stream", params={"uuid": session_uuid}))
    for _ in range(500):
        if status_cache.subscriber_count(session_uuid) >= 1:
            break
        await asyncio.sleep(0.01)
    else:
        stream_task.cancel()
        pytest.fail("status stream never subscribed")

    completed = await client.patch(
        "/invoices", json={"order_code": 1001, "status": "completed"}, headers=auth_headers
    )
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    stream = await asyncio.wait_for(stream_task, timeout=5)
    assert stream.status_code == 200
    events = _events(stream.text)
    assert events[0]["status"] == "pending"
    assert events[0]["cached"] is True
    assert [event["status"] for event in events[1:]] == ["completed"]
    assert events[1]["orderCode"] == 1001
    assert events[1]["uuid"] == session_uuid
    assert status_cache.subscriber_count(session_uuid) == 0

    late_failure = await client.patch(
        "/invoices", json={"order_code": 1001, "status": "failed"}, headers=auth_headers
    )
    assert late_failure.status_code == 200
    assert late_failure.json()["status"] == "completed"

    fetched = await client.get("/invoices/1001")
    assert fetched.json()["status"] == "completed"
