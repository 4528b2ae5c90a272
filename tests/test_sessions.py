"""Session admission guard and webhook record retention."""
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func, select

from paycore.models import WebhookRecord, WebhookRecordStatus
from paycore.services import invoices as invoices_service
from paycore.services import sessions as sessions_service
from paycore.utils.time import utcnow


def _open_sessions(db_session, account: str, count: int) -> list[str]:
    uuids = []
    for index in range(count):
        session_uuid = str(uuid4())
        sessions_service.register_session(
            db_session,
            account_number=account,
            uuid=session_uuid,
            order_code=700_000 + index,
            amount=Decimal("50000"),
        )
        uuids.append(session_uuid)
    return uuids


def test_extract_correlation_id():
    token = str(uuid4())
    assert sessions_service.extract_correlation_id(f"Top-up {token.upper()} thanks") == token
    assert sessions_service.extract_correlation_id("no token here") is None
    assert sessions_service.extract_correlation_id(None) is None


def test_admission_cap_and_release(db_session):
    uuids = _open_sessions(db_session, "ACC-CAP", 5)

    verdict = sessions_service.check_can_create_session(db_session, "ACC-CAP")
    assert verdict == {"can_create": False, "pending_count": 5, "max_allowed": 5}

    sessions_service.record_provider_callback(
        db_session,
        {
            "accountNumber": "ACC-CAP",
            "amount": "50000",
            "description": f"CK {uuids[0]}",
            "reference": "FT-CAP-1",
            "transactionDateTime": utcnow().isoformat(),
        },
    )

    verdict = sessions_service.check_can_create_session(db_session, "ACC-CAP")
    assert verdict == {"can_create": True, "pending_count": 4, "max_allowed": 5}


def test_register_session_is_idempotent(db_session):
    session_uuid = str(uuid4())
    first, created = sessions_service.register_session(
        db_session, account_number="ACC-IDEM", uuid=session_uuid, order_code=1, amount=Decimal("50000")
    )
    second, created_again = sessions_service.register_session(
        db_session, account_number="ACC-IDEM", uuid=session_uuid, order_code=1, amount=Decimal("50000")
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert session_uuid in first.description
    assert sessions_service.count_pending_sessions(db_session, "ACC-IDEM") == 1


def test_check_session_exists(db_session):
    session_uuid = _open_sessions(db_session, "ACC-EXISTS", 1)[0]

    assert sessions_service.check_session_exists(db_session, session_uuid) == {
        "exists": True,
        "status": "pending",
    }
    assert sessions_service.check_session_exists(db_session, str(uuid4()))["exists"] is False
    assert sessions_service.check_order_code_exists(db_session, 700_000)["exists"] is True


def test_callback_without_session_is_stored_completed(db_session):
    record = sessions_service.record_provider_callback(
        db_session,
        {
            "accountNumber": "ACC-NEW",
            "amount": 120000,
            "description": "transfer without token",
            "reference": "FT-NEW-1",
            "transactionDateTime": "2026-10-19T08:00:00Z",
            "orderCode": 99,
        },
    )

    assert record.status is WebhookRecordStatus.COMPLETED
    assert record.correlation_id is None
    assert record.order_code == 99
    assert record.amount == Decimal("120000")


def test_callback_resolves_session_by_order_code(db_session):
    _open_sessions(db_session, "ACC-ORDER", 1)
    record = sessions_service.record_provider_callback(
        db_session,
        {
            "amount": "50000",
            "description": "no token",
            "reference": "FT-ORDER",
            "transactionDateTime": "2026-10-19T08:00:00Z",
            "orderCode": 700_000,
        },
    )

    assert record.status is WebhookRecordStatus.COMPLETED
    assert record.account_number == "ACC-ORDER"
    assert sessions_service.count_pending_sessions(db_session, "ACC-ORDER") == 0


def test_expired_records_are_invisible_then_purged(db_session):
    session_uuid = _open_sessions(db_session, "ACC-TTL", 2)[0]
    later = utcnow() + timedelta(hours=25)

    assert sessions_service.check_session_exists(db_session, session_uuid, now=later)["exists"] is False
    assert sessions_service.count_pending_sessions(db_session, "ACC-TTL", now=later) == 0

    assert sessions_service.purge_expired_webhook_records(db_session, now=utcnow()) == 0
    purged = sessions_service.purge_expired_webhook_records(db_session, now=later)

    assert purged == 2
    remaining = db_session.scalar(
        select(func.count()).select_from(WebhookRecord).where(WebhookRecord.account_number == "ACC-TTL")
    )
    assert remaining == 0


def test_ledger_resolution_releases_sessions(db_session, make_invoice):
    uuids = _open_sessions(db_session, "ACC-LEDGER", 5)
    paid = make_invoice(uuid=uuids[0], order_code=700_000)
    lapsed = make_invoice(order_code=700_001)

    invoices_service.update_status(db_session, paid.order_code, "completed")
    invoices_service.update_status(db_session, lapsed.order_code, "expired")

    verdict = sessions_service.check_can_create_session(db_session, "ACC-LEDGER")
    assert verdict == {"can_create": True, "pending_count": 3, "max_allowed": 5}
    statuses = dict(
        db_session.execute(
            select(WebhookRecord.order_code, WebhookRecord.status).where(
                WebhookRecord.account_number == "ACC-LEDGER"
            )
        ).all()
    )
    assert statuses[700_000] is WebhookRecordStatus.COMPLETED
    assert statuses[700_001] is WebhookRecordStatus.EXPIRED
    assert statuses[700_002] is WebhookRecordStatus.PENDING


def test_failed_invoice_expires_its_session_once(db_session, make_invoice):
    uuids = _open_sessions(db_session, "ACC-NOOP", 1)
    invoice = make_invoice(uuid=uuids[0], order_code=700_000)
    invoices_service.update_status(db_session, invoice.order_code, "failed")

    released = sessions_service.release_session(
        db_session,
        uuid=uuids[0],
        order_code=invoice.order_code,
        resolved_status=WebhookRecordStatus.COMPLETED,
    )

    assert released == 0
    assert sessions_service.check_session_exists(db_session, uuids[0])["status"] == "expired"
