from datetime import timedelta
from decimal import Decimal

import pytest

from app.models import AuditLog, BookingStatus, PaymentRecord, PaymentStatus, PayoutRecord, PayoutStatus
from app.services.payment_state import EXPIRED_REASON
from app.services.payouts import enqueue_payment_payout
from app.utils.errors import ProcessorError, ProcessorUnavailable
from app.utils.time import utcnow


async def _create(client, booking, *, key="pay-key-1", amount=None, currency="USD", headers=None):
    return await client.post(
        "/payments",
        json={"booking_id": booking.id, "amount": amount or booking.amount, "currency": currency},
        headers={"Idempotency-Key": key, **(headers or {})},
    )


def _payment_by_key(db_session, key: str) -> PaymentRecord:
    return db_session.query(PaymentRecord).filter(PaymentRecord.idempotency_key == key).one()


@pytest.mark.anyio("asyncio")
async def test_create_payment_applies_commission_and_marks_booking_pending(client, make_booking, db_session, processor):
    booking = make_booking(category="VENUE", amount=10000)

    response = await _create(client, booking, currency="usd", headers={"X-Actor": "organizer:org-1"})

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["status"] == "PROCESSING"
    assert data["fee_amount"] == 200
    assert data["net_amount"] == 9800
    assert data["currency"] == "USD"
    assert Decimal(str(data["applied_rate"])) == Decimal("0.02")
    assert data["external_transaction_id"] == "pi_test_1"
    assert processor.intent_calls == 1

    db_session.refresh(booking)
    assert booking.status == BookingStatus.PAYMENT_PENDING

    created = (
        db_session.query(AuditLog)
        .filter(AuditLog.action == "PAYMENT_CREATED", AuditLog.entity_id == data["id"])
        .one()
    )
    assert created.actor == "organizer:org-1"
    assert created.data_json["fee_amount"] == 200


@pytest.mark.anyio("asyncio")
async def test_replaying_idempotency_key_returns_same_payment(client, make_booking, db_session, processor):
    booking = make_booking()

    first = await _create(client, booking, key="replay-key")
    second = await _create(client, booking, key="replay-key")

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.json()["data"]["id"] == first.json()["data"]["id"]
    assert processor.intent_calls == 1
    assert db_session.query(PaymentRecord).filter(PaymentRecord.idempotency_key == "replay-key").count() == 1


@pytest.mark.anyio("asyncio")
async def test_create_payment_requires_idempotency_key(client, make_booking):
    booking = make_booking()

    response = await client.post(
        "/payments",
        json={"booking_id": booking.id, "amount": 10000, "currency": "USD"},
        headers={"Idempotency-Key": "   "},
    )

    assert response.status_code == 400
    payload = response.json()
    assert payload["success"] is False
    assert payload["error"]["code"] == "IDEMPOTENCY_KEY_REQUIRED"
    assert "timestamp" in payload["error"]


@pytest.mark.anyio("asyncio")
async def test_create_payment_rejects_unsupported_currency(client, make_booking):
    booking = make_booking()

    response = await _create(client, booking, key="jpy-key", currency="JPY")

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "UNSUPPORTED_CURRENCY"


@pytest.mark.anyio("asyncio")
async def test_create_payment_rejects_non_positive_amount(client, make_booking):
    booking = make_booking()

    response = await client.post(
        "/payments",
        json={"booking_id": booking.id, "amount": 0, "currency": "USD"},
        headers={"Idempotency-Key": "zero-key"},
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_AMOUNT"


@pytest.mark.anyio("asyncio")
async def test_create_payment_for_unknown_booking(client):
    response = await client.post(
        "/payments",
        json={"booking_id": 987654, "amount": 10000, "currency": "USD"},
        headers={"Idempotency-Key": "missing-booking"},
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "BOOKING_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_processor_rejection_fails_payment(client, make_booking, db_session, processor):
    booking = make_booking()
    processor.create_error = ProcessorError("Your card was declined.")

    response = await _create(client, booking, key="declined-key")

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "PROCESSOR_ERROR"
    payment = _payment_by_key(db_session, "declined-key")
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Your card was declined."
    db_session.refresh(booking)
    assert booking.status == BookingStatus.QUOTE_SENT


@pytest.mark.anyio("asyncio")
async def test_processor_timeout_leaves_payment_pending_until_retry(client, make_booking, db_session, processor):
    booking = make_booking()
    processor.create_error = ProcessorUnavailable()

    response = await _create(client, booking, key="timeout-key")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "PROCESSOR_UNAVAILABLE"
    payment = _payment_by_key(db_session, "timeout-key")
    assert payment.status == PaymentStatus.PENDING
    assert payment.external_transaction_id is None

    processor.create_error = None
    retry = await _create(client, booking, key="timeout-key")

    assert retry.status_code == 201
    assert retry.json()["data"]["id"] == payment.id
    assert retry.json()["data"]["status"] == "PROCESSING"


@pytest.mark.anyio("asyncio")
async def test_payment_requiring_action_can_be_resumed(client, make_booking, processor):
    booking = make_booking()
    processor.intent_status = "requires_action"

    created = await _create(client, booking, key="sca-key")

    data = created.json()["data"]
    assert data["status"] == "REQUIRES_ACTION"
    assert data["client_secret"] == "pi_test_1_secret"
    assert data["requires_action_at"] is not None

    resumed = await client.post(f"/payments/{data['id']}/resume")

    assert resumed.status_code == 200
    assert resumed.json()["data"]["status"] == "PROCESSING"


@pytest.mark.anyio("asyncio")
async def test_resume_after_expiry_fails_payment(client, make_booking, db_session, processor):
    booking = make_booking()
    processor.intent_status = "requires_action"
    created = await _create(client, booking, key="expired-key")
    payment = _payment_by_key(db_session, "expired-key")
    payment.requires_action_at = utcnow() - timedelta(minutes=31)
    db_session.commit()

    response = await client.post(f"/payments/{created.json()['data']['id']}/resume")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "PAYMENT_EXPIRED"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == EXPIRED_REASON
    db_session.refresh(booking)
    assert booking.status == BookingStatus.QUOTE_SENT


@pytest.mark.anyio("asyncio")
async def test_resume_rejects_settled_payment(client, make_booking, make_payment):
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)

    response = await client.post(f"/payments/{payment.id}/resume")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_TRANSITION"


@pytest.mark.anyio("asyncio")
async def test_partial_refund_shrinks_pending_payout(client, make_booking, make_payment, db_session, processor):
    booking = make_booking(status=BookingStatus.CONFIRMED)
    payment = make_payment(booking, status=PaymentStatus.COMPLETED)
    payout = enqueue_payment_payout(db_session, payment)
    db_session.commit()
    assert payout.amount == 9800

    response = await client.post(f"/payments/{payment.id}/refund", json={"amount": 4000, "reason": "guest count"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "REFUNDED"
    assert data["refunded_amount"] == 4000
    assert processor.refunds == [
        {
            "intent_id": payment.external_transaction_id,
            "amount": 4000,
            "idempotency_key": f"refund:{payment.id}:4000",
        }
    ]
    db_session.refresh(payout)
    # 6000 left; VENUE rate at 6000 is 2.5% -> fee 150.
    assert payout.amount == 5850
    db_session.refresh(booking)
    assert booking.status == BookingStatus.CONFIRMED


@pytest.mark.anyio("asyncio")
async def test_full_refund_cancels_booking_and_payout(client, make_booking, make_payment, db_session, processor):
    booking = make_booking(status=BookingStatus.CONFIRMED)
    payment = make_payment(booking, status=PaymentStatus.COMPLETED)
    payout = enqueue_payment_payout(db_session, payment)
    db_session.commit()

    response = await client.post(f"/payments/{payment.id}/refund", json={})

    assert response.status_code == 200
    assert response.json()["data"]["refunded_amount"] == 10000
    db_session.refresh(booking)
    db_session.refresh(payout)
    assert booking.status == BookingStatus.CANCELLED
    assert payout.status == PayoutStatus.CANCELLED


@pytest.mark.anyio("asyncio")
async def test_refund_cannot_exceed_refundable(client, make_booking, make_payment, processor):
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)

    response = await client.post(f"/payments/{payment.id}/refund", json={"amount": 10001})

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "REFUND_EXCEEDS_REFUNDABLE"
    assert processor.refunds == []


@pytest.mark.anyio("asyncio")
async def test_refund_rejects_unsettled_payment(client, make_booking, make_payment, processor):
    payment = make_payment(make_booking(), status=PaymentStatus.PROCESSING)

    response = await client.post(f"/payments/{payment.id}/refund", json={"amount": 100})

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_TRANSITION"


@pytest.mark.anyio("asyncio")
async def test_read_unknown_payment(client):
    response = await client.get("/payments/424242")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "PAYMENT_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_payment_history_by_party(client, make_booking, make_payment):
    first = make_booking(organizer_id="org-history", vendor_id="vendor-a")
    second = make_booking(organizer_id="org-history", vendor_id="vendor-b")
    other = make_booking(organizer_id="org-other", vendor_id="vendor-a")
    for booking in (first, second, other):
        make_payment(booking, status=PaymentStatus.COMPLETED)

    organizer = await client.get("/payments/history", params={"party_id": "org-history", "role": "ORGANIZER"})
    vendor = await client.get("/payments/history", params={"party_id": "vendor-a", "role": "VENDOR"})

    assert organizer.status_code == 200
    assert {item["booking_id"] for item in organizer.json()["data"]} == {first.id, second.id}
    assert {item["booking_id"] for item in vendor.json()["data"]} == {first.id, other.id}


@pytest.mark.anyio("asyncio")
async def test_payment_history_rejects_unknown_role(client):
    response = await client.get("/payments/history", params={"party_id": "org-1", "role": "ADMIN"})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.anyio("asyncio")
async def test_booking_invoice_summarises_charges(client, make_booking, make_payment):
    booking = make_booking(amount=10000, status=BookingStatus.CONFIRMED)
    make_payment(booking, status=PaymentStatus.COMPLETED)
    make_payment(booking, amount=500, status=PaymentStatus.FAILED)

    response = await client.get(f"/payments/invoice/{booking.id}")

    assert response.status_code == 200
    invoice = response.json()["data"]
    assert invoice["amount_paid"] == 10000
    assert invoice["platform_fee"] == 200
    assert invoice["vendor_net"] == 9800
    assert invoice["balance_due"] == 0
    assert invoice["escrow"] is None
    assert len(invoice["payments"]) == 2
    assert invoice["booking_status"] == "CONFIRMED"
