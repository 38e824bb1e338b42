import time

import pytest

from app.config import get_settings
from app.models import (
    Alert,
    BookingStatus,
    EscrowAccount,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
    WebhookEvent,
    WebhookOutcome,
)
from app.services.payouts import enqueue_payment_payout


def _intent(intent_id: str, payment=None, **fields) -> dict:
    obj = {"id": intent_id, "object": "payment_intent", "currency": "usd", **fields}
    if payment is not None:
        obj["metadata"] = {"payment_id": str(payment.id)}
    return obj


@pytest.mark.anyio("asyncio")
async def test_payment_succeeded_confirms_booking_and_queues_payout(
    post_webhook, webhook_body, make_booking, make_payment, db_session
):
    booking = make_booking()
    payment = make_payment(booking, external_id="pi_hook_success")
    body = webhook_body(
        "payment_intent.succeeded",
        _intent("pi_hook_success", payment, amount_received=10000),
        event_id="evt_hook_success",
    )

    response = await post_webhook(body)

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "applied", "event_id": "evt_hook_success"}
    db_session.refresh(payment)
    db_session.refresh(booking)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.processed_at is not None
    assert booking.status == BookingStatus.CONFIRMED

    payouts = db_session.query(PayoutRecord).filter(PayoutRecord.payment_id == payment.id).all()
    assert len(payouts) == 1
    assert payouts[0].amount == 9800
    assert payouts[0].status == PayoutStatus.PENDING

    record = db_session.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_hook_success").one()
    assert record.outcome == WebhookOutcome.APPLIED
    assert record.processed_at is not None


@pytest.mark.anyio("asyncio")
async def test_redelivered_event_is_acknowledged_once(post_webhook, webhook_body, make_booking, make_payment, db_session):
    payment = make_payment(make_booking(), external_id="pi_hook_dup")
    body = webhook_body("payment_intent.succeeded", _intent("pi_hook_dup", payment), event_id="evt_hook_dup")

    first = await post_webhook(body)
    second = await post_webhook(body)

    assert first.json()["status"] == "applied"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert db_session.query(PayoutRecord).filter(PayoutRecord.payment_id == payment.id).count() == 1
    assert db_session.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_hook_dup").count() == 1


@pytest.mark.anyio("asyncio")
async def test_invalid_signature_is_rejected(post_webhook, webhook_body, signature_for, db_session):
    body = webhook_body("payment_intent.succeeded", _intent("pi_forged"), event_id="evt_forged")

    response = await post_webhook(body, signature=signature_for(body, secret="whsec_attacker"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert db_session.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_forged").count() == 0


@pytest.mark.anyio("asyncio")
async def test_missing_signature_header_is_rejected(client, webhook_body):
    body = webhook_body("payment_intent.succeeded", _intent("pi_unsigned"))

    response = await client.post("/payments/webhook", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"]["details"]["reason"] == "missing"


@pytest.mark.anyio("asyncio")
async def test_stale_signature_timestamp_is_rejected(post_webhook, webhook_body, signature_for):
    body = webhook_body("payment_intent.succeeded", _intent("pi_old"))
    old = int(time.time()) - 3600

    response = await post_webhook(body, signature=signature_for(body, timestamp=old))

    assert response.status_code == 400


@pytest.mark.anyio("asyncio")
async def test_next_secret_is_accepted_during_rotation(monkeypatch, post_webhook, webhook_body, signature_for):
    monkeypatch.setattr(get_settings(), "STRIPE_WEBHOOK_SECRET_NEXT", "whsec_test_next")
    body = webhook_body("charge.dispute.created", {"id": "dp_1"}, event_id="evt_rotated")

    response = await post_webhook(body, signature=signature_for(body, secret="whsec_test_next"))

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


@pytest.mark.anyio("asyncio")
async def test_unknown_event_type_is_recorded_and_ignored(post_webhook, webhook_body, db_session):
    body = webhook_body("customer.created", {"id": "cus_1"}, event_id="evt_unknown_type")

    response = await post_webhook(body)

    assert response.json() == {"received": True, "status": "ignored", "event_id": "evt_unknown_type"}
    record = db_session.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_unknown_type").one()
    assert record.kind == "customer.created"
    assert record.outcome == WebhookOutcome.IGNORED


@pytest.mark.anyio("asyncio")
async def test_malformed_event_is_acknowledged(post_webhook, signature_for):
    body = b'{"id": "evt_broken", "type": "payment_intent.succeeded"}'

    response = await post_webhook(body, signature=signature_for(body))

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "malformed"}


@pytest.mark.anyio("asyncio")
async def test_non_json_body_is_acknowledged_as_malformed(post_webhook, signature_for):
    body = b"not-json"

    response = await post_webhook(body, signature=signature_for(body))

    assert response.status_code == 200
    assert response.json()["status"] == "malformed"


@pytest.mark.anyio("asyncio")
async def test_event_for_unknown_payment_is_ignored(post_webhook, webhook_body):
    body = webhook_body("payment_intent.succeeded", _intent("pi_nobody"))

    response = await post_webhook(body)

    assert response.json()["status"] == "ignored"


@pytest.mark.anyio("asyncio")
async def test_metadata_match_with_other_intent_is_ignored(
    post_webhook, webhook_body, make_booking, make_payment, db_session
):
    payment = make_payment(make_booking(), external_id="pi_metadata_lookup")
    body = webhook_body("payment_intent.succeeded", _intent("pi_other_intent", payment))

    response = await post_webhook(body)

    # Intent ids disagree, so the metadata match is not trusted.
    assert response.json()["status"] == "ignored"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PROCESSING


@pytest.mark.anyio("asyncio")
async def test_requires_action_after_success_keeps_payment_completed(
    post_webhook, webhook_body, make_booking, make_payment, db_session
):
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED, external_id="pi_late_action")
    body = webhook_body("payment_intent.requires_action", _intent("pi_late_action", payment, client_secret="s"))

    response = await post_webhook(body)

    assert response.json()["status"] == "ignored"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED


@pytest.mark.anyio("asyncio")
async def test_payment_failed_records_reason(post_webhook, webhook_body, make_booking, make_payment, db_session):
    payment = make_payment(make_booking(), external_id="pi_hook_failed")
    body = webhook_body(
        "payment_intent.payment_failed",
        _intent("pi_hook_failed", payment, last_payment_error={"message": "Insufficient funds."}),
    )

    response = await post_webhook(body)

    assert response.json()["status"] == "applied"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Insufficient funds."


@pytest.mark.anyio("asyncio")
async def test_success_after_failure_raises_alert(post_webhook, webhook_body, make_booking, make_payment, db_session):
    payment = make_payment(make_booking(), status=PaymentStatus.FAILED, external_id="pi_flip_flop")
    body = webhook_body("payment_intent.succeeded", _intent("pi_flip_flop", payment))

    response = await post_webhook(body)

    assert response.json()["status"] == "ignored"
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    alert = db_session.query(Alert).filter(Alert.type == "PAYMENT_SUCCEEDED_AFTER_FAILURE").one()
    assert alert.payload_json["payment_id"] == payment.id
    assert alert.payload_json["external_transaction_id"].startswith("pi_***")


@pytest.mark.anyio("asyncio")
async def test_milestone_booking_payment_is_held_in_escrow(
    post_webhook, webhook_body, make_booking, make_payment, db_session
):
    booking = make_booking(amount=10000, milestones=[4000, 6000])
    payment = make_payment(booking, external_id="pi_escrowed")
    body = webhook_body("payment_intent.succeeded", _intent("pi_escrowed", payment))

    response = await post_webhook(body)

    assert response.json()["status"] == "applied"
    db_session.refresh(payment)
    escrow = db_session.query(EscrowAccount).filter(EscrowAccount.booking_id == booking.id).one()
    assert payment.escrow_id == escrow.id
    assert escrow.held_amount == 10000
    assert escrow.total_amount == 10000
    assert escrow.released_amount == 0
    assert db_session.query(PayoutRecord).filter(PayoutRecord.payment_id == payment.id).count() == 0


@pytest.mark.anyio("asyncio")
async def test_transfer_created_completes_payouts(post_webhook, webhook_body, make_booking, make_payment, db_session):
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)
    payout = enqueue_payment_payout(db_session, payment)
    payout.status = PayoutStatus.PROCESSING
    payout.external_transfer_id = "tr_hook_done"
    db_session.commit()
    body = webhook_body(
        "transfer.created",
        {"id": "tr_hook_done", "amount": payout.amount, "metadata": {"payout_ids": str(payout.id)}},
    )

    response = await post_webhook(body)

    assert response.json()["status"] == "applied"
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.COMPLETED
    assert payout.completed_at is not None


@pytest.mark.anyio("asyncio")
async def test_transfer_failed_schedules_retry(post_webhook, webhook_body, make_booking, make_payment, db_session):
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)
    payout = enqueue_payment_payout(db_session, payment)
    payout.status = PayoutStatus.PROCESSING
    payout.external_transfer_id = "tr_hook_failed"
    db_session.commit()
    body = webhook_body("transfer.failed", {"id": "tr_hook_failed", "failure_message": "account_closed"})

    response = await post_webhook(body)

    assert response.json()["status"] == "applied"
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PENDING
    assert payout.retry_count == 1
    assert payout.last_error == "account_closed"


@pytest.mark.anyio("asyncio")
async def test_account_updated_syncs_payout_account(post_webhook, webhook_body, make_compliant_vendor, db_session):
    account = make_compliant_vendor("vendor-sync", payouts_enabled=False)
    body = webhook_body(
        "account.updated",
        {
            "id": account.destination_account_id,
            "charges_enabled": True,
            "payouts_enabled": True,
            "details_submitted": True,
        },
    )

    response = await post_webhook(body)

    assert response.json()["status"] == "applied"
    db_session.refresh(account)
    assert account.payouts_enabled is True


@pytest.mark.anyio("asyncio")
async def test_bank_payout_failure_raises_alert(post_webhook, webhook_body, make_compliant_vendor, db_session):
    account = make_compliant_vendor("vendor-bank")
    body = webhook_body(
        "payout.failed",
        {"id": "po_hook_1", "failure_code": "account_closed"},
        account=account.destination_account_id,
    )

    response = await post_webhook(body)

    assert response.json()["status"] == "applied"
    alert = db_session.query(Alert).filter(Alert.type == "BANK_PAYOUT_FAILED").one()
    assert alert.payload_json["vendor_id"] == "vendor-bank"
    assert alert.payload_json["reason"] == "account_closed"


@pytest.mark.anyio("asyncio")
async def test_direct_payment_queues_payout_when_vendor_auto_payout_is_off(
    post_webhook, webhook_body, make_booking, make_payment, make_compliant_vendor, db_session
):
    account = make_compliant_vendor("vendor-manual-only")
    account.auto_payout_enabled = False
    db_session.commit()
    payment = make_payment(make_booking(vendor_id="vendor-manual-only"), external_id="pi_manual_only")
    body = webhook_body("payment_intent.succeeded", _intent("pi_manual_only", payment, amount_received=10000))

    response = await post_webhook(body)

    assert response.json()["status"] == "applied"
    payout = db_session.query(PayoutRecord).filter(PayoutRecord.payment_id == payment.id).one()
    assert payout.amount == 9800
    assert payout.status == PayoutStatus.PENDING


@pytest.mark.anyio("asyncio")
async def test_late_event_for_earlier_transfer_leaves_retried_payout_alone(
    post_webhook, webhook_body, make_booking, make_payment, db_session
):
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)
    payout = enqueue_payment_payout(db_session, payment)
    payout.status = PayoutStatus.PROCESSING
    payout.retry_count = 1
    payout.external_transfer_id = "tr_second_attempt"
    db_session.commit()
    metadata = {"payout_ids": str(payout.id)}

    created = await post_webhook(
        webhook_body("transfer.created", {"id": "tr_first_attempt", "amount": payout.amount, "metadata": metadata})
    )
    failed = await post_webhook(
        webhook_body("transfer.failed", {"id": "tr_first_attempt", "metadata": metadata, "failure_message": "late"})
    )

    assert created.json()["status"] == "ignored"
    assert failed.json()["status"] == "ignored"
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PROCESSING
    assert payout.external_transfer_id == "tr_second_attempt"
    assert payout.retry_count == 1
    assert payout.completed_at is None


@pytest.mark.anyio("asyncio")
async def test_completed_payout_ignores_later_transfer_events(
    post_webhook, webhook_body, make_booking, make_payment, db_session
):
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)
    payout = enqueue_payment_payout(db_session, payment)
    payout.status = PayoutStatus.PROCESSING
    payout.external_transfer_id = "tr_paid_once"
    db_session.commit()
    obj = {"id": "tr_paid_once", "amount": payout.amount, "metadata": {"payout_ids": str(payout.id)}}

    first = await post_webhook(webhook_body("transfer.created", obj, event_id="evt_paid_first"))
    db_session.refresh(payout)
    completed_at = payout.completed_at
    again = await post_webhook(webhook_body("transfer.created", obj, event_id="evt_paid_again"))
    failed = await post_webhook(
        webhook_body("transfer.failed", {**obj, "failure_message": "reversed"}, event_id="evt_paid_failed")
    )

    assert first.json()["status"] == "applied"
    assert again.json()["status"] == "ignored"
    assert failed.json()["status"] == "ignored"
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.COMPLETED
    assert payout.completed_at == completed_at
    assert payout.retry_count == 0
    assert payout.last_error is None
    assert db_session.query(Alert).filter(Alert.type == "PAYOUT_FAILED").count() == 0


@pytest.mark.anyio("asyncio")
async def test_payout_fails_after_max_transfer_failures(
    post_webhook, webhook_body, make_booking, make_payment, db_session
):
    assert get_settings().PAYOUT_MAX_RETRIES == 3
    payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)
    payout = enqueue_payment_payout(db_session, payment)
    db_session.commit()

    for attempt in range(1, 4):
        transfer_id = f"tr_attempt_{attempt}"
        payout.status = PayoutStatus.PROCESSING
        payout.external_transfer_id = transfer_id
        db_session.commit()

        response = await post_webhook(
            webhook_body("transfer.failed", {"id": transfer_id, "failure_message": f"declined {attempt}"})
        )

        assert response.json()["status"] == "applied"
        db_session.refresh(payout)
        assert payout.retry_count == attempt

    assert payout.status == PayoutStatus.FAILED
    assert payout.last_error == "declined 3"
    alert = db_session.query(Alert).filter(Alert.type == "PAYOUT_FAILED").one()
    assert alert.payload_json["payout_id"] == payout.id
    assert alert.payload_json["retry_count"] == 3


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("created", [1e300, float("inf")])
async def test_out_of_range_created_timestamp_is_acknowledged(post_webhook, webhook_body, db_session, created):
    body = webhook_body("charge.dispute.created", {"id": "dp_1"}, event_id=f"evt_far_{created}", created=created)

    response = await post_webhook(body)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    record = db_session.query(WebhookEvent).filter(WebhookEvent.event_id == f"evt_far_{created}").one()
    assert record.outcome == WebhookOutcome.IGNORED
