from datetime import timedelta

import pytest

from app.config import Settings
from app.models import Alert, PaymentStatus, PayoutRecord, PayoutStatus
from app.services.locks import try_acquire_lock, vendor_lock_name
from app.services.payouts import (
    enqueue_payment_payout,
    process_vendor_payouts,
    remaining_entitlement,
    request_manual_payout,
    run_payout_cycle,
)
from app.utils.errors import ProcessorError, ProcessorUnavailable
from app.utils.time import utcnow


@pytest.fixture
def queued_payout(make_booking, make_payment, db_session):
    def _factory(vendor_id: str, *, amount: int = 10000, category: str = "VENUE") -> PayoutRecord:
        booking = make_booking(vendor_id=vendor_id, amount=amount, category=category)
        payment = make_payment(booking, status=PaymentStatus.COMPLETED)
        payout = enqueue_payment_payout(db_session, payment)
        db_session.commit()
        return payout

    return _factory


def _after_delay():
    return utcnow() + timedelta(days=8)


def test_payout_waits_for_delay_window(queued_payout, processor, db_session):
    queued_payout("vendor-early")

    assert run_payout_cycle(db_session, processor, now=utcnow()) == {}
    assert processor.transfers == []


def test_cycle_transfers_compliant_vendor_balance(queued_payout, make_compliant_vendor, processor, db_session):
    account = make_compliant_vendor("vendor-ready")
    payout = queued_payout("vendor-ready")

    outcomes = run_payout_cycle(db_session, processor, now=_after_delay())

    assert outcomes == {"vendor-ready": "initiated"}
    assert len(processor.transfers) == 1
    transfer = processor.transfers[0]
    assert transfer["amount"] == 9800
    assert transfer["currency"] == "USD"
    assert transfer["destination"] == account.destination_account_id
    assert transfer["metadata"]["payout_ids"] == str(payout.id)
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PROCESSING
    assert payout.external_transfer_id == "tr_test_1"


def test_multiple_payouts_are_batched_into_one_transfer(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-batch")
    first = queued_payout("vendor-batch")
    second = queued_payout("vendor-batch", amount=6000)

    run_payout_cycle(db_session, processor, now=_after_delay())

    assert [transfer["amount"] for transfer in processor.transfers] == [first.amount + second.amount]
    assert processor.transfers[0]["metadata"]["payout_ids"] == f"{first.id},{second.id}"


def test_non_compliant_vendor_is_held_until_documents_arrive(
    queued_payout, make_compliant_vendor, processor, db_session
):
    payout = queued_payout("vendor-missing-docs")

    assert run_payout_cycle(db_session, processor, now=_after_delay()) == {"vendor-missing-docs": "held"}
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.HELD
    assert payout.held_reason.startswith("compliance_missing:")
    assert "BUSINESS_LICENSE" in payout.held_reason
    assert processor.transfers == []

    make_compliant_vendor("vendor-missing-docs")

    assert run_payout_cycle(db_session, processor, now=_after_delay()) == {"vendor-missing-docs": "initiated"}
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PROCESSING
    assert payout.held_reason is None


def test_account_without_payouts_enabled_is_held(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-onboarding", payouts_enabled=False)
    payout = queued_payout("vendor-onboarding")

    run_payout_cycle(db_session, processor, now=_after_delay())

    db_session.refresh(payout)
    assert payout.status == PayoutStatus.HELD
    assert payout.held_reason == "payout_account_not_ready"


def test_balance_below_minimum_waits_for_manual_request(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-small")
    # 3000 at the VENUE 3% tier -> fee 90, net 2910 below the 5000 minimum.
    payout = queued_payout("vendor-small", amount=3000)
    assert payout.amount == 2910

    assert run_payout_cycle(db_session, processor, now=_after_delay()) == {"vendor-small": "below_minimum"}
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PENDING

    payout.manual_requested = True
    db_session.commit()

    assert run_payout_cycle(db_session, processor, now=_after_delay()) == {"vendor-small": "initiated"}
    assert processor.transfers[0]["amount"] == 2910


def test_auto_payout_disabled_waits_for_manual_request(queued_payout, make_compliant_vendor, processor, db_session):
    account = make_compliant_vendor("vendor-manual")
    account.auto_payout_enabled = False
    db_session.commit()
    payout = queued_payout("vendor-manual")

    assert run_payout_cycle(db_session, processor, now=_after_delay()) == {"vendor-manual": "held"}
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.HELD
    assert payout.held_reason == "auto_payout_disabled"

    request_manual_payout(db_session, payout.id)

    assert run_payout_cycle(db_session, processor, now=_after_delay()) == {"vendor-manual": "initiated"}
    assert [transfer["amount"] for transfer in processor.transfers] == [9800]
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PROCESSING
    assert payout.held_reason is None


def test_platform_auto_payout_switch_only_stops_automatic_transfers(
    queued_payout, make_compliant_vendor, processor, db_session
):
    make_compliant_vendor("vendor-switch")
    payout = queued_payout("vendor-switch")
    settings = Settings(AUTO_PAYOUT_ENABLED=False)

    assert run_payout_cycle(db_session, processor, now=_after_delay(), settings=settings) == {"vendor-switch": "held"}

    request_manual_payout(db_session, payout.id)

    assert run_payout_cycle(db_session, processor, now=_after_delay(), settings=settings) == {
        "vendor-switch": "initiated"
    }


def test_vendor_minimum_overrides_platform_minimum(queued_payout, make_compliant_vendor, processor, db_session):
    account = make_compliant_vendor("vendor-low-minimum")
    account.minimum_payout_amount = 1000
    db_session.commit()
    queued_payout("vendor-low-minimum", amount=3000)

    assert run_payout_cycle(db_session, processor, now=_after_delay()) == {"vendor-low-minimum": "initiated"}


def test_transfer_failures_stop_after_max_retries(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-flaky")
    payout = queued_payout("vendor-flaky")
    processor.transfer_error = ProcessorError("No such destination")
    now = _after_delay()

    for attempt in range(1, 4):
        outcome = process_vendor_payouts(db_session, processor, "vendor-flaky", now=now)
        assert outcome == "rejected"
        db_session.refresh(payout)
        assert payout.retry_count == attempt
        now += timedelta(hours=7)

    assert payout.status == PayoutStatus.FAILED
    assert payout.last_error == "No such destination"
    alert = db_session.query(Alert).filter(Alert.type == "PAYOUT_FAILED").one()
    assert alert.payload_json["payout_id"] == payout.id
    assert alert.payload_json["retry_count"] == 3

    # A failed payout is never picked up again.
    assert process_vendor_payouts(db_session, processor, "vendor-flaky", now=now) == "nothing_due"


def test_failed_attempt_backs_off(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-backoff")
    payout = queued_payout("vendor-backoff")
    processor.transfer_error = ProcessorError("declined")
    now = _after_delay()

    process_vendor_payouts(db_session, processor, "vendor-backoff", now=now)

    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PENDING
    assert process_vendor_payouts(db_session, processor, "vendor-backoff", now=now + timedelta(seconds=60)) == (
        "nothing_due"
    )


def test_processor_outage_leaves_payouts_untouched(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-outage")
    payout = queued_payout("vendor-outage")
    processor.transfer_error = ProcessorUnavailable()

    assert process_vendor_payouts(db_session, processor, "vendor-outage", now=_after_delay()) == "unavailable"
    db_session.refresh(payout)
    assert payout.status == PayoutStatus.PENDING
    assert payout.retry_count == 0


def test_vendor_with_transfer_in_flight_is_skipped(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-in-flight")
    queued_payout("vendor-in-flight")
    run_payout_cycle(db_session, processor, now=_after_delay())
    queued_payout("vendor-in-flight")

    assert process_vendor_payouts(db_session, processor, "vendor-in-flight", now=_after_delay()) == "in_flight"
    assert len(processor.transfers) == 1


def test_vendor_lease_held_elsewhere_skips_vendor(queued_payout, make_compliant_vendor, processor, db_session):
    make_compliant_vendor("vendor-leased")
    queued_payout("vendor-leased")
    assert try_acquire_lock(vendor_lock_name("vendor-leased"), owner="other-runner", db_session=db_session)

    assert process_vendor_payouts(db_session, processor, "vendor-leased", now=_after_delay()) == "locked"
    assert processor.transfers == []


def test_payout_never_exceeds_entitlement(queued_payout, db_session):
    payout = queued_payout("vendor-capped")

    assert remaining_entitlement(db_session, payout.payment) == 0
    assert enqueue_payment_payout(db_session, payout.payment).id == payout.id


@pytest.mark.anyio("asyncio")
async def test_setup_payout_account(client):
    response = await client.post(
        "/payouts/setup",
        json={"vendor_id": "vendor-setup", "destination_account_id": "acct_setup_1", "minimum_payout_amount": 2500},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["vendor_id"] == "vendor-setup"
    assert data["minimum_payout_amount"] == 2500
    assert data["payouts_enabled"] is False

    updated = await client.post(
        "/payouts/setup",
        json={"vendor_id": "vendor-setup", "destination_account_id": "acct_setup_2", "auto_payout_enabled": False},
    )

    assert updated.json()["data"]["id"] == data["id"]
    assert updated.json()["data"]["destination_account_id"] == "acct_setup_2"
    assert updated.json()["data"]["auto_payout_enabled"] is False


@pytest.mark.anyio("asyncio")
async def test_setup_rejects_negative_minimum(client):
    response = await client.post(
        "/payouts/setup",
        json={"vendor_id": "vendor-neg", "destination_account_id": "acct_neg", "minimum_payout_amount": -1},
    )

    assert response.status_code == 422


@pytest.mark.anyio("asyncio")
async def test_list_and_request_payouts(client, queued_payout):
    payout = queued_payout("vendor-list")

    listed = await client.get("/payouts", params={"vendor_id": "vendor-list", "status": "PENDING"})
    requested = await client.post(f"/payouts/{payout.id}/request")

    assert [item["id"] for item in listed.json()["data"]] == [payout.id]
    assert requested.status_code == 200
    assert requested.json()["data"]["manual_requested"] is True


@pytest.mark.anyio("asyncio")
async def test_request_rejects_settled_or_unknown_payout(client, queued_payout, db_session):
    payout = queued_payout("vendor-settled")
    payout.status = PayoutStatus.COMPLETED
    db_session.commit()

    settled = await client.post(f"/payouts/{payout.id}/request")
    missing = await client.post("/payouts/999999/request")

    assert settled.status_code == 409
    assert settled.json()["error"]["code"] == "PAYOUT_NOT_REQUESTABLE"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "PAYOUT_NOT_FOUND"
