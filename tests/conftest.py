"""Test configuration."""
import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./marketplace_test.db")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_primary")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from app.main import app  # noqa: E402
from app.db import get_db  # noqa: E402
from app.models import (  # noqa: E402
    Booking,
    BookingStatus,
    DocumentStatus,
    Milestone,
    PaymentRecord,
    PaymentStatus,
    VendorDocument,
    VendorPayoutAccount,
)
from app.services.commission import calculate_fee  # noqa: E402
from app.services.compliance import requirements_for  # noqa: E402
from app.services.psp_stripe import IntentResult, RefundResult, TransferResult, get_processor  # noqa: E402
from app.utils.time import utcnow  # noqa: E402

DB_PATH = Path("./marketplace_test.db")


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
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)

_run_migrations()


class FakeProcessor:
    """In-memory stand-in for the Stripe client."""

    def __init__(self) -> None:
        self.intent_status = "processing"
        self.retrieve_status = "requires_action"
        self.create_error: Exception | None = None
        self.transfer_error: Exception | None = None
        self.intents: dict[str, IntentResult] = {}
        self.refunds: list[dict] = []
        self.transfers: list[dict] = []
        self.cancelled: list[str] = []
        self.intent_calls = 0

    def create_payment_intent(self, *, amount, currency, idempotency_key, metadata):
        self.intent_calls += 1
        if self.create_error is not None:
            raise self.create_error
        if idempotency_key not in self.intents:
            number = len(self.intents) + 1
            self.intents[idempotency_key] = IntentResult(
                id=f"pi_test_{number}",
                status=self.intent_status,
                client_secret=f"pi_test_{number}_secret",
            )
        return self.intents[idempotency_key]

    def retrieve_payment_intent(self, intent_id):
        return IntentResult(id=intent_id, status=self.retrieve_status)

    def cancel_payment_intent(self, intent_id):
        self.cancelled.append(intent_id)
        return IntentResult(id=intent_id, status="canceled")

    def create_refund(self, *, intent_id, amount, idempotency_key):
        self.refunds.append({"intent_id": intent_id, "amount": amount, "idempotency_key": idempotency_key})
        return RefundResult(id=f"re_test_{len(self.refunds)}", amount=amount, status="succeeded")

    def create_transfer(self, *, amount, currency, destination, idempotency_key, metadata):
        if self.transfer_error is not None:
            raise self.transfer_error
        self.transfers.append(
            {
                "amount": amount,
                "currency": currency,
                "destination": destination,
                "idempotency_key": idempotency_key,
                "metadata": metadata,
            }
        )
        return TransferResult(id=f"tr_test_{len(self.transfers)}", amount=amount)


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


@pytest.fixture
def processor() -> Iterator[FakeProcessor]:
    fake = FakeProcessor()
    app.dependency_overrides[get_processor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_processor, None)


@pytest.fixture
async def client(processor: FakeProcessor) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_booking(db_session: Session) -> Callable[..., Booking]:
    def _factory(
        *,
        category: str = "VENUE",
        amount: int = 10000,
        currency: str = "USD",
        vendor_id: str | None = None,
        organizer_id: str | None = None,
        status: BookingStatus = BookingStatus.QUOTE_SENT,
        milestones: list[int] | None = None,
        payout_delay_days: int | None = None,
    ) -> Booking:
        booking = Booking(
            organizer_id=organizer_id or f"org-{uuid4().hex[:8]}",
            vendor_id=vendor_id or f"vendor-{uuid4().hex[:8]}",
            category=category,
            amount=amount,
            currency=currency,
            status=status,
            payout_delay_days=payout_delay_days,
        )
        for idx, milestone_amount in enumerate(milestones or [], start=1):
            booking.milestones.append(Milestone(idx=idx, label=f"Milestone {idx}", amount=milestone_amount))
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking

    return _factory


@pytest.fixture
def make_payment(db_session: Session) -> Callable[..., PaymentRecord]:
    """Insert a payment directly, bypassing the processor call."""

    def _factory(
        booking: Booking,
        *,
        amount: int | None = None,
        status: PaymentStatus = PaymentStatus.PROCESSING,
        fee_amount: int | None = None,
        milestone_id: int | None = None,
        external_id: str | None = None,
    ) -> PaymentRecord:
        amount = amount or booking.amount
        if fee_amount is None:
            fee_amount = calculate_fee(booking.category, amount).fee_amount
        payment = PaymentRecord(
            booking_id=booking.id,
            milestone_id=milestone_id,
            amount=amount,
            currency=booking.currency,
            category=booking.category,
            applied_rate=Decimal("0.0200"),
            fee_amount=fee_amount,
            net_amount=amount - fee_amount,
            refunded_amount=0,
            released_amount=0,
            status=status,
            external_transaction_id=external_id or f"pi_{uuid4().hex[:16]}",
            idempotency_key=f"test-{uuid4().hex}",
            booking_status_before=booking.status,
        )
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _factory


@pytest.fixture
def make_compliant_vendor(db_session: Session) -> Callable[..., VendorPayoutAccount]:
    """Approve every document the category needs and attach a ready payout account."""

    def _factory(vendor_id: str, category: str = "VENUE", *, payouts_enabled: bool = True) -> VendorPayoutAccount:
        for document_type in requirements_for(category).required:
            db_session.add(
                VendorDocument(
                    vendor_id=vendor_id,
                    document_type=document_type,
                    status=DocumentStatus.APPROVED,
                    expires_at=utcnow() + timedelta(days=365),
                )
            )
        account = VendorPayoutAccount(
            vendor_id=vendor_id,
            destination_account_id=f"acct_{uuid4().hex[:12]}",
            auto_payout_enabled=True,
            charges_enabled=True,
            payouts_enabled=payouts_enabled,
            details_submitted=True,
        )
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account

    return _factory


def sign_payload(payload: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``."""

    secret = secret or os.environ["STRIPE_WEBHOOK_SECRET"]
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, *, event_id: str | None = None, **extra) -> bytes:
    payload = {
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
        **extra,
    }
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def post_webhook(client: AsyncClient):
    async def _post(body: bytes, *, signature: str | None = None):
        header = signature if signature is not None else sign_payload(body)
        return await client.post(
            "/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "Stripe-Signature": header},
        )

    return _post


@pytest.fixture
def signature_for() -> Callable[..., str]:
    return sign_payload


@pytest.fixture
def webhook_body() -> Callable[..., bytes]:
    return stripe_event
