"""core payment, escrow and payout tables

Revision ID: 20260301_0001
Revises:
Create Date: 2026-03-01 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None

BOOKING_STATUSES = ("QUOTE_SENT", "PAYMENT_PENDING", "CONFIRMED", "COMPLETED", "CANCELLED")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organizer_id", sa.String(length=64), nullable=False),
        sa.Column("vendor_id", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.Enum(*BOOKING_STATUSES, name="bookingstatus"), nullable=False),
        sa.Column("payout_delay_days", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_booking_positive_amount"),
    )
    op.create_index("ix_bookings_organizer", "bookings", ["organizer_id"])
    op.create_index("ix_bookings_vendor", "bookings", ["vendor_id"])

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("idx", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(length=200), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "COMPLETED", "RELEASED", "REFUNDED", name="milestonestatus"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("booking_id", "idx", name="uq_milestone_booking_idx"),
        sa.CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        sa.CheckConstraint("idx > 0", name="ck_milestone_positive_idx"),
    )
    op.create_index("ix_milestones_booking_id", "milestones", ["booking_id"])

    op.create_table(
        "escrow_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("held_amount", sa.BigInteger(), nullable=False),
        sa.Column("released_amount", sa.BigInteger(), nullable=False),
        sa.Column("refunded_amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("OPEN", "PARTIALLY_RELEASED", "CLOSED", name="escrowstatus"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("held_amount >= 0", name="ck_escrow_held_non_negative"),
        sa.CheckConstraint("released_amount >= 0", name="ck_escrow_released_non_negative"),
        sa.CheckConstraint("refunded_amount >= 0", name="ck_escrow_refunded_non_negative"),
        sa.CheckConstraint("held_amount + released_amount = total_amount", name="ck_escrow_conservation"),
    )

    op.create_table(
        "escrow_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("escrow_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True, unique=True),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_escrow_events_escrow_id", "escrow_events", ["escrow_id"])

    op.create_table(
        "payment_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("milestone_id", sa.Integer(), sa.ForeignKey("milestones.id"), nullable=True),
        sa.Column("escrow_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("applied_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("fee_amount", sa.BigInteger(), nullable=False),
        sa.Column("net_amount", sa.BigInteger(), nullable=False),
        sa.Column("refunded_amount", sa.BigInteger(), nullable=False),
        sa.Column("released_amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING",
                "PROCESSING",
                "REQUIRES_ACTION",
                "COMPLETED",
                "FAILED",
                "REFUNDED",
                name="paymentstatus",
            ),
            nullable=False,
        ),
        sa.Column("external_transaction_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("client_secret", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False, unique=True),
        sa.Column(
            "booking_status_before",
            sa.Enum(*BOOKING_STATUSES, name="payment_booking_status"),
            nullable=True,
        ),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("requires_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        sa.CheckConstraint("refunded_amount >= 0", name="ck_payment_refunded_non_negative"),
        sa.CheckConstraint("released_amount >= 0", name="ck_payment_released_non_negative"),
        sa.CheckConstraint(
            "refunded_amount + released_amount <= amount",
            name="ck_payment_refund_release_within_amount",
        ),
    )
    op.create_index("ix_payment_records_booking_id", "payment_records", ["booking_id"])
    op.create_index("ix_payment_records_milestone_id", "payment_records", ["milestone_id"])
    op.create_index("ix_payment_records_escrow_id", "payment_records", ["escrow_id"])
    op.create_index("ix_payment_records_status", "payment_records", ["status"])
    op.create_index("ix_payment_records_booking_status", "payment_records", ["booking_id", "status"])

    op.create_table(
        "payout_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vendor_id", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payment_records.id"), nullable=False),
        sa.Column("milestone_id", sa.Integer(), sa.ForeignKey("milestones.id"), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING",
                "HELD",
                "PROCESSING",
                "COMPLETED",
                "FAILED",
                "CANCELLED",
                name="payoutstatus",
            ),
            nullable=False,
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("eligible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_transfer_id", sa.String(length=128), nullable=True),
        sa.Column("held_reason", sa.String(length=255), nullable=True),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("manual_requested", sa.Boolean(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payout_positive_amount"),
        sa.CheckConstraint("retry_count >= 0", name="ck_payout_retry_count_non_negative"),
    )
    op.create_index("ix_payout_records_payment_id", "payout_records", ["payment_id"])
    op.create_index("ix_payout_records_vendor_status", "payout_records", ["vendor_id", "status"])
    op.create_index("ix_payout_records_eligible_at", "payout_records", ["eligible_at"])
    op.create_index("ix_payout_records_external_transfer_id", "payout_records", ["external_transfer_id"])

    op.create_table(
        "vendor_payout_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vendor_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("destination_account_id", sa.String(length=128), nullable=False),
        sa.Column("auto_payout_enabled", sa.Boolean(), nullable=False),
        sa.Column("minimum_payout_amount", sa.BigInteger(), nullable=True),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False),
        sa.Column("details_submitted", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_vendor_payout_accounts_destination_account_id",
        "vendor_payout_accounts",
        ["destination_account_id"],
    )

    op.create_table(
        "vendor_documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vendor_id", sa.String(length=64), nullable=False),
        sa.Column(
            "document_type",
            sa.Enum(
                "BUSINESS_LICENSE",
                "INSURANCE_CERTIFICATE",
                "TAX_DOCUMENTS",
                "IDENTITY_VERIFICATION",
                "PORTFOLIO",
                "BACKGROUND_CHECK",
                name="documenttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("SUBMITTED", "APPROVED", "REJECTED", name="documentstatus"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_vendor_documents_vendor_type", "vendor_documents", ["vendor_id", "document_type"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("message", sa.String(length=255), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_alerts_type", "alerts", ["type"])
    op.create_index("ix_alerts_created_at", "alerts", ["created_at"])


def downgrade() -> None:
    op.drop_table("alerts")
    op.drop_table("audit_logs")
    op.drop_table("vendor_documents")
    op.drop_table("vendor_payout_accounts")
    op.drop_table("payout_records")
    op.drop_table("payment_records")
    op.drop_table("escrow_events")
    op.drop_table("escrow_accounts")
    op.drop_table("milestones")
    op.drop_table("bookings")
