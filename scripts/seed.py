"""Seed sample bookings and vendor data for local development."""
from __future__ import annotations

from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

from app import models
from app.config import get_settings
from app.db import create_all, session_scope
from app.services.compliance import requirements_for
from app.utils.time import utcnow


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    create_all()
    with session_scope() as session:
        venue = models.Booking(
            organizer_id="org-demo",
            vendor_id="vendor-venue",
            category="VENUE",
            amount=250000,
            currency=settings.DEFAULT_CURRENCY,
            status=models.BookingStatus.QUOTE_SENT,
        )
        venue.milestones.append(models.Milestone(idx=1, label="Deposit", amount=100000))
        venue.milestones.append(models.Milestone(idx=2, label="Event day", amount=150000))
        photographer = models.Booking(
            organizer_id="org-demo",
            vendor_id="vendor-photo",
            category="PHOTOGRAPHY",
            amount=80000,
            currency=settings.DEFAULT_CURRENCY,
            status=models.BookingStatus.QUOTE_SENT,
        )
        session.add_all([venue, photographer])

        expires_at = utcnow() + timedelta(days=365)
        for vendor_id, category in (("vendor-venue", "VENUE"), ("vendor-photo", "PHOTOGRAPHY")):
            for document_type in requirements_for(category).required:
                session.add(
                    models.VendorDocument(
                        vendor_id=vendor_id,
                        document_type=document_type,
                        status=models.DocumentStatus.APPROVED,
                        expires_at=expires_at,
                    )
                )
            session.add(
                models.VendorPayoutAccount(
                    vendor_id=vendor_id,
                    destination_account_id=f"acct_demo_{vendor_id}",
                    auto_payout_enabled=True,
                )
            )
        session.commit()
        print("Seed data inserted.")


if __name__ == "__main__":
    main()
