"""Narrow read/write contract with the booking service.

The engine reads bookings and milestones and moves booking status along the
payment lifecycle; everything else about bookings belongs to the owning
service.
"""
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.booking import Booking, BookingStatus, Milestone, MilestoneStatus
from app.utils.audit import log_audit, log_status_change
from app.utils.errors import BookingNotFound, InvalidTransition, MilestoneAlreadyReleased, MilestoneNotFound
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

# Booking status each payment-driven write may start from.
_BOOKING_SOURCES: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PAYMENT_PENDING: {BookingStatus.QUOTE_SENT},
    BookingStatus.CONFIRMED: {BookingStatus.QUOTE_SENT, BookingStatus.PAYMENT_PENDING},
    BookingStatus.QUOTE_SENT: {BookingStatus.PAYMENT_PENDING},
    BookingStatus.CANCELLED: {BookingStatus.QUOTE_SENT, BookingStatus.PAYMENT_PENDING, BookingStatus.CONFIRMED},
}


def get_booking(db: Session, booking_id: int, *, for_update: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == booking_id)
    if for_update:
        stmt = stmt.with_for_update()
    booking = db.execute(stmt).scalar_one_or_none()
    if booking is None:
        raise BookingNotFound(details={"booking_id": booking_id})
    return booking


def get_milestone(db: Session, milestone_id: int, *, for_update: bool = False) -> Milestone:
    stmt = select(Milestone).where(Milestone.id == milestone_id)
    if for_update:
        stmt = stmt.with_for_update()
    milestone = db.execute(stmt).scalar_one_or_none()
    if milestone is None:
        raise MilestoneNotFound(details={"milestone_id": milestone_id})
    return milestone


def set_booking_status(
    db: Session,
    booking: Booking,
    status: BookingStatus,
    *,
    actor: str,
    event_id: str | None = None,
) -> bool:
    """Move the booking to ``status`` when the current status allows it.

    Returns ``False`` (and leaves the booking alone) when another payment
    already advanced the booking past the requested status.
    """

    previous = booking.status
    if previous == status:
        return False
    if previous not in _BOOKING_SOURCES.get(status, set()):
        logger.info(
            "Booking status write skipped",
            extra={"booking_id": booking.id, "current": previous.value, "requested": status.value},
        )
        return False
    booking.status = status
    log_status_change(
        db,
        actor=actor,
        entity="Booking",
        entity_id=booking.id,
        previous=previous.value,
        new=status.value,
        event_id=event_id,
    )
    return True


def complete_milestone(db: Session, milestone_id: int, *, actor: str = "booking-service") -> Milestone:
    """Record that the vendor delivered a milestone, making it releasable."""

    milestone = get_milestone(db, milestone_id, for_update=True)
    if milestone.status == MilestoneStatus.COMPLETED:
        return milestone
    if milestone.status == MilestoneStatus.RELEASED:
        raise MilestoneAlreadyReleased(details={"milestone_id": milestone_id})
    if milestone.status == MilestoneStatus.REFUNDED:
        raise InvalidTransition(
            "Refunded milestones cannot be completed.",
            details={"milestone_id": milestone_id, "current_status": milestone.status.value},
        )

    milestone.status = MilestoneStatus.COMPLETED
    milestone.completed_at = utcnow()
    log_audit(
        db,
        actor=actor,
        action="MILESTONE_COMPLETED",
        entity="Milestone",
        entity_id=milestone.id,
        data={"booking_id": milestone.booking_id, "idx": milestone.idx, "amount": milestone.amount},
    )
    db.commit()
    db.refresh(milestone)
    logger.info("Milestone completed", extra={"milestone_id": milestone.id, "booking_id": milestone.booking_id})
    return milestone


__all__ = ["get_booking", "get_milestone", "set_booking_status", "complete_milestone"]
