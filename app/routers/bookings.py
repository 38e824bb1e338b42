"""Booking workflow hooks used by collaborators."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.routers.deps import request_actor
from app.schemas.common import Envelope
from app.schemas.milestone import MilestoneRead
from app.services import bookings as bookings_service

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("/milestones/{milestone_id}/complete", response_model=Envelope[MilestoneRead])
def complete_milestone(
    milestone_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(request_actor),
):
    """Mark the milestone's work as delivered so its funds can be released."""

    milestone = bookings_service.complete_milestone(db, milestone_id, actor=actor)
    return Envelope(data=MilestoneRead.model_validate(milestone))
