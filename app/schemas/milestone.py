"""Schemas for booking milestones."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from app.models.booking import MilestoneStatus


class MilestoneRead(BaseModel):
    id: int
    booking_id: int
    idx: int
    label: str
    amount: int
    status: MilestoneStatus
    completed_at: datetime | None
    released_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
