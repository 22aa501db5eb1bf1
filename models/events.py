from pydantic import BaseModel, Field
from typing import Any
from datetime import datetime, timezone
from enum import Enum


class EventKind(str, Enum):
    """Interactions recorded against an assigned user's variant."""
    IMPRESSION = "impression"
    CONVERSION = "conversion"
    CLICK = "click"
    BOUNCE = "bounce"


class UserEvent(BaseModel):
    """One entry of an assigned user's event log."""
    type: EventKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] | None = None


class EventCreate(BaseModel):
    """Schema for recording a new event via POST /events."""
    experiment_id: str
    variant_id: str
    user_id: str
    kind: EventKind = Field(..., description="Type of event (impression, conversion, click, bounce).")
    revenue: float = Field(default=0.0, ge=0, description="Revenue attributed to a conversion.")


class EventResponse(BaseModel):
    """Schema for the response after recording an event."""
    experiment_id: str
    variant_id: str
    user_id: str
    kind: EventKind
    recorded_at: datetime
