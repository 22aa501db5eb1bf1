from fastapi import APIRouter, status

from models.events import EventCreate, EventResponse
from data.repository import SqlExperimentRepository
from services import events
from api.depends import REPOSITORY, retry_on_conflict

import logging

logger = logging.getLogger(__name__)

events_router = APIRouter(
    prefix="/events",
    tags=["events"],
)


# POST /events
@events_router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def record_event_route(
    event_data: EventCreate,
    repo: SqlExperimentRepository = REPOSITORY
):
    """
    Record an impression, click, bounce or conversion for an assigned user.
    Conversions are counted once per user.
    """
    return retry_on_conflict(
        events.record_event,
        repo,
        event_data.experiment_id,
        event_data.variant_id,
        event_data.user_id,
        event_data.kind,
        revenue=event_data.revenue,
    )
