from datetime import datetime
from typing import Any
import logging

from config import config
from data.repository import ExperimentRepository
from models.events import EventKind, EventResponse, UserEvent
from models.experiments import AssignedUser, Experiment, ExperimentStatus, Variant, utcnow
from services.errors import InvalidStateError, NotFoundError, ValidationError
from services.metrics import refresh_metrics

logger = logging.getLogger(__name__)


def _locate(experiment: Experiment, variant_id: str, user_id: str) -> tuple[Variant, AssignedUser]:
    variant = experiment.get_variant(variant_id)
    if variant is None:
        raise NotFoundError(f"Variant {variant_id} not found in experiment {experiment.id}.")

    assigned = variant.find_user(user_id)
    if assigned is None:
        raise NotFoundError(f"User {user_id} is not assigned to variant {variant_id} of experiment {experiment.id}.")

    return variant, assigned


def _log_event(assigned: AssignedUser, kind: EventKind, now: datetime | None,
               metadata: dict[str, Any] | None = None) -> None:
    assigned.events.append(UserEvent(type=kind, timestamp=now or utcnow(), metadata=metadata))

    # Keep only the most recent events
    overflow = len(assigned.events) - config.event_log_max_length
    if overflow > 0:
        del assigned.events[:overflow]


def record_impression(experiment: Experiment, variant_id: str, user_id: str, now: datetime | None = None) -> None:
    variant, assigned = _locate(experiment, variant_id, user_id)
    variant.metrics.impressions += 1
    _log_event(assigned, EventKind.IMPRESSION, now)


def record_click(experiment: Experiment, variant_id: str, user_id: str, now: datetime | None = None) -> None:
    variant, assigned = _locate(experiment, variant_id, user_id)
    variant.metrics.clicks += 1
    _log_event(assigned, EventKind.CLICK, now)


def record_bounce(experiment: Experiment, variant_id: str, user_id: str, now: datetime | None = None) -> None:
    variant, assigned = _locate(experiment, variant_id, user_id)
    variant.metrics.bounces += 1
    _log_event(assigned, EventKind.BOUNCE, now)


def record_conversion(experiment: Experiment, variant_id: str, user_id: str,
                      revenue: float = 0.0, now: datetime | None = None) -> bool:
    """
    Count a conversion for the user, once. Returns False when the user had
    already converted; the repeat is only kept in the user's event log.
    """
    if revenue < 0:
        raise ValidationError("Conversion revenue cannot be negative.")

    variant, assigned = _locate(experiment, variant_id, user_id)

    if assigned.converted:
        _log_event(assigned, EventKind.CONVERSION, now, {"revenue": revenue, "duplicate": True})
        logger.debug("User %s already converted on %s (EID %s); counters unchanged.", user_id, variant_id, experiment.id)
        return False

    variant.metrics.conversions += 1
    variant.metrics.revenue += revenue
    assigned.converted = True
    assigned.revenue = revenue
    _log_event(assigned, EventKind.CONVERSION, now, {"revenue": revenue})

    refresh_metrics(experiment)
    return True


def apply_event(experiment: Experiment, variant_id: str, user_id: str, kind: EventKind,
                revenue: float = 0.0, now: datetime | None = None) -> None:
    """Record one event of the given kind and bring derived metrics up to date."""
    if experiment.status != ExperimentStatus.RUNNING:
        raise InvalidStateError(f"Experiment {experiment.id} is {experiment.status.value}; events are only recorded while running.")

    kind = EventKind(kind)
    if kind == EventKind.CONVERSION:
        record_conversion(experiment, variant_id, user_id, revenue=revenue, now=now)
    elif kind == EventKind.IMPRESSION:
        record_impression(experiment, variant_id, user_id, now=now)
    elif kind == EventKind.CLICK:
        record_click(experiment, variant_id, user_id, now=now)
    else:
        record_bounce(experiment, variant_id, user_id, now=now)

    refresh_metrics(experiment)


def record_event(repo: ExperimentRepository, experiment_id: str, variant_id: str, user_id: str,
                 kind: EventKind, revenue: float = 0.0) -> EventResponse:
    """Load the experiment, record the event and persist it."""
    experiment = repo.load(experiment_id)
    now = utcnow()
    apply_event(experiment, variant_id, user_id, kind, revenue=revenue, now=now)
    repo.save(experiment)

    logger.debug("recorded %s for user %s on %s (EID %s)", EventKind(kind).value, user_id, variant_id, experiment_id)
    return EventResponse(
        experiment_id=experiment_id,
        variant_id=variant_id,
        user_id=user_id,
        kind=kind,
        recorded_at=now,
    )
