"""
Experiment state machine and completion.

    draft -> running <-> paused
    running -> completed
    draft | running | paused | completed -> archived

Completion runs the significance test, declares a winner when the result is
significant, and freezes the results. Completing twice is an error.
"""

from datetime import datetime, timedelta
import logging
import re
import uuid

from data.repository import ExperimentRepository
from models.experiments import (
    Experiment,
    ExperimentCreate,
    ExperimentStatus,
    HistoryAction,
    HistoryEntry,
    Schedule,
    Variant,
    utcnow,
)
from models.results import Results
from services.assignment import validate_experiment
from services.errors import InvalidStateError
from services.reports import age_in_days, build_report, build_summary
from services.significance import calculate_significance

logger = logging.getLogger(__name__)


def _slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or uuid.uuid4().hex[:8]


def _record(experiment: Experiment, action: HistoryAction, now: datetime, details: str | None = None) -> None:
    experiment.history.append(HistoryEntry(action=action, timestamp=now, details=details))
    logger.info("Experiment %s %s.", experiment.id, action.value)


def _require(experiment: Experiment, allowed: tuple[ExperimentStatus, ...], operation: str) -> None:
    if experiment.status not in allowed:
        raise InvalidStateError(
            f"Cannot {operation} experiment {experiment.id} while it is {experiment.status.value}."
        )


# --- Creation ---

def build_experiment(experiment_data: ExperimentCreate, now: datetime | None = None) -> Experiment:
    """Turn a creation request into a validated draft experiment."""
    now = now or utcnow()
    experiment = Experiment(
        name=experiment_data.name,
        description=experiment_data.description,
        hypothesis=experiment_data.hypothesis,
        type=experiment_data.type,
        category=experiment_data.category,
        config=experiment_data.config,
        variants=[
            Variant(
                id=v.id or _slug(v.name),
                name=v.name,
                description=v.description,
                is_control=v.is_control,
                content=v.content,
                styles=v.styles,
                traffic_percent=v.traffic_percent,
            )
            for v in experiment_data.variants
        ],
        schedule=Schedule(start_date=experiment_data.start_date, end_date=experiment_data.end_date),
        tags=experiment_data.tags,
        priority=experiment_data.priority,
        created_at=now,
        updated_at=now,
    )
    validate_experiment(experiment)
    _record(experiment, HistoryAction.CREATED, now)
    return experiment


def create_new_experiment(repo: ExperimentRepository, experiment_data: ExperimentCreate) -> Experiment:
    """Creates a new draft experiment and its variants."""
    experiment = repo.add(build_experiment(experiment_data))
    logger.info("create new experiment %s success with experiment id: %s", experiment.name, experiment.id)
    return experiment


# --- Transitions ---

def start(experiment: Experiment, now: datetime | None = None) -> Experiment:
    now = now or utcnow()
    _require(experiment, (ExperimentStatus.DRAFT, ExperimentStatus.PAUSED), "start")

    action = HistoryAction.STARTED if experiment.status == ExperimentStatus.DRAFT else HistoryAction.RESUMED
    experiment.status = ExperimentStatus.RUNNING
    experiment.schedule.paused_at = None
    if experiment.schedule.started_at is None:
        experiment.schedule.started_at = now
    _record(experiment, action, now)
    return experiment


def pause(experiment: Experiment, now: datetime | None = None) -> Experiment:
    now = now or utcnow()
    _require(experiment, (ExperimentStatus.RUNNING,), "pause")

    experiment.status = ExperimentStatus.PAUSED
    experiment.schedule.paused_at = now
    _record(experiment, HistoryAction.PAUSED, now)
    return experiment


def resume(experiment: Experiment, now: datetime | None = None) -> Experiment:
    now = now or utcnow()
    _require(experiment, (ExperimentStatus.PAUSED,), "resume")

    experiment.status = ExperimentStatus.RUNNING
    paused_at = experiment.schedule.paused_at
    experiment.schedule.paused_at = None
    _record(experiment, HistoryAction.RESUMED, now, details=f"paused since {paused_at.isoformat()}" if paused_at else None)
    return experiment


def archive(experiment: Experiment, now: datetime | None = None) -> Experiment:
    now = now or utcnow()
    _require(
        experiment,
        (ExperimentStatus.DRAFT, ExperimentStatus.RUNNING, ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED),
        "archive",
    )

    previous = experiment.status
    experiment.status = ExperimentStatus.ARCHIVED
    _record(experiment, HistoryAction.ARCHIVED, now, details=f"from {previous.value}")
    return experiment


# --- Readiness ---

def planned_end_date(experiment: Experiment) -> datetime | None:
    """Configured end date, else started_at plus the maximum duration."""
    if experiment.schedule.end_date is not None:
        return experiment.schedule.end_date
    if experiment.schedule.started_at is not None:
        return experiment.schedule.started_at + timedelta(days=experiment.config.max_duration_days)
    return None


def has_enough_data(experiment: Experiment) -> bool:
    total_impressions = sum(v.metrics.impressions for v in experiment.variants)
    return total_impressions >= experiment.config.min_sample_size * len(experiment.variants)


def is_active(experiment: Experiment, now: datetime | None = None) -> bool:
    if experiment.status != ExperimentStatus.RUNNING:
        return False
    end = planned_end_date(experiment)
    return end is None or end > (now or utcnow())


def is_ready_for_completion(experiment: Experiment, now: datetime | None = None) -> bool:
    now = now or utcnow()
    if experiment.status != ExperimentStatus.RUNNING:
        return False

    end = planned_end_date(experiment)
    if end is not None and end <= now:
        return True

    return age_in_days(experiment, now) >= experiment.config.min_duration_days and has_enough_data(experiment)


# --- Completion ---

def complete(experiment: Experiment, now: datetime | None = None) -> Results:
    """Freeze the experiment's results and mark it completed."""
    now = now or utcnow()
    if experiment.status == ExperimentStatus.COMPLETED:
        raise InvalidStateError(f"Experiment {experiment.id} is already completed.")
    _require(experiment, (ExperimentStatus.RUNNING,), "complete")

    significance = calculate_significance(experiment)
    results = experiment.results

    if significance is not None:
        results.is_significant = significance.is_significant
        results.z_score = significance.z_score
        results.p_value = significance.p_value
        results.statistical_significance = significance.confidence_level_percent
        results.improvement_percentage = significance.improvement_percentage
        results.confidence_interval = significance.confidence_interval

    if significance is not None and significance.is_significant:
        control = experiment.control_variant()
        treatment = experiment.treatment_variants()[0]
        winner = treatment if treatment.metrics.conversion_rate > control.metrics.conversion_rate else control

        results.winner = winner.id
        results.winner_declared_at = now

    results.summary = build_summary(experiment, now)
    results.report = build_report(experiment, significance, now)
    results.provisional = False

    experiment.status = ExperimentStatus.COMPLETED
    experiment.schedule.completed_at = now
    _record(experiment, HistoryAction.COMPLETED, now, details=f"winner: {results.winner or 'none'}")
    return results


# --- Repository-backed operations ---

TRANSITIONS = {
    "start": start,
    "pause": pause,
    "resume": resume,
    "archive": archive,
}


def transition_experiment(repo: ExperimentRepository, experiment_id: str, action: str) -> Experiment:
    experiment = repo.load(experiment_id)
    TRANSITIONS[action](experiment)
    return repo.save(experiment)


def complete_experiment(repo: ExperimentRepository, experiment_id: str) -> Results:
    """
    Complete and persist. A concurrent completion loses the version race in
    save(), so results are written at most once.
    """
    experiment = repo.load(experiment_id)
    results = complete(experiment)
    repo.save(experiment)
    logger.info("Experiment %s completed, winner: %s", experiment_id, results.winner)
    return results


def list_active(repo: ExperimentRepository, now: datetime | None = None) -> list[Experiment]:
    """Running experiments that have not passed their end date."""
    now = now or utcnow()
    return [e for e in repo.query(status=ExperimentStatus.RUNNING) if is_active(e, now)]


def list_ready_for_completion(repo: ExperimentRepository, now: datetime | None = None) -> list[Experiment]:
    now = now or utcnow()
    return [e for e in repo.query(status=ExperimentStatus.RUNNING) if is_ready_for_completion(e, now)]
