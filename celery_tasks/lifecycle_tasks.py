from celery_config import celery_app
from data.database import SessionLocal
from data.repository import SqlExperimentRepository
from models.experiments import ExperimentStatus, utcnow
from services import lifecycle
from services.errors import ConcurrencyConflictError, InvalidStateError
from services.reports import take_daily_snapshot
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, ignore_result=True)
def complete_ready_experiments(self) -> list[str]:
    """
    Complete every running experiment that reached its end date or has run
    long enough with enough data. Returns the ids completed on this run.
    """
    completed: list[str] = []
    db = SessionLocal()
    try:
        repo = SqlExperimentRepository(db)
        ready = lifecycle.list_ready_for_completion(repo)
        logger.info("Task %s: %d experiment(s) ready for completion.", self.name, len(ready))

        for experiment in ready:
            try:
                lifecycle.complete_experiment(repo, experiment.id)
                completed.append(experiment.id)
            except (ConcurrencyConflictError, InvalidStateError) as exc:
                # Someone else changed it since the scan; the next run re-evaluates
                logger.warning("Skipping completion of experiment %s: %s", experiment.id, exc)
            except Exception:
                # One broken experiment must not hold back the rest of the sweep
                db.rollback()
                logger.exception("Completion of experiment %s failed.", experiment.id)
    finally:
        db.close()

    return completed


@celery_app.task(bind=True, ignore_result=True)
def snapshot_running_experiments(self) -> int:
    """Store yesterday's per-variant activity for every running experiment."""
    day = (utcnow() - timedelta(days=1)).date()
    taken = 0
    db = SessionLocal()
    try:
        repo = SqlExperimentRepository(db)
        for experiment in repo.query(status=ExperimentStatus.RUNNING):
            take_daily_snapshot(experiment, day)
            try:
                repo.save(experiment)
                taken += 1
            except ConcurrencyConflictError as exc:
                logger.warning("Snapshot for experiment %s not saved: %s", experiment.id, exc)
    finally:
        db.close()

    logger.info("Task %s: stored %s snapshots for %d experiment(s).", self.name, day.isoformat(), taken)
    return taken
