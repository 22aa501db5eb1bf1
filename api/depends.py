from typing import Callable, TypeVar
from fastapi import Depends
from sqlalchemy.orm import Session
from data.database import get_db
from data.repository import SqlExperimentRepository
from services.errors import ConcurrencyConflictError
from config import config

import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_repository(db: Session = Depends(get_db)) -> SqlExperimentRepository:
    return SqlExperimentRepository(db)


# --- DEPENDENCY INJECTION SETUP ---
REPOSITORY = Depends(get_repository)


def retry_on_conflict(operation: Callable[..., T], *args, **kwargs) -> T:
    """
    Re-run an idempotent operation after losing a version race.
    Each attempt reloads the experiment, so the retry sees the competing write.
    """
    attempts = max(1, config.max_assignment_retries)
    for attempt in range(attempts):
        try:
            return operation(*args, **kwargs)
        except ConcurrencyConflictError:
            if attempt + 1 == attempts:
                logger.warning("Giving up after %d conflicting attempts.", attempts)
                raise
            logger.warning("RACE DETECTED: retrying (Attempt %d/%d)...", attempt + 2, attempts)
