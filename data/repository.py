from typing import Protocol
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import FlushError
from data.database import ExperimentRecord
from models.experiments import Experiment, ExperimentStatus, utcnow
from services.errors import ConcurrencyConflictError, NotFoundError
import logging

logger = logging.getLogger(__name__)


class ExperimentRepository(Protocol):
    """Persistence collaborator the engine loads and saves experiments through."""

    def load(self, experiment_id: str) -> Experiment: ...

    def add(self, experiment: Experiment) -> Experiment: ...

    def save(self, experiment: Experiment) -> Experiment: ...

    def query(self, status: ExperimentStatus | None = None) -> list[Experiment]: ...


class SqlExperimentRepository:
    """ExperimentRepository backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_model(record: ExperimentRecord) -> Experiment:
        experiment = Experiment.model_validate_json(record.document)
        experiment.version = record.version
        return experiment

    def load(self, experiment_id: str) -> Experiment:
        record = self.db.query(ExperimentRecord).filter(ExperimentRecord.id == experiment_id).one_or_none()
        if not record:
            raise NotFoundError(f"Experiment {experiment_id} not found.")
        return self._to_model(record)

    def add(self, experiment: Experiment) -> Experiment:
        experiment.version = 1
        record = ExperimentRecord(
            id=experiment.id,
            name=experiment.name,
            status=experiment.status.value,
            version=experiment.version,
            document=experiment.model_dump_json(),
            created_at=experiment.created_at,
            updated_at=experiment.updated_at,
        )
        try:
            self.db.add(record)
            self.db.commit()
        except (IntegrityError, FlushError):
            self.db.rollback()
            logger.warning("Experiment %s already exists, insert rejected.", experiment.id)
            raise ConcurrencyConflictError(f"Experiment {experiment.id} already exists.")

        logger.debug("experiment %s inserted at version %d", experiment.id, experiment.version)
        return experiment

    def save(self, experiment: Experiment) -> Experiment:
        """
        Write the document only if nobody else saved it since it was loaded.
        A lost race raises ConcurrencyConflictError and leaves the stored copy untouched.
        """
        expected = experiment.version
        now = utcnow()
        stored = experiment.model_copy(update={"version": expected + 1, "updated_at": now})

        result = self.db.execute(
            update(ExperimentRecord)
            .where(ExperimentRecord.id == experiment.id, ExperimentRecord.version == expected)
            .values(
                name=stored.name,
                status=stored.status.value,
                version=stored.version,
                document=stored.model_dump_json(),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            self.db.rollback()
            exists = self.db.query(ExperimentRecord.id).filter(ExperimentRecord.id == experiment.id).first()
            if not exists:
                raise NotFoundError(f"Experiment {experiment.id} not found.")
            logger.warning("VERSION CONFLICT: experiment %s changed since version %d.", experiment.id, expected)
            raise ConcurrencyConflictError(
                f"Experiment {experiment.id} was modified concurrently (expected version {expected})."
            )

        self.db.commit()
        experiment.version = stored.version
        experiment.updated_at = now
        return experiment

    def query(self, status: ExperimentStatus | None = None) -> list[Experiment]:
        records = self.db.query(ExperimentRecord)
        if status is not None:
            records = records.filter(ExperimentRecord.status == ExperimentStatus(status).value)
        return [self._to_model(r) for r in records.order_by(ExperimentRecord.created_at).all()]
