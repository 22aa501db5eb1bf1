from datetime import datetime
import random
import logging

from data.repository import ExperimentRepository
from models.experiments import AssignedUser, Experiment, ExperimentAssignmentResponse, ExperimentStatus, Variant, utcnow
from services.errors import InvalidStateError, ValidationError

logger = logging.getLogger(__name__)

# Allowed drift of the summed traffic shares away from 100
SPLIT_TOLERANCE = 1e-6


def variant_shares(experiment: Experiment) -> list[tuple[Variant, float]]:
    """
    Traffic share (percent) of each variant, in variant order.

    Explicit per-variant percentages are used when every variant has one. Otherwise
    control gets 100 - traffic_split_percent and the treatments split the rest evenly.
    """
    variants = experiment.variants
    explicit = [v.traffic_percent for v in variants]

    given = [p for p in explicit if p is not None]
    if given and len(given) != len(variants):
        raise ValidationError(
            f"Experiment {experiment.id} sets traffic_percent on {len(given)} of {len(variants)} variants; set it on all or none."
        )

    if given:
        shares = list(explicit)
    else:
        split = experiment.config.traffic_split_percent
        treatments = len(variants) - 1
        shares = []
        for variant in variants:
            if variant.is_control:
                shares.append(100.0 if treatments == 0 else 100.0 - split)
            else:
                shares.append(split / treatments)

    total = sum(shares)
    if abs(total - 100.0) > SPLIT_TOLERANCE:
        raise ValidationError(f"Traffic split of experiment {experiment.id} sums to {total}, not 100.")

    return list(zip(variants, shares))


def validate_experiment(experiment: Experiment) -> None:
    """Raise ValidationError unless the experiment can be bucketed into."""
    if not experiment.variants:
        raise ValidationError(f"Experiment {experiment.id} has no variants.")

    controls = [v for v in experiment.variants if v.is_control]
    if len(controls) != 1:
        raise ValidationError(f"Experiment {experiment.id} must have exactly one control variant, found {len(controls)}.")

    ids = [v.id for v in experiment.variants]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"Experiment {experiment.id} has duplicate variant ids.")

    variant_shares(experiment)


def choose_variant(experiment: Experiment, roll: float) -> Variant:
    """Pick the first variant whose cumulative share reaches roll (0 <= roll < 100)."""
    cumulative = 0.0
    for variant, share in variant_shares(experiment):
        if share <= 0:
            continue
        cumulative += share
        if cumulative >= roll:
            return variant

    # Rounding left the tail uncovered
    return experiment.control_variant()


def assign_user(experiment: Experiment, user_id: str, now: datetime | None = None) -> str:
    """
    Bucket user_id into one variant of the experiment and return the variant id.

    A user already assigned keeps their variant and no record is added. New
    assignments are only handed out while the experiment is running.
    """
    validate_experiment(experiment)

    existing = experiment.find_assignment(user_id)
    if existing:
        variant, _ = existing
        return variant.id

    if experiment.status != ExperimentStatus.RUNNING:
        raise InvalidStateError(
            f"Experiment {experiment.id} is {experiment.status.value}; new users can only be assigned while running."
        )

    roll = random.random() * 100
    variant = choose_variant(experiment, roll)
    variant.assigned_users.append(AssignedUser(user_id=user_id, assigned_at=now or utcnow(), converted=False))

    logger.debug("roll %.4f placed user %s in %s (EID %s)", roll, user_id, variant.id, experiment.id)
    return variant.id


# --- Idempotent Assignment ---
def get_or_create_assignment(repo: ExperimentRepository, experiment_id: str, user_id: str) -> ExperimentAssignmentResponse:
    """
    Retrieves an existing assignment or creates and persists a new one.
    Concurrent writers are caught by the repository's version check, which
    raises ConcurrencyConflictError for the caller to retry.
    """
    experiment = repo.load(experiment_id)

    existing = experiment.find_assignment(user_id)
    if existing:
        variant, assigned = existing
        logger.info("Found persistent assignment for user %s on EID %s: %s", user_id, experiment_id, variant.id)
    else:
        variant_id = assign_user(experiment, user_id)
        repo.save(experiment)

        variant = experiment.get_variant(variant_id)
        assigned = variant.find_user(user_id)
        logger.info("SUCCESS: User %s newly assigned to %s (EID %s).", user_id, variant_id, experiment_id)

    return ExperimentAssignmentResponse(
        experiment_id=experiment.id,
        user_id=user_id,
        variant_id=variant.id,
        variant_name=variant.name,
        assigned_at=assigned.assigned_at,
        content=variant.content,
    )
