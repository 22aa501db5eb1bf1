from fastapi import APIRouter, HTTPException, status

from models.experiments import (
    ExperimentCreate,
    ExperimentResponse,
    ExperimentAssignmentResponse,
    ExperimentStatus,
)
from models.results import ExperimentResultsSummary, Results
from data.repository import SqlExperimentRepository
from services import assignment, lifecycle, results
from api.depends import REPOSITORY, retry_on_conflict

import logging

logger = logging.getLogger(__name__)

experiment_router = APIRouter(
    prefix="/experiments",
    tags=["experiments"],
)


# POST /experiments
@experiment_router.post(
    "",
    response_model=ExperimentResponse,
    status_code=status.HTTP_201_CREATED
)
def create_experiment_route(
    experiment_data: ExperimentCreate,
    repo: SqlExperimentRepository = REPOSITORY
):
    """Create a new draft experiment with variants and traffic allocation."""
    return lifecycle.create_new_experiment(repo, experiment_data)


# GET /experiments?state=active|ready|<status>
@experiment_router.get("", response_model=list[ExperimentResponse])
def list_experiments_route(
    state: str | None = None,
    repo: SqlExperimentRepository = REPOSITORY
):
    """List experiments: 'active', 'ready' (for completion), a status, or all."""
    if state == "active":
        return lifecycle.list_active(repo)
    if state == "ready":
        return lifecycle.list_ready_for_completion(repo)
    if state is None:
        return repo.query()

    try:
        wanted = ExperimentStatus(state)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown state filter '{state}'.")
    return repo.query(status=wanted)


# GET /experiments/{experiment_id}
@experiment_router.get("/{experiment_id}", response_model=ExperimentResponse)
def get_experiment_route(experiment_id: str, repo: SqlExperimentRepository = REPOSITORY):
    return repo.load(experiment_id)


# POST /experiments/{experiment_id}/complete
@experiment_router.post("/{experiment_id}/complete", response_model=Results)
def complete_experiment_route(experiment_id: str, repo: SqlExperimentRepository = REPOSITORY):
    """Run the significance test, declare a winner if any, and freeze the results."""
    return lifecycle.complete_experiment(repo, experiment_id)


# POST /experiments/{experiment_id}/start|pause|resume|archive
@experiment_router.post("/{experiment_id}/{action}", response_model=ExperimentResponse)
def transition_experiment_route(
    experiment_id: str,
    action: str,
    repo: SqlExperimentRepository = REPOSITORY
):
    """Move the experiment through its lifecycle."""
    if action not in lifecycle.TRANSITIONS:
        raise HTTPException(status_code=404, detail=f"Unknown lifecycle action '{action}'.")
    return lifecycle.transition_experiment(repo, experiment_id, action)


# GET /experiments/{experiment_id}/assignment/{user_id} (The Idempotent Logic)
@experiment_router.get("/{experiment_id}/assignment/{user_id}", response_model=ExperimentAssignmentResponse)
def get_user_assignment_route(
    experiment_id: str,
    user_id: str,
    repo: SqlExperimentRepository = REPOSITORY
):
    """Get user's variant assignment. Performs assignment if none exists."""
    return retry_on_conflict(assignment.get_or_create_assignment, repo, experiment_id, user_id)


# GET /experiments/{experiment_id}/results
@experiment_router.get("/{experiment_id}/results", response_model=ExperimentResultsSummary)
def get_experiment_results_route(experiment_id: str, repo: SqlExperimentRepository = REPOSITORY):
    """
    Final results for a completed experiment, or a provisional view while it runs.
    """
    return results.calculate_summary(repo, experiment_id)
