from datetime import datetime
import logging

from data.repository import ExperimentRepository
from models.experiments import Experiment, utcnow
from models.results import ExperimentResultsSummary, Results, VariantResult
from services.reports import build_summary
from services.significance import calculate_significance

logger = logging.getLogger(__name__)


def provisional_results(experiment: Experiment, now: datetime | None = None) -> Results:
    """
    Results as they would stand if the experiment stopped now. Nothing is
    persisted and no winner is declared.
    """
    significance = calculate_significance(experiment)
    results = Results(
        summary=build_summary(experiment, now),
        daily_snapshots=list(experiment.results.daily_snapshots),
        provisional=True,
    )
    if significance is not None:
        results.is_significant = significance.is_significant
        results.z_score = significance.z_score
        results.p_value = significance.p_value
        results.statistical_significance = significance.confidence_level_percent
        results.improvement_percentage = significance.improvement_percentage
        results.confidence_interval = significance.confidence_interval
    return results


def get_results(experiment: Experiment, now: datetime | None = None) -> Results:
    """Stored results once completed, otherwise a provisional view."""
    if experiment.results.summary is not None and not experiment.results.provisional:
        return experiment.results
    return provisional_results(experiment, now)


def calculate_summary(repo: ExperimentRepository, experiment_id: str) -> ExperimentResultsSummary:
    """
    Experiment performance summary: results plus per-variant counters.
    """
    experiment = repo.load(experiment_id)
    now = utcnow()
    results = get_results(experiment, now)

    variant_data: dict[str, VariantResult] = {}
    for variant in experiment.variants:
        metrics = variant.metrics
        variant_data[variant.id] = VariantResult(
            name=variant.name,
            is_control=variant.is_control,
            impressions=metrics.impressions,
            conversions=metrics.conversions,
            revenue=metrics.revenue,
            conversion_rate=round(metrics.conversion_rate, 2),
            bounce_rate=round(metrics.bounce_rate, 2),
            average_revenue=round(metrics.average_revenue, 2),
            assigned_users=len(variant.assigned_users),
        )

    logger.debug("results for experiment %s (provisional=%s)", experiment_id, results.provisional)
    return ExperimentResultsSummary(
        experiment_id=experiment.id,
        experiment_name=experiment.name,
        status=experiment.status.value,
        report_generated_at=now,
        results=results,
        variant_data=variant_data,
    )
