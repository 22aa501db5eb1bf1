from models.experiments import Experiment, Metrics


def calculate_metrics(metrics: Metrics) -> Metrics:
    """
    Return a copy of metrics with the derived rates recomputed from its counters.
    With no impressions the derived fields are zero.
    """
    impressions = metrics.impressions
    if impressions <= 0:
        return metrics.model_copy(update={"conversion_rate": 0.0, "bounce_rate": 0.0, "average_revenue": 0.0})

    return metrics.model_copy(update={
        "conversion_rate": metrics.conversions / impressions * 100,
        "bounce_rate": metrics.bounces / impressions * 100,
        "average_revenue": metrics.revenue / impressions,
    })


DERIVED_FIELDS = ("conversion_rate", "bounce_rate", "average_revenue")


def refresh_metrics(experiment: Experiment) -> Experiment:
    """Recompute derived metrics for every variant of the experiment, in place."""
    for variant in experiment.variants:
        refreshed = calculate_metrics(variant.metrics)
        for field in DERIVED_FIELDS:
            setattr(variant.metrics, field, getattr(refreshed, field))
    return experiment
