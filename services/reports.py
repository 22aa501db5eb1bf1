from datetime import date, datetime, time, timedelta, timezone
import logging

from models.events import EventKind
from models.experiments import Experiment, Variant, utcnow
from models.results import DailySnapshot, Report, SignificanceResult, Summary, VariantSnapshot

logger = logging.getLogger(__name__)


def age_in_days(experiment: Experiment, now: datetime | None = None) -> int:
    """Whole days since the experiment was started, 0 if it never was."""
    started_at = experiment.schedule.started_at
    if started_at is None:
        return 0
    return max(0, ((now or utcnow()) - started_at).days)


def build_summary(experiment: Experiment, now: datetime | None = None) -> Summary:
    variants = experiment.variants
    return Summary(
        total_impressions=sum(v.metrics.impressions for v in variants),
        total_conversions=sum(v.metrics.conversions for v in variants),
        total_revenue=sum(v.metrics.revenue for v in variants),
        average_conversion_rate=sum(v.metrics.conversion_rate for v in variants) / len(variants) if variants else 0.0,
        test_duration_days=age_in_days(experiment, now),
    )


def _variant_day(variant: Variant, start: datetime, end: datetime) -> VariantSnapshot:
    impressions = 0
    conversions = 0
    revenue = 0.0

    for assigned in variant.assigned_users:
        for event in assigned.events:
            if not (start <= event.timestamp < end):
                continue
            if event.type == EventKind.IMPRESSION:
                impressions += 1
            elif event.type == EventKind.CONVERSION:
                metadata = event.metadata or {}
                if metadata.get("duplicate"):
                    continue
                conversions += 1
                revenue += metadata.get("revenue", 0.0)

    return VariantSnapshot(
        variant_id=variant.id,
        impressions=impressions,
        conversions=conversions,
        revenue=revenue,
        conversion_rate=conversions / impressions * 100 if impressions else 0.0,
    )


def take_daily_snapshot(experiment: Experiment, day: date) -> DailySnapshot:
    """
    Aggregate the events logged on one UTC day into the experiment's snapshot list.
    Taking the same day again replaces the earlier snapshot.
    """
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)

    snapshot = DailySnapshot(
        date=start,
        variants=[_variant_day(v, start, end) for v in experiment.variants],
    )

    snapshots = [s for s in experiment.results.daily_snapshots if s.date != start]
    snapshots.append(snapshot)
    snapshots.sort(key=lambda s: s.date)
    experiment.results.daily_snapshots = snapshots

    logger.debug("daily snapshot %s taken for experiment %s", day.isoformat(), experiment.id)
    return snapshot


def build_report(experiment: Experiment, significance: SignificanceResult | None, now: datetime | None = None) -> Report:
    """Plain-language conclusion for a completed experiment."""
    control = experiment.control_variant()
    treatments = experiment.treatment_variants()
    target = experiment.config.target_page

    if significance is None:
        if len(treatments) != 1:
            conclusion = (f"{len(experiment.variants)} variants were tracked; the significance test "
                          "only covers a single control/treatment pair.")
        else:
            conclusion = "Not enough data for a verdict: each variant needs at least 30 impressions."
        recommendations = "Keep the control until a decision can be backed by data."
        next_steps = f"Rerun the test on {target} with more traffic or a longer window."

    elif significance.is_significant:
        treatment = treatments[0]
        lift = significance.improvement_percentage
        lift_text = f"{lift:+.1f}%" if lift is not None else "an undefined relative change"
        if treatment.metrics.conversion_rate > control.metrics.conversion_rate:
            conclusion = (f"{treatment.name} outperformed {control.name} with {lift_text} conversion "
                          f"(p = {significance.p_value:.4f}) at {significance.confidence_level_percent}% confidence.")
            recommendations = f"Roll out {treatment.name}."
            next_steps = f"Retire {control.name} and plan a follow-up test on {target}."
        else:
            conclusion = (f"{control.name} outperformed {treatment.name}; the treatment changed conversion by "
                          f"{lift_text} (p = {significance.p_value:.4f}).")
            recommendations = f"Keep {control.name}."
            next_steps = f"Discard {treatment.name} and test a different idea on {target}."

    else:
        conclusion = (f"No significant difference between variants (p = {significance.p_value:.4f}) "
                      f"at {significance.confidence_level_percent}% confidence.")
        recommendations = "Keep the control; the observed change is within noise."
        next_steps = "Consider a larger sample or a bolder variant."

    return Report(
        conclusion=conclusion,
        recommendations=recommendations,
        next_steps=next_steps,
        generated_at=now or utcnow(),
    )
