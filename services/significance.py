"""
Two-proportion z-test between the control and a single treatment variant.

The normal CDF uses the Abramowitz-Stegun 7.1.26 rational approximation of
erf (max error about 7.5e-8) so results match the numbers reported by the
dashboard exactly.
"""

import math
import logging

from models.experiments import Experiment
from models.results import ConfidenceInterval, SignificanceResult

logger = logging.getLogger(__name__)

# Below this many impressions in either group the test is not run
MIN_GROUP_IMPRESSIONS = 30

# Two-tailed critical values for the supported confidence levels
Z_CRITICAL = {90: 1.645, 95: 1.96, 99: 2.576}

A1 = 0.254829592
A2 = -0.284496736
A3 = 1.421413741
A4 = -1.453152027
A5 = 1.061405429
P = 0.3275911


def normal_cdf(x: float) -> float:
    """Standard normal CDF."""
    sign = (x > 0) - (x < 0)
    x = abs(x) / math.sqrt(2.0)

    t = 1.0 / (1.0 + P * x)
    y = 1.0 - (((((A5 * t + A4) * t) + A3) * t + A2) * t + A1) * t * math.exp(-x * x)

    return 0.5 * (1.0 + sign * y)


def z_test(n1: int, p1: float, n2: int, p2: float, confidence_level_percent: int = 95) -> SignificanceResult:
    """
    Compare two conversion proportions (fractions, 0-1) over n1 and n2 impressions.

    Returns the z-score, two-tailed p-value, significance verdict, relative lift
    of p2 over p1 in percent, and the interval for p2 - p1 in percentage points.
    """
    pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
    variance = pooled * (1 - pooled)
    # Conversions logged without impressions can push pooled past 1
    se = math.sqrt(variance * (1 / n1 + 1 / n2)) if variance > 0 else 0.0
    difference = p2 - p1

    if se > 0:
        z = difference / se
        p_value = 2 * (1 - normal_cdf(abs(z)))
    else:
        # Degenerate or out-of-range rates: no observable difference
        z = 0.0
        p_value = 1.0

    margin_of_error = Z_CRITICAL[confidence_level_percent] * se
    improvement = difference / p1 * 100 if p1 > 0 else None

    return SignificanceResult(
        z_score=z,
        p_value=p_value,
        is_significant=p_value < (1 - confidence_level_percent / 100),
        improvement_percentage=improvement,
        confidence_interval=ConfidenceInterval(
            lower=(difference - margin_of_error) * 100,
            upper=(difference + margin_of_error) * 100,
        ),
        confidence_level_percent=confidence_level_percent,
    )


def calculate_significance(experiment: Experiment) -> SignificanceResult | None:
    """
    Run the z-test for a control/treatment experiment.

    None means "not decidable yet": either group is under 30 impressions, or the
    experiment does not have exactly one control and one treatment.
    """
    control = experiment.control_variant()
    treatments = experiment.treatment_variants()

    if control is None or len(treatments) != 1:
        logger.info("Experiment %s has %d variants; significance only covers a control/treatment pair.",
                    experiment.id, len(experiment.variants))
        return None

    treatment = treatments[0]
    n1 = control.metrics.impressions
    n2 = treatment.metrics.impressions

    if n1 < MIN_GROUP_IMPRESSIONS or n2 < MIN_GROUP_IMPRESSIONS:
        logger.debug("Experiment %s has insufficient data (control=%d, treatment=%d).", experiment.id, n1, n2)
        return None

    result = z_test(
        n1=n1,
        p1=control.metrics.conversion_rate / 100,
        n2=n2,
        p2=treatment.metrics.conversion_rate / 100,
        confidence_level_percent=experiment.config.confidence_level_percent,
    )
    logger.debug("Experiment %s z=%.4f p=%.6f significant=%s", experiment.id, result.z_score, result.p_value, result.is_significant)
    return result
