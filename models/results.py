from pydantic import BaseModel, Field
from datetime import datetime


class ConfidenceInterval(BaseModel):
    """Interval for the conversion-rate difference, in percentage points."""
    lower: float
    upper: float


class SignificanceResult(BaseModel):
    """Outcome of the two-proportion z-test between control and treatment."""
    z_score: float
    p_value: float
    is_significant: bool
    # None when the control converts at 0% and no relative lift exists
    improvement_percentage: float | None
    confidence_interval: ConfidenceInterval
    confidence_level_percent: int


class Summary(BaseModel):
    total_impressions: int = 0
    total_conversions: int = 0
    total_revenue: float = 0.0
    average_conversion_rate: float = 0.0
    test_duration_days: int = 0


class VariantSnapshot(BaseModel):
    variant_id: str
    impressions: int = 0
    conversions: int = 0
    revenue: float = 0.0
    conversion_rate: float = 0.0


class DailySnapshot(BaseModel):
    """Per-variant activity logged during a single UTC day."""
    date: datetime
    variants: list[VariantSnapshot] = Field(default_factory=list)


class Report(BaseModel):
    conclusion: str
    recommendations: str
    next_steps: str
    generated_at: datetime


class Results(BaseModel):
    winner: str | None = None  # Variant ID
    winner_declared_at: datetime | None = None
    statistical_significance: int | None = None  # confidence level the verdict was reached at
    is_significant: bool | None = None
    z_score: float | None = None
    p_value: float | None = None
    improvement_percentage: float | None = None
    confidence_interval: ConfidenceInterval | None = None
    summary: Summary | None = None
    daily_snapshots: list[DailySnapshot] = Field(default_factory=list)
    report: Report | None = None
    # Live numbers for an experiment that has not been completed yet
    provisional: bool = False


class VariantResult(BaseModel):
    """Detailed statistics for a single variant."""
    name: str
    is_control: bool
    impressions: int
    conversions: int
    revenue: float
    conversion_rate: float  # conversions / impressions * 100
    bounce_rate: float
    average_revenue: float
    assigned_users: int


class ExperimentResultsSummary(BaseModel):
    """Schema returned by GET /experiments/{id}/results."""
    experiment_id: str
    experiment_name: str
    status: str
    report_generated_at: datetime
    results: Results
    # Key is variant id (e.g., 'control')
    variant_data: dict[str, VariantResult]
