from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
import uuid

from models.events import UserEvent
from models.results import Results


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive timestamps are taken to be UTC so they compare with aware ones
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Enumerations ---

class ExperimentType(str, Enum):
    HEADLINE = "headline"
    CTA = "cta"
    VALUE_PROP = "value-prop"
    SOCIAL_PROOF = "social-proof"
    PRICING = "pricing"
    DESIGN = "design"
    COPY = "copy"
    FEATURE = "feature"


class ExperimentCategory(str, Enum):
    CONVERSION = "conversion"
    ENGAGEMENT = "engagement"
    RETENTION = "retention"
    REVENUE = "revenue"


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HistoryAction(str, Enum):
    CREATED = "created"
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    ARCHIVED = "archived"


# --- Experiment document ---

class ExperimentConfig(BaseModel):
    target_page: str = Field(..., description="Page under test (e.g., 'homepage', 'pricing').")
    target_element: str | None = None
    traffic_split_percent: float = Field(default=50, ge=0, le=100, description="Share sent to treatment; control gets the remainder.")
    min_sample_size: int = Field(default=100, ge=1)
    confidence_level_percent: Literal[90, 95, 99] = 95
    min_duration_days: int = Field(default=7, ge=0)
    max_duration_days: int = Field(default=30, ge=1)

    @model_validator(mode="after")
    def check_duration_window(self):
        if self.min_duration_days > self.max_duration_days:
            raise ValueError("min_duration_days cannot exceed max_duration_days")
        return self


class Metrics(BaseModel):
    impressions: int = 0
    conversions: int = 0
    revenue: float = 0.0
    bounces: int = 0
    clicks: int = 0

    # Derived, always recomputed from the counters above
    conversion_rate: float = 0.0
    bounce_rate: float = 0.0
    average_revenue: float = 0.0


class AssignedUser(BaseModel):
    user_id: str  # user or session id
    assigned_at: datetime = Field(default_factory=utcnow)
    converted: bool = False
    revenue: float = 0.0
    events: list[UserEvent] = Field(default_factory=list)


class Variant(BaseModel):
    id: str
    name: str
    description: str | None = None
    is_control: bool = False
    # Creative payloads are opaque to the engine
    content: Any = None
    styles: Any = None
    traffic_percent: float | None = Field(default=None, ge=0, le=100)
    metrics: Metrics = Field(default_factory=Metrics)
    assigned_users: list[AssignedUser] = Field(default_factory=list)

    def find_user(self, user_id: str) -> AssignedUser | None:
        for assigned in self.assigned_users:
            if assigned.user_id == user_id:
                return assigned
        return None


class Schedule(BaseModel):
    start_date: datetime | None = None  # planned window
    end_date: datetime | None = None
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("*")
    @classmethod
    def assume_utc(cls, value):
        return _as_utc(value)


class HistoryEntry(BaseModel):
    action: HistoryAction
    timestamp: datetime = Field(default_factory=utcnow)
    details: str | None = None


class Experiment(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str | None = None
    hypothesis: str | None = None
    type: ExperimentType
    category: ExperimentCategory = ExperimentCategory.CONVERSION
    status: ExperimentStatus = ExperimentStatus.DRAFT
    config: ExperimentConfig
    variants: list[Variant] = Field(default_factory=list)
    results: Results = Field(default_factory=Results)
    schedule: Schedule = Field(default_factory=Schedule)
    history: list[HistoryEntry] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    # Optimistic concurrency token, bumped by every successful save
    version: int = 0

    def get_variant(self, variant_id: str) -> Variant | None:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def control_variant(self) -> Variant | None:
        return next((v for v in self.variants if v.is_control), None)

    def treatment_variants(self) -> list[Variant]:
        return [v for v in self.variants if not v.is_control]

    def find_assignment(self, user_id: str) -> tuple[Variant, AssignedUser] | None:
        """Locate the variant a user was bucketed into, if any."""
        for variant in self.variants:
            assigned = variant.find_user(user_id)
            if assigned:
                return variant, assigned
        return None


# --- Pydantic Models for Requests/Responses ---

class VariantCreate(BaseModel):
    """Defines a variant and, optionally, its explicit traffic weight."""
    id: str | None = Field(default=None, description="Stable variant id; generated when omitted.")
    name: str = Field(..., description="The display name of the variant (e.g., 'Blue Button').")
    description: str | None = None
    is_control: bool = False
    content: Any = None
    styles: Any = None
    traffic_percent: float | None = Field(default=None, ge=0, le=100, description="Traffic percentage (e.g., 50.0).")


class ExperimentCreate(BaseModel):
    """Schema for creating a new experiment via POST /experiments."""
    name: str
    description: str | None = None
    hypothesis: str | None = None
    type: ExperimentType
    category: ExperimentCategory = ExperimentCategory.CONVERSION
    config: ExperimentConfig
    variants: list[VariantCreate]
    start_date: datetime | None = None
    end_date: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM


class VariantResponse(BaseModel):
    id: str
    name: str
    is_control: bool
    traffic_percent: float | None = None
    metrics: Metrics

    class Config:
        from_attributes = True


class ExperimentResponse(BaseModel):
    """Schema for experiment payloads returned by the API."""
    id: str
    name: str
    type: ExperimentType
    status: ExperimentStatus
    config: ExperimentConfig
    variants: list[VariantResponse]
    schedule: Schedule
    created_at: datetime
    version: int

    class Config:
        from_attributes = True


class ExperimentAssignmentResponse(BaseModel):
    """Schema returned by GET /assignment/{user_id}."""
    experiment_id: str
    user_id: str
    variant_id: str
    variant_name: str
    assigned_at: datetime
    content: Any = None
