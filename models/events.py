from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Literal
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EngagementType(str, Enum):
    IMPRESSION = "impression"
    CONVERSION = "conversion"

class EngagementRecord(BaseModel):
    """An impression or conversion recorded against a test/variant pair. Append-only."""
    model_config = ConfigDict(frozen=True)

    test_id: str
    variant_id: str
    event_type: EngagementType
    timestamp: datetime = Field(default_factory=utcnow)
    context: dict[str, Any] = Field(default_factory=dict)

# --- Analytics wire format (camelCase JSON) ---

class AnalyticsEvent(BaseModel):
    """One queued analytics event as sent to the reporting endpoint."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_name: str
    audience: str = "unknown"
    section: str = "unknown"
    action: str | None = None
    value: float | None = None
    custom_data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

class AnalyticsBatch(BaseModel):
    """Schema for POST /api/analytics/events."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    events: list[AnalyticsEvent] = Field(default_factory=list)

class ImmediateEvent(BaseModel):
    """Schema for the high-priority POST /api/analytics/conversion and /error calls."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    session_id: str
    user_id: str | None = None
    audience: str = "unknown"
    goal_id: str | None = None
    error_type: str | None = None
    value: float | None = None
    timestamp: datetime = Field(default_factory=utcnow)

class IngestResponse(BaseModel):
    status: str
    task_id: str | None = None
    accepted: int = 0

# --- Tracking inputs consumed by the session ---

class ClickCoordinates(BaseModel):
    x: float
    y: float

class PageViewEvent(BaseModel):
    page: str
    referrer: str | None = None
    additional_data: dict[str, Any] = Field(default_factory=dict)

class SectionViewEvent(BaseModel):
    section: str
    time_spent: float | None = None
    scroll_depth: float | None = None
    viewport_visible: bool = True
    interaction_count: int = 0

class CTAClickEvent(BaseModel):
    action: str = Field(..., description="High-level action, e.g. 'demo' or 'trial'.")
    section: str = "unknown"
    audience: str | None = None
    cta_text: str | None = None
    cta_position: str | None = None
    cta_type: str | None = None
    target_url: str | None = None
    click_coordinates: ClickCoordinates | None = None
    additional_data: dict[str, Any] = Field(default_factory=dict)

class FormSubmissionEvent(BaseModel):
    form_type: str
    form_id: str | None = None
    success: bool = True
    error_message: str | None = None
    form_data: dict[str, Any] | None = None
    validation_errors: list[str] = Field(default_factory=list)
    time_to_complete: float | None = None
    field_interactions: int = 0
    abandonment_point: str | None = None
    completed_fields: list[str] = Field(default_factory=list)

class CalculatorUsageEvent(BaseModel):
    step: int
    total_steps: int
    step_name: str | None = None
    completed: bool = False
    calculator_data: dict[str, Any] | None = None
    time_spent: float | None = None
    backtrack_count: int = 0
    help_used: bool = False

class ScrollEvent(BaseModel):
    percentage: float = Field(..., ge=0, le=100)
    section: str | None = None
    scroll_direction: Literal["up", "down"] = "down"
    scroll_speed: float | None = None
