from pydantic import BaseModel, Field
from datetime import datetime
from typing import Literal

# --- Session-local statistics ---

class VariantStats(BaseModel):
    """What this session has observed for one variant."""
    impressions: int
    conversions: int
    conversion_rate: float | None  # conversions / impressions, unset without impressions

class SessionTestResults(BaseModel):
    """Returned by the session's get_test_results. Not a substitute for server-side reporting."""
    test_id: str
    assigned_variant_id: str | None
    variants: dict[str, VariantStats]

# --- Server-side reporting ---

class VariantResult(BaseModel):
    """Detailed statistics for a single variant."""
    total_assignments: int
    impressions: int
    conversion_count: int
    conversion_rate: float  # conversion_count / impressions * 100
    p_value: float | None = None
    significant: bool = False

class ExperimentResultsSummary(BaseModel):
    """Schema returned by GET /api/ab-tests/{test_id}/results."""
    test_id: str
    report_generated_at: datetime
    control_variant_id: str | None
    winner: str | None = None
    # Key is variant id (e.g., 'control')
    variant_data: dict[str, VariantResult]

class ConversionReportRequest(BaseModel):
    goal_id: str | None = None
    start_date: datetime | None = None
    last_day: int | None = Field(default=None, ge=1, description="eg: 7 for the last 7 days, overrides start_date")

class ConversionReport(BaseModel):
    """Schema returned by POST /api/analytics/conversion-report."""
    report_generated_at: datetime
    start_date: datetime | None
    sessions: int
    conversions: int
    conversion_rate: float
    conversions_by_goal: dict[str, int]

class ExportRequest(BaseModel):
    format: Literal["json", "csv"] = "json"
    event_name: str | None = None
    session_id: str | None = None
    start_date: datetime | None = None
    limit: int = Field(default=10000, ge=1, le=100000)
