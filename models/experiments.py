from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Any

# --- Experiment definitions (client side) ---

class Variant(BaseModel):
    """One alternative of an experiment, with its relative weight and session counters."""
    id: str
    name: str = ""
    weight: float = Field(default=1.0, ge=0, description="Relative selection weight.")
    config: dict[str, Any] = Field(default_factory=dict, description="Rendering/behavior overrides for the UI layer.")

    # accumulated by the owning session only
    impressions: int = 0
    conversions: int = 0
    conversion_rate: float | None = None

class Experiment(BaseModel):
    """A named A/B test.

    Weights do not have to sum to 100. An empty variant list or all-zero
    weights are tolerated here and handled by the assignment rules.
    """
    test_id: str
    name: str = ""
    variants: list[Variant] = Field(default_factory=list)
    enabled: bool = True
    # accepted for compatibility with existing experiment definitions, not read by assignment
    traffic_split: dict[str, float] | None = None

    @property
    def total_weight(self) -> float:
        return sum(v.weight for v in self.variants)

    def find_variant(self, variant_id: str) -> Variant | None:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

class Assignment(BaseModel):
    """The session's decision for one experiment. Never mutated once created."""
    model_config = ConfigDict(frozen=True)

    test_id: str
    variant_id: str
    variant: Variant
    is_control: bool
    assigned_at: datetime

class StoredAssignment(BaseModel):
    """Persisted form of an assignment: ``{"variantId": ..., "assignedAt": <epoch ms>}``."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    variant_id: str
    assigned_at: int

# --- Reporting service schemas ---

class AssignmentCreate(BaseModel):
    """Schema for POST /api/ab-tests/assignments."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    test_id: str
    variant_id: str
    subject_key: str = Field(..., description="User id when known, otherwise the session id.")
    session_id: str | None = None
    is_control: bool = False
    assigned_at: datetime | None = None

class AssignmentRecordResponse(BaseModel):
    """Schema returned after recording an assignment."""
    id: int
    test_id: str
    variant_id: str
    subject_key: str
    is_control: bool
    assigned_at: datetime

    class Config:
        from_attributes = True
