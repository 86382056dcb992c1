from pydantic import BaseModel, Field, field_validator
from typing import Any, Literal
from datetime import datetime

# --- Pydantic Models for Requests/Responses ---

class AssignmentRequest(BaseModel):
    """Schema for POST /v1/assignment."""
    anonymous_user_id: str = Field(..., description="Client generated, stable per install or account.")
    session_id: str | None = None
    platform: Literal["ios", "android"] | None = None
    app_version: str | None = Field(default=None, description="Free form, coerced semver style for targeting.")
    install_id: str | None = None

    @field_validator("anonymous_user_id")
    @classmethod
    def _non_empty_user(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Field 'anonymous_user_id' is required and must be non-empty.")
        return value

class ExperimentAssignment(BaseModel):
    """One resolved (experiment, variant) pair."""
    experiment_id: str
    variant_id: str
    variant_name: str

class AssignmentResult(BaseModel):
    """What the resolver produces for one user."""
    assignment_version: int
    assignments: list[ExperimentAssignment] = Field(default_factory=list)
    config: dict[str, Any]

class AssignmentResponse(AssignmentResult):
    """Schema returned by POST /v1/assignment."""
    anonymous_user_id: str
    generated_at: datetime
