from pydantic import BaseModel, Field, field_validator
from typing import Any, Literal
from datetime import datetime
import re

MAX_EVENTS_PER_BATCH = 100
MAX_EVENT_NAME_LENGTH = 80

EVENT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

# --- Inbound shapes (validated by services.event_validation) ---

class EventEnvelope(BaseModel):
    """Batch level fields of POST /v1/events. Items are validated one by one."""
    anonymous_user_id: str
    session_id: str | None = None
    install_id: str | None = None
    platform: Literal["ios", "android"] | None = None
    app_version: str | None = None
    sent_at: str | None = None
    events: list[Any]

    @field_validator("anonymous_user_id")
    @classmethod
    def _non_empty_user(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("anonymous_user_id is required")
        return value

    @field_validator("events")
    @classmethod
    def _batch_size(cls, value: list[Any]) -> list[Any]:
        if not value:
            raise ValueError("events must be a non-empty array")
        if len(value) > MAX_EVENTS_PER_BATCH:
            raise ValueError(f"events must contain at most {MAX_EVENTS_PER_BATCH} items")
        return value

class EventItem(BaseModel):
    """A single event inside a batch."""
    event_id: str | None = None
    event_name: str
    occurred_at: str
    properties: dict[str, Any] | None = None
    context: dict[str, Any] | None = None

    @field_validator("event_id")
    @classmethod
    def _uuid(cls, value: str | None) -> str | None:
        if value is not None and not UUID_PATTERN.match(value):
            raise ValueError("event_id must be a valid uuid")
        return value

    @field_validator("event_name")
    @classmethod
    def _event_name(cls, value: str) -> str:
        if not value:
            raise ValueError("event_name is required")
        if len(value) > MAX_EVENT_NAME_LENGTH:
            raise ValueError(f"event_name must be <= {MAX_EVENT_NAME_LENGTH} chars")
        if not EVENT_NAME_PATTERN.match(value):
            raise ValueError("event_name has invalid characters")
        return value

    @field_validator("occurred_at")
    @classmethod
    def _occurred_at(cls, value: str) -> str:
        if not value:
            raise ValueError("occurred_at is required")
        return value

# --- Parsed batch ---

class NormalizedEvent(BaseModel):
    index: int
    event_id: str
    event_name: str
    occurred_at: datetime
    properties: dict[str, Any] | None = None
    context: dict[str, Any] | None = None

class EventResult(BaseModel):
    """Per index outcome. Exactly one of event_id / error is set."""
    index: int
    status: Literal["accepted", "rejected"]
    event_id: str | None = None
    error: str | None = None

class ParsedEventBatch(BaseModel):
    anonymous_user_id: str
    session_id: str | None = None
    install_id: str | None = None
    platform: str | None = None
    app_version: str | None = None
    sent_at: datetime | None = None
    accepted_events: list[NormalizedEvent] = Field(default_factory=list)
    results: list[EventResult] = Field(default_factory=list)
    accepted: int = 0
    rejected: int = 0

# --- Enrichment and ingestion ---

class EventAssignmentContext(BaseModel):
    """Snapshot of the user's running assignments stamped on every stored event."""
    assignment_version: int | None = None
    assignments: list[dict[str, str]] = Field(default_factory=list)
    experiment_map: dict[str, str] = Field(default_factory=dict)

class EventIngestionResult(BaseModel):
    """Schema returned by POST /v1/events."""
    ok: bool = True
    received_at: datetime
    accepted: int
    rejected: int
    results: list[EventResult]
    inserted: int
