from pydantic import BaseModel, Field
from typing import Literal
from datetime import datetime

JobName = Literal["daily", "experiment", "funnel"]

class RollupWindow(BaseModel):
    """[window_start, window_end) aligned to UTC midnights, evaluated at ``now``."""
    window_start: datetime
    window_end: datetime
    now: datetime

class JobResult(BaseModel):
    rows_written: int = 0
    ignored_count: int = 0

class JobSummary(JobResult):
    job_name: JobName

class RollupSummary(BaseModel):
    """Schema returned by run_rollups and POST /v1/rollups."""
    window_start: datetime
    window_end: datetime
    jobs: list[JobSummary] = Field(default_factory=list)

class RollupRequest(BaseModel):
    """Schema for POST /v1/rollups."""
    window_days: int = Field(default=14, ge=1, le=180)
    jobs: list[JobName] | None = None
