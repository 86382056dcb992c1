from pydantic import BaseModel, Field
from typing import Any
from datetime import datetime

# --- Rollup readers ---

class WindowedResponse(BaseModel):
    generated_at: datetime
    window_start: datetime
    window_end: datetime
    no_data: bool

class DailyMetricsDay(BaseModel):
    day: str
    # scalar metrics by name; event_volume_by_name maps event name -> count
    metrics: dict[str, float | dict[str, float]] = Field(default_factory=dict)

class DailyMetricsResponse(WindowedResponse):
    """Schema returned by GET /v1/metrics/daily."""
    days: list[DailyMetricsDay] = Field(default_factory=list)

class VariantSummary(BaseModel):
    variant_id: str
    variant_name: str
    weight: float
    is_control: bool

class ExperimentSeriesPoint(BaseModel):
    day: str
    variant_id: str
    metric_name: str
    value: float
    dimensions: dict[str, Any] | None = None

class ExperimentMetrics(BaseModel):
    experiment_id: str
    status: str
    start_at: datetime | None = None
    end_at: datetime | None = None
    targeting: Any = None
    variants: list[VariantSummary] = Field(default_factory=list)
    latest_day: str | None = None
    latest_metrics_by_variant: dict[str, dict[str, float]] = Field(default_factory=dict)
    series: list[ExperimentSeriesPoint] = Field(default_factory=list)

class ExperimentMetricsResponse(WindowedResponse):
    """Schema returned by GET /v1/metrics/experiments."""
    experiments: list[ExperimentMetrics] = Field(default_factory=list)

class FunnelRow(BaseModel):
    day: str
    funnel_name: str
    step_name: str
    experiment_id: str | None = None
    variant_id: str | None = None
    users_count: int
    events_count: int

class FunnelMetricsResponse(WindowedResponse):
    """Schema returned by GET /v1/metrics/funnels."""
    rows: list[FunnelRow] = Field(default_factory=list)

class SummaryMetric(BaseModel):
    metric_name: str
    value: float
    dimensions: dict[str, Any] = Field(default_factory=dict)

class SummaryMetricsResponse(BaseModel):
    """Schema returned by GET /v1/metrics/summary."""
    generated_at: datetime
    metrics: list[SummaryMetric] = Field(default_factory=list)

# --- Load-test runs ---

class EndpointMetric(BaseModel):
    endpoint: str
    method: str
    requests_total: int
    success_count: int | None = None
    error_count: int | None = None
    timeout_count: int | None = None
    error_rate: float | None = None
    min_ms: float | None = None
    max_ms: float | None = None
    mean_ms: float | None = None
    p50_ms: float | None = None
    p95_ms: float | None = None
    p99_ms: float | None = None
    rps: float | None = None
    response_codes: dict[str, Any] | None = None

    class Config:
        from_attributes = True

class DataCheck(BaseModel):
    check_name: str
    passed: bool
    observed_value: float | None = None
    details: dict[str, Any] | None = None

    class Config:
        from_attributes = True

class LoadTestRunSummary(BaseModel):
    id: str
    run_name: str
    scenario_name: str
    phase: str
    status: str
    target_base_url: str
    git_sha: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int | None = None
    artifacts_path: str | None = None
    tags: dict[str, Any] | None = None
    notes: str | None = None
    error_text: str | None = None
    endpoint_metrics: list[EndpointMetric] = Field(default_factory=list)
    data_checks: list[DataCheck] = Field(default_factory=list)

    class Config:
        from_attributes = True

class LoadTestRunsResponse(BaseModel):
    """Schema returned by GET /v1/metrics/load-tests/runs."""
    generated_at: datetime
    runs: list[LoadTestRunSummary] = Field(default_factory=list)

class LatestLoadTestsResponse(BaseModel):
    """Schema returned by GET /v1/metrics/load-tests/latest, keyed by phase."""
    generated_at: datetime
    latest: dict[str, LoadTestRunSummary | None] = Field(default_factory=dict)

class EndpointDelta(BaseModel):
    method: str
    endpoint: str
    baseline: dict[str, float | None] | None = None
    candidate: dict[str, float | None] | None = None
    delta: dict[str, float | None] = Field(default_factory=dict)

class CheckDelta(BaseModel):
    check_name: str
    baseline: dict[str, Any] | None = None
    candidate: dict[str, Any] | None = None

class LoadTestComparisonResponse(BaseModel):
    """Schema returned by GET /v1/metrics/load-tests/compare."""
    generated_at: datetime
    baseline: LoadTestRunSummary
    candidate: LoadTestRunSummary
    endpoint_deltas: list[EndpointDelta] = Field(default_factory=list)
    check_deltas: list[CheckDelta] = Field(default_factory=list)

# --- Quality gate ---

class GateResult(BaseModel):
    ok: bool
    run: dict[str, Any]
    gate: dict[str, Any]
    failures: list[str] = Field(default_factory=list)
