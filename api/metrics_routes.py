from fastapi import APIRouter, Query
from sqlalchemy.orm import Session

from models.metrics import (DailyMetricsResponse, ExperimentMetricsResponse, FunnelMetricsResponse,
                            LatestLoadTestsResponse, LoadTestComparisonResponse, LoadTestRunsResponse,
                            SummaryMetricsResponse)
from services import aggregation
from services.errors import ValidationError
from services.quality import normalize_phase
from api.depends import CLIENT_AUTH, DB_DEPENDENCY

import logging

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7
MAX_WINDOW_DAYS = 90

# Dashboard reads, all behind the bearer token
metrics_router = APIRouter(
    prefix="/v1/metrics",
    tags=["metrics"],
    dependencies=[CLIENT_AUTH],
)

WINDOW_DAYS = Query(DEFAULT_WINDOW_DAYS, ge=1, le=MAX_WINDOW_DAYS)


@metrics_router.get("/summary", response_model=SummaryMetricsResponse)
def summary_metrics_route(window_days: int = WINDOW_DAYS, db: Session = DB_DEPENDENCY):
    return aggregation.get_summary_metrics(db, window_days)


@metrics_router.get("/daily", response_model=DailyMetricsResponse)
def daily_metrics_route(window_days: int = WINDOW_DAYS, db: Session = DB_DEPENDENCY):
    return aggregation.get_daily_metrics(db, window_days)


@metrics_router.get("/experiments", response_model=ExperimentMetricsResponse)
def experiment_metrics_route(
    window_days: int = WINDOW_DAYS,
    experiment_id: str | None = None,
    db: Session = DB_DEPENDENCY
):
    """Per-variant metric series, optionally for a single experiment."""
    return aggregation.get_experiment_metrics(db, window_days, experiment_id=experiment_id)


@metrics_router.get("/funnels", response_model=FunnelMetricsResponse)
def funnel_metrics_route(
    window_days: int = WINDOW_DAYS,
    funnel_name: str | None = None,
    db: Session = DB_DEPENDENCY
):
    return aggregation.get_funnel_metrics(db, window_days, funnel_name=funnel_name)


# --- Load-test runs ---

@metrics_router.get("/load-tests/runs", response_model=LoadTestRunsResponse)
def load_test_runs_route(
    limit: int = aggregation.DEFAULT_LOAD_TEST_LIMIT,
    scenario: str | None = None,
    phase: str | None = None,
    db: Session = DB_DEPENDENCY
):
    """Most recent runs first; limit is clamped to 1..100."""
    return aggregation.get_load_test_runs(db, limit=limit, scenario_name=scenario, phase=normalize_phase(phase))


@metrics_router.get("/load-tests/latest", response_model=LatestLoadTestsResponse)
def latest_load_tests_route(phase: str | None = None, db: Session = DB_DEPENDENCY):
    return aggregation.get_latest_load_tests(db, phase=normalize_phase(phase))


@metrics_router.get("/load-tests/compare", response_model=LoadTestComparisonResponse)
def compare_load_tests_route(
    baseline_run_id: str | None = None,
    candidate_run_id: str | None = None,
    db: Session = DB_DEPENDENCY
):
    if not baseline_run_id or not candidate_run_id:
        raise ValidationError("baseline_run_id and candidate_run_id are required.")
    return aggregation.get_load_test_comparison(db, baseline_run_id, candidate_run_id)
