"""Read side of the rollup tables and load-test runs for the dashboard."""
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from datetime import datetime
from data.database import (DailyMetricRollup, Experiment, ExperimentMetricRollup, FunnelRollup, LoadTestPhase,
                           LoadTestRun)
from models.metrics import (CheckDelta, DailyMetricsDay, DailyMetricsResponse, EndpointDelta, ExperimentMetrics,
                            ExperimentMetricsResponse, ExperimentSeriesPoint, FunnelMetricsResponse, FunnelRow,
                            LatestLoadTestsResponse, LoadTestComparisonResponse, LoadTestRunSummary,
                            LoadTestRunsResponse, SummaryMetric, SummaryMetricsResponse, VariantSummary)
from services.errors import NotFoundError, storage_errors
from services.timeutil import as_utc, iso_day, utcnow, window_bounds
import logging

logger = logging.getLogger(__name__)

EVENT_VOLUME_METRIC = "event_volume_by_name"
DEFAULT_LOAD_TEST_LIMIT = 20
MAX_LOAD_TEST_LIMIT = 100

# Endpoint stats compared between two load-test runs
COMPARED_ENDPOINT_FIELDS = ("p95_ms", "p99_ms", "error_rate", "rps")


def _window_days_range(window_days: int, now: datetime | None):
    window_start, window_end = window_bounds(window_days, now)
    return window_start, window_end, window_start.date(), window_end.date()


def get_daily_metrics(db: Session, window_days: int, now: datetime | None = None) -> DailyMetricsResponse:
    window_start, window_end, first_day, end_day = _window_days_range(window_days, now)
    with storage_errors():
        rows = db.scalars(
            select(DailyMetricRollup)
            .where(DailyMetricRollup.day >= first_day, DailyMetricRollup.day < end_day)
            .order_by(DailyMetricRollup.day, DailyMetricRollup.metric_name, DailyMetricRollup.dimension_key)
        ).all()

    by_day: dict[str, DailyMetricsDay] = {}
    for row in rows:
        bucket = by_day.setdefault(iso_day(row.day), DailyMetricsDay(day=iso_day(row.day)))
        if row.metric_name == EVENT_VOLUME_METRIC:
            bucket.metrics.setdefault(EVENT_VOLUME_METRIC, {})[row.dimension_key] = row.value
        else:
            bucket.metrics[row.metric_name] = row.value

    return DailyMetricsResponse(
        generated_at=utcnow(),
        window_start=window_start,
        window_end=window_end,
        no_data=not rows,
        days=list(by_day.values()),
    )


def get_experiment_metrics(db: Session, window_days: int, experiment_id: str | None = None,
                           now: datetime | None = None) -> ExperimentMetricsResponse:
    window_start, window_end, first_day, end_day = _window_days_range(window_days, now)
    with storage_errors():
        experiment_stmt = select(Experiment).options(selectinload(Experiment.variants)).order_by(
            Experiment.experiment_id)
        metric_stmt = select(ExperimentMetricRollup).where(
            ExperimentMetricRollup.day >= first_day, ExperimentMetricRollup.day < end_day)
        if experiment_id:
            experiment_stmt = experiment_stmt.where(Experiment.experiment_id == experiment_id)
            metric_stmt = metric_stmt.where(ExperimentMetricRollup.experiment_id == experiment_id)
        experiments = db.scalars(experiment_stmt).all()
        rows = db.scalars(metric_stmt.order_by(
            ExperimentMetricRollup.experiment_id, ExperimentMetricRollup.day,
            ExperimentMetricRollup.variant_id, ExperimentMetricRollup.metric_name,
        )).all()

    rows_by_experiment: dict[str, list[ExperimentMetricRollup]] = {}
    for row in rows:
        rows_by_experiment.setdefault(row.experiment_id, []).append(row)

    response_experiments = []
    for experiment in experiments:
        experiment_rows = rows_by_experiment.get(experiment.experiment_id, [])
        latest_day = iso_day(experiment_rows[-1].day) if experiment_rows else None
        latest_metrics: dict[str, dict[str, float]] = {}
        for row in experiment_rows:
            if iso_day(row.day) == latest_day:
                latest_metrics.setdefault(row.variant_id, {})[row.metric_name] = row.value

        response_experiments.append(ExperimentMetrics(
            experiment_id=experiment.experiment_id,
            status=experiment.status,
            start_at=as_utc(experiment.start_at),
            end_at=as_utc(experiment.end_at),
            targeting=experiment.targeting,
            variants=[VariantSummary(variant_id=v.variant_id, variant_name=v.variant_name, weight=v.weight,
                                     is_control=v.is_control) for v in experiment.variants],
            latest_day=latest_day,
            latest_metrics_by_variant=latest_metrics,
            series=[ExperimentSeriesPoint(day=iso_day(row.day), variant_id=row.variant_id,
                                          metric_name=row.metric_name, value=row.value,
                                          dimensions=row.dimensions if isinstance(row.dimensions, dict) else None)
                    for row in experiment_rows],
        ))

    return ExperimentMetricsResponse(
        generated_at=utcnow(),
        window_start=window_start,
        window_end=window_end,
        no_data=not rows,
        experiments=response_experiments,
    )


def get_funnel_metrics(db: Session, window_days: int, funnel_name: str | None = None,
                       now: datetime | None = None) -> FunnelMetricsResponse:
    window_start, window_end, first_day, end_day = _window_days_range(window_days, now)
    with storage_errors():
        stmt = select(FunnelRollup).where(FunnelRollup.day >= first_day, FunnelRollup.day < end_day)
        if funnel_name:
            stmt = stmt.where(FunnelRollup.funnel_name == funnel_name)
        rows = db.scalars(stmt.order_by(FunnelRollup.day, FunnelRollup.funnel_name, FunnelRollup.step_name,
                                        FunnelRollup.dimension_key)).all()

    return FunnelMetricsResponse(
        generated_at=utcnow(),
        window_start=window_start,
        window_end=window_end,
        no_data=not rows,
        rows=[FunnelRow(day=iso_day(row.day), funnel_name=row.funnel_name, step_name=row.step_name,
                        experiment_id=row.experiment_id, variant_id=row.variant_id,
                        users_count=row.users_count, events_count=row.events_count) for row in rows],
    )


def get_summary_metrics(db: Session, window_days: int, now: datetime | None = None) -> SummaryMetricsResponse:
    """Headline numbers: latest day's overall metrics plus per-variant logging rates."""
    daily = get_daily_metrics(db, window_days, now=now)
    if not daily.days:
        return SummaryMetricsResponse(generated_at=utcnow(), metrics=[])

    latest = daily.days[-1]
    metrics: list[SummaryMetric] = []

    def _latest(metric_name: str, dimensions: dict):
        value = latest.metrics.get(metric_name)
        if isinstance(value, (int, float)):
            metrics.append(SummaryMetric(metric_name=metric_name, value=value, dimensions=dimensions))

    _latest("logging_rate_24h", {"overall": True, "day": latest.day, "window_days": window_days})
    _latest("dau", {"day": latest.day})
    metrics.append(SummaryMetric(
        metric_name="sessions_submitted_total",
        value=sum(day.metrics.get("sessions_submitted", 0) for day in daily.days
                  if isinstance(day.metrics.get("sessions_submitted", 0), (int, float))),
        dimensions={"window_days": window_days},
    ))
    _latest("ingestion_lag_p50", {"day": latest.day, "unit": "seconds"})
    _latest("ingestion_lag_p95", {"day": latest.day, "unit": "seconds"})

    experiments = get_experiment_metrics(db, window_days, now=now)
    for experiment in experiments.experiments:
        for variant_id, values in experiment.latest_metrics_by_variant.items():
            value = values.get("logging_rate_24h_by_variant")
            if value is None:
                continue
            metrics.append(SummaryMetric(metric_name="logging_rate_24h", value=value, dimensions={
                "experiment_id": experiment.experiment_id,
                "variant_id": variant_id,
                "day": experiment.latest_day,
                "window_days": window_days,
            }))

    return SummaryMetricsResponse(generated_at=utcnow(), metrics=metrics)


# --- Load-test runs ---

def _load_test_query():
    return select(LoadTestRun).options(selectinload(LoadTestRun.endpoint_metrics),
                                       selectinload(LoadTestRun.data_checks))


def _run_summary(run: LoadTestRun) -> LoadTestRunSummary:
    summary = LoadTestRunSummary.model_validate(run)
    summary.started_at = as_utc(summary.started_at)
    summary.ended_at = as_utc(summary.ended_at)
    return summary


def get_load_test_runs(db: Session, limit: int = DEFAULT_LOAD_TEST_LIMIT, scenario_name: str | None = None,
                       phase: str | None = None) -> LoadTestRunsResponse:
    limit = min(max(int(limit), 1), MAX_LOAD_TEST_LIMIT)
    with storage_errors():
        stmt = _load_test_query()
        if scenario_name:
            stmt = stmt.where(LoadTestRun.scenario_name == scenario_name)
        if phase:
            stmt = stmt.where(LoadTestRun.phase == phase)
        runs = db.scalars(stmt.order_by(LoadTestRun.started_at.desc()).limit(limit)).all()

    return LoadTestRunsResponse(generated_at=utcnow(), runs=[_run_summary(run) for run in runs])


def get_latest_load_tests(db: Session, phase: str | None = None) -> LatestLoadTestsResponse:
    """Most recent run per phase (only the requested phase when given)."""
    phases = [phase] if phase else list(LoadTestPhase.ALL)
    latest = {}
    with storage_errors():
        for current_phase in phases:
            run = db.scalars(_load_test_query().where(LoadTestRun.phase == current_phase)
                             .order_by(LoadTestRun.started_at.desc()).limit(1)).first()
            latest[current_phase] = _run_summary(run) if run else None

    return LatestLoadTestsResponse(generated_at=utcnow(), latest=latest)


def _delta(baseline: float | None, candidate: float | None) -> float | None:
    if baseline is None or candidate is None:
        return None
    return candidate - baseline


def get_load_test_comparison(db: Session, baseline_run_id: str, candidate_run_id: str) -> LoadTestComparisonResponse:
    with storage_errors():
        runs = {run.id: run for run in db.scalars(
            _load_test_query().where(LoadTestRun.id.in_([baseline_run_id, candidate_run_id]))).all()}
    for run_id in (baseline_run_id, candidate_run_id):
        if run_id not in runs:
            raise NotFoundError(f"Load-test run '{run_id}' not found.")

    baseline = _run_summary(runs[baseline_run_id])
    candidate = _run_summary(runs[candidate_run_id])

    baseline_endpoints = {(m.method, m.endpoint): m for m in baseline.endpoint_metrics}
    candidate_endpoints = {(m.method, m.endpoint): m for m in candidate.endpoint_metrics}
    endpoint_deltas = []
    for key in sorted(set(baseline_endpoints) | set(candidate_endpoints)):
        base = baseline_endpoints.get(key)
        cand = candidate_endpoints.get(key)
        base_stats = {field: getattr(base, field) for field in COMPARED_ENDPOINT_FIELDS} if base else None
        cand_stats = {field: getattr(cand, field) for field in COMPARED_ENDPOINT_FIELDS} if cand else None
        endpoint_deltas.append(EndpointDelta(
            method=key[0],
            endpoint=key[1],
            baseline=base_stats,
            candidate=cand_stats,
            delta={field: _delta((base_stats or {}).get(field), (cand_stats or {}).get(field))
                   for field in COMPARED_ENDPOINT_FIELDS},
        ))

    baseline_checks = {check.check_name: check for check in baseline.data_checks}
    candidate_checks = {check.check_name: check for check in candidate.data_checks}
    check_deltas = []
    for check_name in sorted(set(baseline_checks) | set(candidate_checks)):
        base = baseline_checks.get(check_name)
        cand = candidate_checks.get(check_name)
        check_deltas.append(CheckDelta(
            check_name=check_name,
            baseline={"passed": base.passed, "observed_value": base.observed_value} if base else None,
            candidate={"passed": cand.passed, "observed_value": cand.observed_value} if cand else None,
        ))

    return LoadTestComparisonResponse(generated_at=utcnow(), baseline=baseline, candidate=candidate,
                                      endpoint_deltas=endpoint_deltas, check_deltas=check_deltas)
