import json
import pytest
from fastapi import status
from sqlalchemy import func, select
from datetime import timedelta
from config import config
from data.database import DailyMetricRollup, ExperimentMetricRollup, FunnelRollup, RollupRun, RunStatus, get_engine
from data.locks import advisory_lock
from rollups import cli, coordinator, daily
from rollups.common import percentile
from rollups.coordinator import run_rollups
from services.errors import JobFailure, LockContention, ValidationError
from seed_data import NOW, TODAY, YESTERDAY, add_event

AUTH_HEADERS = {"Authorization": "Bearer fake-client-token"}


def _daily(db, day, metric, dimension_key="overall"):
    return db.scalars(select(DailyMetricRollup).where(
        DailyMetricRollup.day == day, DailyMetricRollup.metric_name == metric,
        DailyMetricRollup.dimension_key == dimension_key)).one().value


def _experiment_metric(db, day, variant_id, metric):
    return db.scalars(select(ExperimentMetricRollup).where(
        ExperimentMetricRollup.day == day, ExperimentMetricRollup.variant_id == variant_id,
        ExperimentMetricRollup.metric_name == metric)).one().value


def _row_counts(db):
    return [db.scalar(select(func.count()).select_from(model))
            for model in (DailyMetricRollup, ExperimentMetricRollup, FunnelRollup)]


def test_daily_metrics(seeded):
    summary = run_rollups(2, jobs=["daily"], now=NOW)

    assert [job.job_name for job in summary.jobs] == ["daily"]
    assert summary.jobs[0].rows_written == 15
    assert _daily(seeded, YESTERDAY, "dau") == 1
    assert _daily(seeded, YESTERDAY, "new_users") == 1
    assert _daily(seeded, YESTERDAY, "sessions_submitted") == 1
    assert _daily(seeded, YESTERDAY, "logging_rate_24h") == 1.0
    assert _daily(seeded, YESTERDAY, "ingestion_lag_p50") == 30.0
    assert _daily(seeded, YESTERDAY, "event_volume_by_name", "session_submitted") == 1
    assert _daily(seeded, TODAY, "new_users") == 1
    assert _daily(seeded, TODAY, "logging_rate_24h") == 0.0
    assert _daily(seeded, TODAY, "event_volume_by_name", "app_opened") == 1


def test_experiment_metrics(seeded):
    run_rollups(2, jobs=["experiment"], now=NOW)

    assert _experiment_metric(seeded, YESTERDAY, "control", "users_assigned") == 1
    assert _experiment_metric(seeded, YESTERDAY, "control", "users_active_d1") == 1
    assert _experiment_metric(seeded, YESTERDAY, "control", "sessions_submitted_d7") == 1
    assert _experiment_metric(seeded, YESTERDAY, "control", "logging_rate_24h_by_variant") == 1.0
    assert _experiment_metric(seeded, YESTERDAY, "treatment", "users_assigned") == 0
    assert _experiment_metric(seeded, TODAY, "treatment", "users_assigned") == 1
    assert _experiment_metric(seeded, TODAY, "treatment", "logging_rate_24h_by_variant") == 0.0
    # 2 variants x 2 days x 4 metrics
    assert seeded.scalar(select(func.count()).select_from(ExperimentMetricRollup)) == 16


def test_funnel_rows(seeded):
    run_rollups(2, jobs=["funnel"], now=NOW)

    rows = seeded.scalars(select(FunnelRollup).where(FunnelRollup.day == YESTERDAY,
                                                     FunnelRollup.step_name == "active_open")).all()
    by_key = {row.dimension_key: row for row in rows}
    assert set(by_key) == {"overall", "landing_tab:control"}
    assert by_key["overall"].users_count == 1
    assert by_key["landing_tab:control"].experiment_id == "landing_tab"

    empty = seeded.scalars(select(FunnelRollup).where(FunnelRollup.day == TODAY,
                                                      FunnelRollup.step_name == "exercise_logged")).all()
    assert [(row.dimension_key, row.users_count, row.events_count) for row in empty] == [("overall", 0, 0)]


def test_rerun_is_idempotent(seeded):
    run_rollups(2, now=NOW)
    first_counts = _row_counts(seeded)
    first_rate = _daily(seeded, YESTERDAY, "logging_rate_24h")

    run_rollups(2, now=NOW)
    seeded.expire_all()
    assert _row_counts(seeded) == first_counts
    assert _daily(seeded, YESTERDAY, "logging_rate_24h") == first_rate


def test_runs_are_recorded(seeded):
    run_rollups(2, now=NOW)

    runs = seeded.scalars(select(RollupRun).order_by(RollupRun.id)).all()
    assert [run.job_name for run in runs] == ["daily_metrics_rollup", "experiment_metrics_rollup", "funnel_rollup"]
    assert all(run.status == RunStatus.SUCCESS for run in runs)
    assert all(run.finished_at is not None for run in runs)


def test_out_of_range_events_are_ignored_and_counted(seeded):
    add_event(seeded, "user-c", "app_opened", NOW + timedelta(hours=2))
    seeded.commit()

    summary = run_rollups(2, jobs=["daily"], now=NOW)

    assert summary.jobs[0].ignored_count == 1
    assert _daily(seeded, TODAY, "dau") == 1


def test_lock_contention_fails_fast(seeded):
    with advisory_lock(get_engine(), namespace=config.rollup_lock_namespace, key=config.rollup_lock_key) as held:
        assert held
        with pytest.raises(LockContention):
            run_rollups(2, now=NOW)

    assert seeded.scalar(select(func.count()).select_from(RollupRun)) == 0


def test_failed_job_is_marked_failed(seeded, monkeypatch):
    def explode(db, window):
        raise RuntimeError("boom")

    monkeypatch.setitem(coordinator.JOBS, "daily", (daily.JOB_NAME, explode))

    with pytest.raises(JobFailure) as exc_info:
        run_rollups(2, now=NOW)

    assert exc_info.value.job_name == "daily_metrics_rollup"
    run = seeded.scalars(select(RollupRun)).one()
    assert run.status == RunStatus.FAILED
    assert run.error_text == "boom"
    assert run.finished_at is not None


def test_invalid_arguments():
    with pytest.raises(ValidationError):
        run_rollups(0)
    with pytest.raises(ValidationError):
        run_rollups(181)
    with pytest.raises(ValidationError):
        run_rollups(3, jobs=["weekly"])


def test_percentile_interpolates():
    assert percentile([], 0.5) == 0.0
    assert percentile([10], 0.95) == 10.0
    assert percentile([0, 10], 0.5) == 5.0
    assert percentile([1, 2, 3, 4], 0.95) == pytest.approx(3.85)


def test_rollup_endpoint(client, seeded):
    response = client.post("/v1/rollups", json={"window_days": 2, "jobs": ["daily"]})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED

    response = client.post("/v1/rollups", json={"window_days": 2, "jobs": ["daily"]}, headers=AUTH_HEADERS)
    assert response.status_code == status.HTTP_200_OK
    assert [job["job_name"] for job in response.json()["jobs"]] == ["daily"]

    response = client.post("/v1/rollups", json={"window_days": 0}, headers=AUTH_HEADERS)
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_rollup_endpoint_conflict(client):
    with advisory_lock(get_engine(), namespace=config.rollup_lock_namespace, key=config.rollup_lock_key):
        response = client.post("/v1/rollups", json={"window_days": 1}, headers=AUTH_HEADERS)
    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.headers["Retry-After"] == "1"


def test_cli_idempotency_check(seeded, capsys):
    assert cli.main(["--window-days", "2", "--check-idempotency"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["ok"] is True
    assert result["first"] == result["second"]
    assert result["mismatched_tables"] == []


def test_idempotency_check_detects_changed_values(seeded, monkeypatch):
    calls = []

    def drifting_rollups(window_days, now=None):
        summary = run_rollups(window_days, now=now)
        calls.append(window_days)
        if len(calls) == 2:
            # same rows, different value on the second pass
            row = seeded.scalars(select(DailyMetricRollup).where(DailyMetricRollup.metric_name == "dau")).first()
            row.value += 1
            seeded.commit()
        return summary

    monkeypatch.setattr(cli, "run_rollups", drifting_rollups)

    result = cli.check_idempotency(2)

    assert result["ok"] is False
    assert result["first"] == result["second"]
    assert result["mismatched_tables"] == ["daily"]
