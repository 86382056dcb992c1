import uuid
import pytest
from sqlalchemy import select
from datetime import timedelta
from data.database import Assignment, EventLog, LoadTestPhase, LoadTestRun, RollupRun, RunStatus
from services import quality
from services.errors import LockContention, NotFoundError, ValidationError
from services.timeutil import utcnow


def _endpoint(endpoint="/v1/assignment", error_rate=0.0, p95_ms=40.0):
    return {"endpoint": endpoint, "method": "POST", "requests_total": 1000, "success_count": 1000,
            "error_count": int(error_rate * 1000), "error_rate": error_rate, "p50_ms": 12.0, "p95_ms": p95_ms,
            "p99_ms": p95_ms * 2, "rps": 50.0}


def _start(db, scenario="mixed", phase=LoadTestPhase.BASELINE, **kwargs):
    return quality.start_load_test_run(db, run_name=f"{scenario}-{phase.lower()}", scenario_name=scenario,
                                       phase=phase, target_base_url="http://localhost:8000", **kwargs)


def _load_test_traffic(db, run_id, users=3):
    """What a mixed-scenario load test leaves behind: tagged assignments and events."""
    for i in range(users):
        user = f"lt-user-{i}"
        db.add(Assignment(anonymous_user_id=user, experiment_id="landing_tab", variant_id="control",
                          context={"session_id": quality.load_test_session_id(run_id)}))
        db.add(EventLog(event_id=str(uuid.uuid4()), anonymous_user_id=user, event_name="app_opened",
                        occurred_at=utcnow(), properties={"load_test_run_id": run_id}))
    db.commit()


def _checks(checks):
    return {check["check_name"]: check for check in checks}


def test_start_records_running_run(db_session):
    run = _start(db_session, tags={"ci": True})

    stored = db_session.get(LoadTestRun, run.id)
    assert stored.status == RunStatus.RUNNING
    assert stored.tags["ci"] is True
    assert stored.tags["scenario"] == "mixed"
    assert stored.phase == LoadTestPhase.BASELINE


def test_start_refused_while_rollup_running(db_session):
    db_session.add(RollupRun(job_name="daily_metrics_rollup", status=RunStatus.RUNNING,
                             window_start=utcnow() - timedelta(days=1), window_end=utcnow()))
    db_session.commit()

    with pytest.raises(LockContention) as exc_info:
        _start(db_session)
    assert str(exc_info.value) == ("Cannot start load test while 1 rollup job(s) are RUNNING. "
                                   "Retry after rollups finish.")


def test_phase_is_normalized_and_validated(db_session):
    run = _start(db_session, phase="post-mitigation")
    assert run.phase == LoadTestPhase.POST_MITIGATION

    with pytest.raises(ValidationError):
        _start(db_session, phase="canary")


def test_data_checks_pass_for_clean_mixed_run(db_session):
    run = _start(db_session)
    _load_test_traffic(db_session, run.id)

    checks = _checks(quality.run_data_checks(db_session, run.id, "mixed", overall_error_rate=0.002))

    assert set(checks) == {
        "assignment_duplicate_rows_global",
        "event_id_duplicate_rows_global",
        "load_test_assignment_rows_scoped",
        "load_test_event_rows_scoped",
        "sticky_assignment_conflicts_scoped",
        "rollup_overlap_running",
        "http_error_rate_under_1pct",
    }
    assert all(check["passed"] for check in checks.values())
    assert checks["load_test_assignment_rows_scoped"]["observed_value"] == 3
    assert checks["load_test_assignment_rows_scoped"]["details"] == {
        "expected_min": 1, "session_id": f"lt-{run.id}"}
    assert checks["load_test_event_rows_scoped"]["observed_value"] == 3
    assert checks["http_error_rate_under_1pct"]["details"] == {"threshold": 0.01}


def test_data_checks_scope_by_scenario(db_session):
    """An events-only run must not have written assignments under its session id."""
    run = _start(db_session, scenario="events")
    _load_test_traffic(db_session, run.id)

    checks = _checks(quality.run_data_checks(db_session, run.id, "events", overall_error_rate=0.05))

    assert not checks["load_test_assignment_rows_scoped"]["passed"]
    assert checks["load_test_assignment_rows_scoped"]["details"]["expected_exact"] == 0
    assert checks["load_test_event_rows_scoped"]["passed"]
    assert not checks["http_error_rate_under_1pct"]["passed"]


def test_duplicate_rows_counts_extras_per_group(db_session):
    window_start, window_end = utcnow() - timedelta(days=1), utcnow()
    for job_name, runs in (("daily_metrics_rollup", 3), ("funnel_rollup", 2), ("experiment_metrics_rollup", 1)):
        for _ in range(runs):
            db_session.add(RollupRun(job_name=job_name, status=RunStatus.SUCCESS, window_start=window_start,
                                     window_end=window_end))
    db_session.commit()

    assert quality._duplicate_rows(db_session, RollupRun, RollupRun.job_name) == 3
    assert quality._duplicate_rows(db_session, Assignment, Assignment.anonymous_user_id,
                                   Assignment.experiment_id) == 0


def test_scoped_checks_ignore_other_runs(db_session):
    run = _start(db_session)
    _load_test_traffic(db_session, run.id, users=2)
    db_session.add(Assignment(anonymous_user_id="other-user", experiment_id="landing_tab", variant_id="control",
                              context={"session_id": "lt-another-run"}))
    db_session.add(Assignment(anonymous_user_id="app-user", experiment_id="landing_tab", variant_id="control"))
    db_session.add(EventLog(event_id=str(uuid.uuid4()), anonymous_user_id="other-user", event_name="app_opened",
                            occurred_at=utcnow(), properties={"load_test_run_id": "another-run"}))
    db_session.add(EventLog(event_id=str(uuid.uuid4()), anonymous_user_id="app-user", event_name="app_opened",
                            occurred_at=utcnow(), properties={"screen": "home"}))
    db_session.commit()

    checks = _checks(quality.run_data_checks(db_session, run.id, "mixed", overall_error_rate=0.0))

    assert checks["load_test_assignment_rows_scoped"]["observed_value"] == 2
    assert checks["load_test_event_rows_scoped"]["observed_value"] == 2
    assert checks["sticky_assignment_conflicts_scoped"]["passed"]


def test_gate_passes_for_clean_run(db_session):
    run = _start(db_session)
    _load_test_traffic(db_session, run.id)
    checks = quality.run_data_checks(db_session, run.id, "mixed", overall_error_rate=0.0)
    quality.finish_load_test_run(db_session, run, [_endpoint()], checks, artifacts_path="artifacts/run.json")

    gate = quality.evaluate_gate(db_session, run_id=run.id)

    assert gate.ok is True
    assert gate.failures == []
    assert gate.run["status"] == RunStatus.SUCCESS
    assert gate.run["duration_ms"] >= 0
    assert gate.gate == {"max_error_rate": 0.01, "checks_total": 7, "endpoints_total": 1}


def test_gate_reports_every_failure(db_session):
    run = _start(db_session, scenario="assignment")
    checks = quality.run_data_checks(db_session, run.id, "assignment", overall_error_rate=0.0)
    quality.finish_load_test_run(db_session, run, [_endpoint("/v1/events", error_rate=0.2)], checks)

    gate = quality.evaluate_gate(db_session, scenario="assignment", phase="BASELINE")

    assert gate.ok is False
    assert gate.failures == [
        "Data check failed: load_test_assignment_rows_scoped observed_value=0.0",
        "Endpoint error rate exceeded: POST /v1/events error_rate=0.2 threshold=0.01",
    ]


def test_gate_fails_on_failed_run(db_session):
    run = _start(db_session)
    quality.fail_load_test_run(db_session, run, RuntimeError("k6 exited with 99"))

    gate = quality.evaluate_gate(db_session)

    assert gate.failures == ["Run status is FAILED, expected SUCCESS."]
    stored = db_session.scalars(select(LoadTestRun)).one()
    assert stored.error_text == "k6 exited with 99"


def test_gate_without_runs(db_session):
    with pytest.raises(NotFoundError):
        quality.evaluate_gate(db_session)
    with pytest.raises(ValidationError):
        quality.evaluate_gate(db_session, max_error_rate=2)
