"""Data-quality gate around load-test runs.

Load tests write through the public endpoints, tagging assignments with the
session id ``lt-{run_id}`` and events with ``properties.load_test_run_id``.
The checks here verify afterwards that the storage invariants held.
"""
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload
from datetime import datetime, timedelta
from data.database import (Assignment, EventLog, LoadTestDataCheck, LoadTestEndpointMetric, LoadTestPhase,
                           LoadTestRun, RunStatus)
from data.stores import RollupRunStore
from models.metrics import GateResult
from services.errors import LockContention, NotFoundError, ValidationError, storage_errors
from services.timeutil import as_utc, isoformat, utcnow
import logging

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERROR_RATE = 0.01
ROLLUP_OVERLAP_LOOKBACK = timedelta(hours=2)

# Scenarios that are expected to write assignment / event rows
ASSIGNMENT_SCENARIOS = ("assignment", "mixed")
EVENT_SCENARIOS = ("events", "mixed")


def load_test_session_id(run_id: str) -> str:
    return f"lt-{run_id}"


def count_running_rollups(db: Session, since: datetime | None = None) -> int:
    with storage_errors():
        return RollupRunStore(db).count_running(since=since)


def ensure_rollups_idle(db: Session) -> None:
    running = count_running_rollups(db)
    if running:
        raise LockContention(
            f"Cannot start load test while {running} rollup job(s) are RUNNING. Retry after rollups finish.")


def normalize_phase(raw: str | None) -> str | None:
    if raw is None:
        return None
    normalized = raw.strip().upper().replace("-", "_")
    if normalized not in LoadTestPhase.ALL:
        raise ValidationError("phase must be BASELINE or POST_MITIGATION.")
    return normalized


def start_load_test_run(db: Session, run_name: str, scenario_name: str, phase: str, target_base_url: str,
                        git_sha: str | None = None, tags: dict | None = None, notes: str | None = None,
                        now: datetime | None = None) -> LoadTestRun:
    """Registers a RUNNING load-test run; refused while any rollup is RUNNING."""
    ensure_rollups_idle(db)
    started_at = as_utc(now) if now else utcnow()
    phase = normalize_phase(phase)
    run = LoadTestRun(
        run_name=run_name,
        scenario_name=scenario_name,
        phase=phase,
        status=RunStatus.RUNNING,
        target_base_url=target_base_url,
        git_sha=git_sha,
        started_at=started_at,
        notes=notes,
        tags={**(tags or {}), "run_name": run_name, "phase": phase, "scenario": scenario_name,
              "started_at": isoformat(started_at)},
    )
    with storage_errors():
        db.add(run)
        db.commit()
    logger.info("load test run %s (%s, %s) started", run.id, scenario_name, phase)
    return run


def finish_load_test_run(db: Session, run: LoadTestRun, endpoint_metrics: list[dict], checks: list[dict],
                         artifacts_path: str | None = None, now: datetime | None = None) -> LoadTestRun:
    ended_at = as_utc(now) if now else utcnow()
    with storage_errors():
        for metric in endpoint_metrics:
            db.add(LoadTestEndpointMetric(run_id=run.id, **metric))
        for check in checks:
            db.add(LoadTestDataCheck(run_id=run.id, **check))
        run.status = RunStatus.SUCCESS
        run.ended_at = ended_at
        run.duration_ms = int((ended_at - as_utc(run.started_at)).total_seconds() * 1000)
        run.artifacts_path = artifacts_path
        run.tags = {**(run.tags or {}), "ended_at": isoformat(ended_at)}
        db.commit()
    logger.info("load test run %s finished with %d endpoint metrics, %d checks", run.id,
                len(endpoint_metrics), len(checks))
    return run


def fail_load_test_run(db: Session, run: LoadTestRun, error: BaseException | str,
                       now: datetime | None = None) -> LoadTestRun:
    ended_at = as_utc(now) if now else utcnow()
    with storage_errors():
        db.rollback()
        run.status = RunStatus.FAILED
        run.ended_at = ended_at
        run.duration_ms = int((ended_at - as_utc(run.started_at)).total_seconds() * 1000)
        run.error_text = str(error)
        run.tags = {**(run.tags or {}), "ended_at": isoformat(ended_at)}
        db.commit()
    logger.warning("load test run %s failed: %s", run.id, error)
    return run


def _duplicate_rows(db: Session, model, *group_columns) -> int:
    """Rows of ``model`` beyond the first in every group sharing ``group_columns``."""
    groups = (
        select(func.count().label("row_count"))
        .select_from(model)
        .group_by(*group_columns)
        .having(func.count() > 1)
        .subquery()
    )
    return int(db.scalar(select(func.coalesce(func.sum(groups.c.row_count - 1), 0))) or 0)


def _check(check_name: str, passed: bool, observed_value: float, details: dict) -> dict:
    return {"check_name": check_name, "passed": passed, "observed_value": observed_value, "details": details}


def run_data_checks(db: Session, run_id: str, scenario_name: str, overall_error_rate: float,
                    now: datetime | None = None) -> list[dict]:
    """
    Storage invariants after a load test.

    The scoped checks filter on JSON paths (``context.session_id``,
    ``properties.load_test_run_id``), which SQLAlchemy renders for both
    SQLite and Postgres.
    """
    now = as_utc(now) if now else utcnow()
    session_id = load_test_session_id(run_id)
    expects_assignments = scenario_name in ASSIGNMENT_SCENARIOS
    expects_events = scenario_name in EVENT_SCENARIOS
    checks = []

    with storage_errors():
        assignment_duplicates = _duplicate_rows(db, Assignment, Assignment.anonymous_user_id,
                                                Assignment.experiment_id)
        event_duplicates = _duplicate_rows(db, EventLog, EventLog.event_id)

        scoped_assignments = db.execute(
            select(Assignment.anonymous_user_id, Assignment.experiment_id, Assignment.variant_id)
            .where(Assignment.context["session_id"].as_string() == session_id)
        ).all()
        scoped_events = db.scalar(
            select(func.count()).select_from(EventLog)
            .where(EventLog.properties["load_test_run_id"].as_string() == run_id)
        ) or 0
        running_rollups = RollupRunStore(db).count_running(since=now - ROLLUP_OVERLAP_LOOKBACK)

    checks.append(_check("assignment_duplicate_rows_global", assignment_duplicates == 0,
                         assignment_duplicates, {"expected": 0}))
    checks.append(_check("event_id_duplicate_rows_global", event_duplicates == 0,
                         event_duplicates, {"expected": 0}))

    assignment_count = len(scoped_assignments)
    checks.append(_check(
        "load_test_assignment_rows_scoped",
        assignment_count > 0 if expects_assignments else assignment_count == 0,
        assignment_count,
        {"expected_min": 1, "session_id": session_id} if expects_assignments
        else {"expected_exact": 0, "session_id": session_id},
    ))
    checks.append(_check(
        "load_test_event_rows_scoped",
        scoped_events > 0 if expects_events else scoped_events == 0,
        scoped_events,
        {"expected_min": 1, "run_id": run_id} if expects_events else {"expected_exact": 0, "run_id": run_id},
    ))

    variants_seen: dict[tuple[str, str], set[str]] = {}
    for user_id, experiment_id, variant_id in scoped_assignments:
        variants_seen.setdefault((user_id, experiment_id), set()).add(variant_id)
    sticky_conflicts = sum(1 for variants in variants_seen.values() if len(variants) > 1)
    checks.append(_check("sticky_assignment_conflicts_scoped", sticky_conflicts == 0, sticky_conflicts,
                         {"expected": 0, "session_id": session_id}))

    checks.append(_check("rollup_overlap_running", running_rollups == 0, running_rollups, {"expected": 0}))
    checks.append(_check("http_error_rate_under_1pct", overall_error_rate <= DEFAULT_MAX_ERROR_RATE,
                         overall_error_rate, {"threshold": DEFAULT_MAX_ERROR_RATE}))

    failed = [check["check_name"] for check in checks if not check["passed"]]
    if failed:
        logger.warning("load test %s data checks failed: %s", run_id, ", ".join(failed))
    return checks


def evaluate_gate(db: Session, run_id: str | None = None, scenario: str | None = None, phase: str | None = None,
                  max_error_rate: float = DEFAULT_MAX_ERROR_RATE) -> GateResult:
    """Pass/fail verdict for one run: the given id, else the latest matching run."""
    if not 0 <= max_error_rate <= 1:
        raise ValidationError("max_error_rate must be between 0 and 1.")
    phase = normalize_phase(phase)

    with storage_errors():
        stmt = select(LoadTestRun).options(selectinload(LoadTestRun.endpoint_metrics),
                                           selectinload(LoadTestRun.data_checks))
        if run_id:
            stmt = stmt.where(LoadTestRun.id == run_id)
        else:
            if scenario:
                stmt = stmt.where(LoadTestRun.scenario_name == scenario)
            if phase:
                stmt = stmt.where(LoadTestRun.phase == phase)
            stmt = stmt.order_by(LoadTestRun.started_at.desc()).limit(1)
        run = db.scalars(stmt).first()

    if run is None:
        raise NotFoundError("No matching load-test run found.")

    failures = []
    if run.status != RunStatus.SUCCESS:
        failures.append(f"Run status is {run.status}, expected SUCCESS.")
    for check in run.data_checks:
        if not check.passed:
            failures.append(f"Data check failed: {check.check_name} observed_value={check.observed_value}")
    for metric in run.endpoint_metrics:
        if metric.error_rate is not None and metric.error_rate > max_error_rate:
            failures.append(f"Endpoint error rate exceeded: {metric.method} {metric.endpoint} "
                            f"error_rate={metric.error_rate} threshold={max_error_rate}")

    return GateResult(
        ok=not failures,
        run={
            "id": run.id,
            "run_name": run.run_name,
            "scenario_name": run.scenario_name,
            "phase": run.phase,
            "status": run.status,
            "started_at": isoformat(run.started_at),
            "ended_at": isoformat(run.ended_at),
            "duration_ms": run.duration_ms,
        },
        gate={
            "max_error_rate": max_error_rate,
            "checks_total": len(run.data_checks),
            "endpoints_total": len(run.endpoint_metrics),
        },
        failures=failures,
    )
