"""Runs the rollup jobs under the cluster-wide rollup lock."""
import logging
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from config import config
from data.database import SessionLocal, get_engine
from data.locks import advisory_lock
from models.rollups import JobResult, JobSummary, RollupSummary, RollupWindow
from rollups import daily, experiment, funnel
from rollups.common import MAX_WINDOW_DAYS, build_window, tracked_run
from services.errors import LockContention, ValidationError, storage_errors

logger = logging.getLogger(__name__)

# Job key -> (rollup_runs.job_name, implementation), in default execution order
JOBS: dict[str, tuple[str, Callable[[Session, RollupWindow], JobResult]]] = {
    "daily": (daily.JOB_NAME, daily.run_daily_metrics_rollup),
    "experiment": (experiment.JOB_NAME, experiment.run_experiment_metrics_rollup),
    "funnel": (funnel.JOB_NAME, funnel.run_funnel_rollup),
}


def _selected_jobs(jobs: Iterable[str] | None) -> list[str]:
    if not jobs:
        return list(JOBS)
    selected = []
    for job in jobs:
        if job not in JOBS:
            raise ValidationError(f"Unknown rollup job '{job}'. Use one of: {', '.join(JOBS)}.")
        if job not in selected:
            selected.append(job)
    return selected


def run_rollups(window_days: int, jobs: Iterable[str] | None = None, now: datetime | None = None) -> RollupSummary:
    """
    Recomputes the aggregate tables for the last ``window_days`` UTC days.

    Fails fast with ``LockContention`` when another run holds the lock; jobs run
    one after another and a failing job stops the run with ``JobFailure``.
    """
    if isinstance(window_days, bool) or not isinstance(window_days, int) \
            or not 1 <= window_days <= MAX_WINDOW_DAYS:
        raise ValidationError(f"window_days must be an integer between 1 and {MAX_WINDOW_DAYS}.")
    selected = _selected_jobs(jobs)
    window = build_window(window_days, now)

    with storage_errors():
        with advisory_lock(get_engine(), namespace=config.rollup_lock_namespace,
                           key=config.rollup_lock_key) as acquired:
            if not acquired:
                logger.warning("rollup lock (%d, %d) is held elsewhere, not starting",
                               config.rollup_lock_namespace, config.rollup_lock_key)
                raise LockContention("Another rollup run is in progress. Retry after it finishes.")

            summary = RollupSummary(window_start=window.window_start, window_end=window.window_end)
            db = SessionLocal()
            try:
                for job in selected:
                    job_name, execute = JOBS[job]
                    result = tracked_run(db, job_name, window, lambda execute=execute: execute(db, window))
                    summary.jobs.append(JobSummary(job_name=job, rows_written=result.rows_written,
                                                   ignored_count=result.ignored_count))
            finally:
                db.close()

    return summary
