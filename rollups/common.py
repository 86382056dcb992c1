"""Window, validity filter and run bookkeeping shared by the rollup jobs."""
import logging
import math
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from data.stores import EventLogStore, RollupRunStore
from models.rollups import JobResult, RollupWindow
from services.errors import JobFailure
from services.event_validation import FUTURE_SKEW
from services.timeutil import as_utc, utcnow, window_bounds

logger = logging.getLogger(__name__)

MAX_EVENT_AGE_DAYS = 180
MAX_WINDOW_DAYS = 180


def build_window(window_days: int, now: datetime | None = None) -> RollupWindow:
    now = as_utc(now) if now else utcnow()
    window_start, window_end = window_bounds(window_days, now)
    return RollupWindow(window_start=window_start, window_end=window_end, now=now)


def validity_bounds(now: datetime) -> tuple[datetime, datetime]:
    """(oldest_allowed, future_bound): events outside are ignored by every job."""
    return now - timedelta(days=MAX_EVENT_AGE_DAYS), now + FUTURE_SKEW


def count_ignored_events(db: Session, window: RollupWindow) -> int:
    oldest_allowed, future_bound = validity_bounds(window.now)
    return EventLogStore(db).count_ignored(window.window_start, window.window_end, oldest_allowed, future_bound)


def percentile(sorted_values: list[float], fraction: float) -> float:
    """Linear interpolation between closest ranks; 0 for no values."""
    if not sorted_values:
        return 0.0
    position = fraction * (len(sorted_values) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return float(sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight)


def tracked_run(db: Session, job_name: str, window: RollupWindow,
                execute: Callable[[], JobResult]) -> JobResult:
    """
    Runs ``execute`` between a RUNNING rollup_runs row and its final status.

    The row is always finalized, SUCCESS with the counts or FAILED with the
    error text, before a failure propagates as ``JobFailure``.
    """
    runs = RollupRunStore(db)
    run = runs.start(job_name, window.window_start, window.window_end)
    logger.info("rollup %s started (run %d, window %s .. %s)", job_name, run.id,
                window.window_start.isoformat(), window.window_end.isoformat())

    try:
        result = execute()
    except Exception as e:
        db.rollback()
        try:
            runs.mark_failed(run, str(e) or type(e).__name__)
        except Exception:
            db.rollback()
            logger.exception("could not mark rollup run %d as FAILED", run.id)
        logger.error("rollup %s failed: %s", job_name, e)
        raise JobFailure(job_name, e) from e

    runs.mark_success(run, result.rows_written, result.ignored_count)
    logger.info("rollup %s finished: rows_written=%d ignored_count=%d", job_name,
                result.rows_written, result.ignored_count)
    return result
