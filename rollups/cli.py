"""Command line entry for rollups: ``python -m rollups.cli --window-days 14 --job all``."""
import argparse
import json
import logging
import sys

from sqlalchemy import select

from config import config
from data.database import DailyMetricRollup, ExperimentMetricRollup, FunnelRollup, SessionLocal, shutdown_engine
from rollups.common import MAX_WINDOW_DAYS, build_window
from rollups.coordinator import JOBS, run_rollups
from services.errors import ExperimentServiceError
from services.timeutil import utcnow

logger = logging.getLogger(__name__)


def _window_days(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError("must be an integer") from None
    if not 1 <= value <= MAX_WINDOW_DAYS:
        raise argparse.ArgumentTypeError(f"must be between 1 and {MAX_WINDOW_DAYS}")
    return value


# Natural key plus value columns per rollup table
SNAPSHOT_COLUMNS = {
    "daily": (DailyMetricRollup, ("day", "metric_name", "dimension_key", "value", "dimensions")),
    "experiment": (ExperimentMetricRollup, ("day", "experiment_id", "variant_id", "metric_name", "value",
                                            "dimensions")),
    "funnel": (FunnelRollup, ("day", "funnel_name", "step_name", "dimension_key", "users_count",
                              "events_count")),
}


def snapshot_rollups(window_start, window_end) -> dict[str, list[tuple]]:
    """Sorted (key, value) tuples per rollup table for days inside the window."""
    start_day, end_day = window_start.date(), window_end.date()
    snapshot = {}
    with SessionLocal() as db:
        for name, (model, columns) in SNAPSHOT_COLUMNS.items():
            rows = db.execute(select(*(getattr(model, column) for column in columns))
                              .where(model.day >= start_day, model.day < end_day)).all()
            snapshot[name] = sorted(
                tuple(json.dumps(value, sort_keys=True) if isinstance(value, (dict, list)) else value
                      for value in row)
                for row in rows
            )
    return snapshot


def check_idempotency(window_days: int) -> dict:
    """Runs every job twice over the same window and compares the stored rows and values."""
    now = utcnow()
    window = build_window(window_days, now)
    run_rollups(window_days, now=now)
    first = snapshot_rollups(window.window_start, window.window_end)
    run_rollups(window_days, now=now)
    second = snapshot_rollups(window.window_start, window.window_end)
    mismatched = [name for name in SNAPSHOT_COLUMNS if first[name] != second[name]]
    return {
        "ok": not mismatched,
        "first": {name: len(rows) for name, rows in first.items()},
        "second": {name: len(rows) for name, rows in second.items()},
        "mismatched_tables": mismatched,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Recompute daily, experiment and funnel rollups.")
    parser.add_argument("--window-days", type=_window_days, default=config.rollup_window_days,
                        help=f"number of UTC days to recompute (1-{MAX_WINDOW_DAYS})")
    parser.add_argument("--job", choices=[*JOBS, "all"], default="all")
    parser.add_argument("--check-idempotency", action="store_true",
                        help="run all jobs twice and fail if the stored rollups differ")
    args = parser.parse_args(argv)

    try:
        if args.check_idempotency:
            result = check_idempotency(args.window_days)
            print(json.dumps(result, indent=2))
            if not result["ok"]:
                logger.error("idempotency check failed for %s", ", ".join(result["mismatched_tables"]))
                return 1
            return 0

        jobs = None if args.job == "all" else [args.job]
        summary = run_rollups(args.window_days, jobs=jobs)
        print(json.dumps({"ok": True, **summary.model_dump(mode="json")}, indent=2))
        return 0
    except ExperimentServiceError as e:
        logger.error("rollup failed: %s", e)
        print(json.dumps({"ok": False, "error": type(e).__name__, "message": str(e)}, indent=2), file=sys.stderr)
        return 1
    finally:
        shutdown_engine()


if __name__ == "__main__":
    raise SystemExit(main())
