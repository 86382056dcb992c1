import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from data.stores import EventLogStore, RollupWriter
from models.rollups import JobResult, RollupWindow
from rollups.common import count_ignored_events, validity_bounds
from services.timeutil import day_start, enumerate_days

logger = logging.getLogger(__name__)

JOB_NAME = "funnel_rollup"

FUNNEL_NAME = "core_journey"

# Ordered steps; an event counts toward a step when its name is listed
FUNNEL_STEPS: list[tuple[str, tuple[str, ...]]] = [
    ("active_open", ("app_opened", "tab_opened")),
    ("workout_engaged", ("workouts_default_loaded", "workout_started")),
    ("exercise_logged", ("exercise_logged",)),
    ("session_submitted", ("session_submitted",)),
    ("achievement_unlocked", ("achievement_unlocked",)),
]


def _experiment_pairs(experiment_map) -> list[tuple[str, str]]:
    if not isinstance(experiment_map, dict):
        return []
    return [(experiment_id, variant_id) for experiment_id, variant_id in experiment_map.items()
            if isinstance(variant_id, str)]


def funnel_step_rows(step_events: list) -> list[dict]:
    """The overall row followed by one row per experiment:variant, sorted."""
    rows = [{
        "dimension_key": "overall",
        "experiment_id": None,
        "variant_id": None,
        "users_count": len({event.anonymous_user_id for event in step_events}),
        "events_count": len(step_events),
    }]

    by_variant: dict[tuple[str, str], list] = {}
    for event in step_events:
        for pair in _experiment_pairs(event.experiment_map):
            by_variant.setdefault(pair, []).append(event)

    for (experiment_id, variant_id), grouped in sorted(by_variant.items()):
        rows.append({
            "dimension_key": f"{experiment_id}:{variant_id}",
            "experiment_id": experiment_id,
            "variant_id": variant_id,
            "users_count": len({event.anonymous_user_id for event in grouped}),
            "events_count": len(grouped),
        })
    return rows


def run_funnel_rollup(db: Session, window: RollupWindow) -> JobResult:
    oldest_allowed, future_bound = validity_bounds(window.now)
    ignored_count = count_ignored_events(db, window)
    events = EventLogStore(db)
    writer = RollupWriter(db)
    tracked_names = sorted({name for _, names in FUNNEL_STEPS for name in names})
    rows_written = 0

    for day in enumerate_days(window.window_start, window.window_end):
        start = day_start(day)
        day_events = events.events_between(start, start + timedelta(days=1), oldest_allowed, future_bound,
                                           event_names=tracked_names)
        for step_name, event_names in FUNNEL_STEPS:
            step_events = [event for event in day_events if event.event_name in event_names]
            rows_written += writer.replace_funnel_step(day, FUNNEL_NAME, step_name, funnel_step_rows(step_events))
            # delete and re-insert of one step commit together
            db.commit()

    return JobResult(rows_written=rows_written, ignored_count=ignored_count)
