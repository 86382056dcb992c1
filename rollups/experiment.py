import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from data.stores import AssignmentStore, EventLogStore, ExperimentStore, RollupWriter
from models.rollups import JobResult, RollupWindow
from rollups.common import count_ignored_events, validity_bounds
from services.timeutil import as_utc, day_start, enumerate_days, iso_day

logger = logging.getLogger(__name__)

JOB_NAME = "experiment_metrics_rollup"

SESSION_SUBMITTED = "session_submitted"
ACTIVE_WINDOW = timedelta(days=1)
LOGGING_WINDOW = timedelta(hours=24)
SESSIONS_WINDOW = timedelta(days=7)


def cohort_metrics(cohort: dict, user_events: list[tuple]) -> dict[str, int]:
    """
    Follow-up counts for a first-seen cohort.

    users_active_d1: users with another event in (first_seen, first_seen + 1d].
    sessions_submitted_d7: session_submitted events in [first_seen, first_seen + 7d].
    converted_24h: users with a session_submitted in [first_seen, first_seen + 24h].
    """
    active, converted = set(), set()
    sessions = 0
    for user_id, event_name, occurred_at in user_events:
        first_seen = cohort.get(user_id)
        if first_seen is None:
            continue
        first_seen = as_utc(first_seen)
        occurred_at = as_utc(occurred_at)
        if first_seen < occurred_at <= first_seen + ACTIVE_WINDOW:
            active.add(user_id)
        if event_name == SESSION_SUBMITTED:
            if first_seen <= occurred_at <= first_seen + SESSIONS_WINDOW:
                sessions += 1
            if first_seen <= occurred_at <= first_seen + LOGGING_WINDOW:
                converted.add(user_id)
    return {
        "cohort_size": len(cohort),
        "users_active_d1": len(active),
        "sessions_submitted_d7": sessions,
        "converted_24h": len(converted),
    }


def run_experiment_metrics_rollup(db: Session, window: RollupWindow) -> JobResult:
    """Per RUNNING experiment, variant and day metrics of the first-seen cohort."""
    oldest_allowed, future_bound = validity_bounds(window.now)
    ignored_count = count_ignored_events(db, window)
    days = enumerate_days(window.window_start, window.window_end)
    experiments = ExperimentStore(db).list_running()
    assignments = AssignmentStore(db)
    events = EventLogStore(db)
    writer = RollupWriter(db)
    rows_written = 0

    # first-seen cohorts and their follow-up events do not depend on the variant
    cohorts = {}
    for day in days:
        start = day_start(day)
        cohort = events.first_seen_between(start, start + timedelta(days=1), oldest_allowed, future_bound)
        follow_up = events.user_events_between(cohort.keys(), start, start + timedelta(days=1) + SESSIONS_WINDOW,
                                               oldest_allowed, future_bound)
        cohorts[day] = (cohort, follow_up)

    for experiment in experiments:
        for variant in experiment.variants:
            variant_users = assignments.users_for_variant(experiment.experiment_id, variant.variant_id)
            for day in days:
                day_end = day_start(day) + timedelta(days=1)
                day_cohort, follow_up = cohorts[day]
                cohort = {user_id: seen for user_id, seen in day_cohort.items() if user_id in variant_users}
                metrics = cohort_metrics(cohort, follow_up)
                users_assigned = assignments.count_for_variant_before(experiment.experiment_id,
                                                                      variant.variant_id, day_end)
                logging_rate = metrics["converted_24h"] / metrics["cohort_size"] if metrics["cohort_size"] else 0.0
                dimensions = {"day": iso_day(day), "cohort_size": metrics["cohort_size"]}

                for metric_name, value, metric_dimensions in (
                        ("users_assigned", users_assigned, dimensions),
                        ("users_active_d1", metrics["users_active_d1"], dimensions),
                        ("sessions_submitted_d7", metrics["sessions_submitted_d7"], dimensions),
                        ("logging_rate_24h_by_variant", logging_rate,
                         dict(dimensions, converted_users=metrics["converted_24h"])),
                ):
                    writer.upsert_experiment_metric(day, experiment.experiment_id, variant.variant_id,
                                                    metric_name, value, dimensions=metric_dimensions)
                rows_written += 4
            db.commit()
        logger.debug("experiment rollup %s: %d variants over %d days", experiment.experiment_id,
                     len(experiment.variants), len(days))

    return JobResult(rows_written=rows_written, ignored_count=ignored_count)
