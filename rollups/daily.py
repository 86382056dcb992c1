import logging
from collections import Counter
from datetime import timedelta

from sqlalchemy.orm import Session

from data.stores import EventLogStore, RollupWriter
from models.rollups import JobResult, RollupWindow
from rollups.common import count_ignored_events, percentile, validity_bounds
from services.timeutil import as_utc, day_start, enumerate_days, iso_day

logger = logging.getLogger(__name__)

JOB_NAME = "daily_metrics_rollup"

SESSION_SUBMITTED = "session_submitted"
EVENT_VOLUME_METRIC = "event_volume_by_name"
LOGGING_WINDOW = timedelta(hours=24)


def _converted_users(events: EventLogStore, cohort: dict, oldest_allowed, future_bound) -> int:
    """Cohort users with a session_submitted within 24h of their first event."""
    if not cohort:
        return 0
    latest = max(as_utc(first_seen) for first_seen in cohort.values()) + LOGGING_WINDOW
    earliest = min(as_utc(first_seen) for first_seen in cohort.values())
    converted = set()
    for user_id, event_name, occurred_at in events.user_events_between(
            cohort.keys(), earliest, latest, oldest_allowed, future_bound):
        if event_name != SESSION_SUBMITTED or user_id in converted:
            continue
        first_seen = as_utc(cohort[user_id])
        if first_seen <= as_utc(occurred_at) <= first_seen + LOGGING_WINDOW:
            converted.add(user_id)
    return len(converted)


def run_daily_metrics_rollup(db: Session, window: RollupWindow) -> JobResult:
    """Overall per-day activity, conversion and ingestion lag metrics."""
    oldest_allowed, future_bound = validity_bounds(window.now)
    ignored_count = count_ignored_events(db, window)
    events = EventLogStore(db)
    writer = RollupWriter(db)
    rows_written = 0

    for day in enumerate_days(window.window_start, window.window_end):
        start = day_start(day)
        end = start + timedelta(days=1)

        day_events = events.events_between(start, end, oldest_allowed, future_bound)
        cohort = events.first_seen_between(start, end, oldest_allowed, future_bound)
        converted = _converted_users(events, cohort, oldest_allowed, future_bound)
        lags = sorted(
            max((as_utc(event.received_at) - as_utc(event.occurred_at)).total_seconds(), 0.0)
            for event in day_events
        )
        volume = Counter(event.event_name for event in day_events)

        writer.upsert_daily_metric(day, "dau", len({event.anonymous_user_id for event in day_events}))
        writer.upsert_daily_metric(day, "new_users", len(cohort))
        writer.upsert_daily_metric(day, "sessions_submitted",
                                   sum(1 for event in day_events if event.event_name == SESSION_SUBMITTED))
        writer.upsert_daily_metric(day, "logging_rate_24h", converted / len(cohort) if cohort else 0.0,
                                   dimensions={"cohort_size": len(cohort), "converted_users": converted})
        writer.upsert_daily_metric(day, "ingestion_lag_p50", percentile(lags, 0.5),
                                   dimensions={"unit": "seconds"})
        writer.upsert_daily_metric(day, "ingestion_lag_p95", percentile(lags, 0.95),
                                   dimensions={"unit": "seconds"})
        rows_written += 6

        rows_written += writer.replace_daily_metric(day, EVENT_VOLUME_METRIC, [
            {
                "dimension_key": event_name,
                "dimensions": {"event_name": event_name, "day": iso_day(day)},
                "value": count,
            }
            for event_name, count in sorted(volume.items())
        ])
        db.commit()
        logger.debug("daily rollup %s: %d events, %d new users", iso_day(day), len(day_events), len(cohort))

    return JobResult(rows_written=rows_written, ignored_count=ignored_count)
