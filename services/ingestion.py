import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from data.stores import AssignmentStore, EventLogStore
from log import truncate_user_id
from models.events import EventAssignmentContext, EventIngestionResult, ParsedEventBatch
from services.errors import storage_errors
from services.event_validation import parse_event_batch
from services.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = 1


def get_event_assignment_context(db: Session, anonymous_user_id: str) -> EventAssignmentContext:
    """Snapshot of the user's assignments on RUNNING experiments at ingestion time."""
    rows = AssignmentStore(db).find_running_for_user(anonymous_user_id)
    if not rows:
        return EventAssignmentContext(assignment_version=None, assignments=[], experiment_map={})

    assignments = [
        {
            "experiment_id": assignment.experiment_id,
            "variant_id": assignment.variant_id,
            "variant_name": variant_name or assignment.variant_id,
        }
        for assignment, variant_name in rows
    ]
    return EventAssignmentContext(
        assignment_version=max([assignment.assignment_version for assignment, _ in rows] + [1]),
        assignments=assignments,
        experiment_map={item["experiment_id"]: item["variant_id"] for item in assignments},
    )


def build_event_rows(batch: ParsedEventBatch, enrichment: EventAssignmentContext,
                     received_at: datetime) -> list[dict[str, Any]]:
    # every row carries the same keys, a multi-row insert requires it
    return [
        {
            "event_id": event.event_id,
            "anonymous_user_id": batch.anonymous_user_id,
            "session_id": batch.session_id,
            "install_id": batch.install_id,
            "platform": batch.platform,
            "app_version": batch.app_version,
            "event_name": event.event_name,
            "occurred_at": event.occurred_at,
            "sent_at": batch.sent_at,
            "received_at": received_at,
            "properties": event.properties,
            "context": event.context,
            "assignment_version": enrichment.assignment_version,
            "assignments": enrichment.assignments or None,
            "experiment_map": enrichment.experiment_map or None,
            "schema_version": EVENT_SCHEMA_VERSION,
        }
        for event in batch.accepted_events
    ]


def ingest_events(db: Session, payload: Any, now: datetime | None = None) -> EventIngestionResult:
    """
    Validates, enriches and stores an event batch.

    ``ValidationError`` for a malformed envelope is raised before any storage
    access. Re-sent events are absorbed by the unique event_id, so ``inserted``
    can be lower than ``accepted``.
    """
    received_at = as_utc(now) if now else utcnow()
    batch = parse_event_batch(payload, now=received_at)

    inserted = 0
    if batch.accepted_events:
        with storage_errors():
            try:
                enrichment = get_event_assignment_context(db, batch.anonymous_user_id)
                rows = build_event_rows(batch, enrichment, received_at)
                inserted = EventLogStore(db).insert_ignore_duplicates(rows)
                db.commit()
            except Exception:
                db.rollback()
                raise

    logger.info("events ingest for user %s: accepted=%d rejected=%d inserted=%d",
                truncate_user_id(batch.anonymous_user_id), batch.accepted, batch.rejected, inserted)

    return EventIngestionResult(
        received_at=received_at,
        accepted=batch.accepted,
        rejected=batch.rejected,
        results=batch.results,
        inserted=inserted,
    )
