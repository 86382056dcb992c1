"""Narrow repositories over the ORM tables.

Every store takes the caller's ``Session``; transaction boundaries (commit and
rollback) stay with the service that owns the unit of work.
"""
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from data.database import (Assignment, DailyMetricRollup, EventLog, Experiment, ExperimentMetricRollup,
                           ExperimentStatus, FunnelRollup, RollupRun, RunStatus, Variant, _utcnow)

import logging

logger = logging.getLogger(__name__)


def _dialect_insert(db: Session):
    """insert() construct supporting ON CONFLICT DO NOTHING, or None."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


class ExperimentStore:
    def __init__(self, db: Session):
        self.db = db

    def list_running(self) -> list[Experiment]:
        """RUNNING experiments with their variants, ordered by experiment_id."""
        stmt = (
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .where(Experiment.status == ExperimentStatus.RUNNING)
            .order_by(Experiment.experiment_id)
        )
        return list(self.db.scalars(stmt).all())


class AssignmentStore:
    def __init__(self, db: Session):
        self.db = db

    def find_for_user(self, anonymous_user_id: str, experiment_ids: Iterable[str]) -> dict[str, Assignment]:
        experiment_ids = list(experiment_ids)
        if not experiment_ids:
            return {}
        stmt = select(Assignment).where(
            Assignment.anonymous_user_id == anonymous_user_id,
            Assignment.experiment_id.in_(experiment_ids),
        )
        return {row.experiment_id: row for row in self.db.scalars(stmt).all()}

    def insert_if_absent(self, rows: list[dict]) -> dict[str, Assignment]:
        """Inserts the rows that do not exist yet and returns what is persisted.

        All rows belong to one user. A concurrent writer that got there first
        wins; the returned mapping always reflects the stored rows.
        """
        if not rows:
            return {}
        user_id = rows[0]["anonymous_user_id"]
        experiment_ids = [row["experiment_id"] for row in rows]

        insert = _dialect_insert(self.db)
        if insert is not None:
            stmt = insert(Assignment).values(rows).on_conflict_do_nothing(
                index_elements=[Assignment.anonymous_user_id, Assignment.experiment_id]
            )
            self.db.execute(stmt)
        else:
            for row in rows:
                try:
                    with self.db.begin_nested():
                        self.db.add(Assignment(**row))
                except IntegrityError:
                    logger.warning("assignment race lost for experiment %s", row["experiment_id"])

        return self.find_for_user(user_id, experiment_ids)

    def find_running_for_user(self, anonymous_user_id: str) -> list[tuple[Assignment, str | None]]:
        """The user's assignments on RUNNING experiments with the variant name, if it still exists."""
        stmt = (
            select(Assignment, Variant.variant_name)
            .join(Experiment, Experiment.experiment_id == Assignment.experiment_id)
            .outerjoin(Variant, and_(Variant.experiment_id == Assignment.experiment_id,
                                     Variant.variant_id == Assignment.variant_id))
            .where(Assignment.anonymous_user_id == anonymous_user_id,
                   Experiment.status == ExperimentStatus.RUNNING)
            .order_by(Assignment.experiment_id)
        )
        return [(assignment, variant_name) for assignment, variant_name in self.db.execute(stmt).all()]

    def count_for_variant_before(self, experiment_id: str, variant_id: str, before: datetime) -> int:
        stmt = select(func.count()).select_from(Assignment).where(
            Assignment.experiment_id == experiment_id,
            Assignment.variant_id == variant_id,
            Assignment.assigned_at < before,
        )
        return self.db.scalar(stmt) or 0

    def users_for_variant(self, experiment_id: str, variant_id: str) -> set[str]:
        stmt = select(Assignment.anonymous_user_id).where(
            Assignment.experiment_id == experiment_id,
            Assignment.variant_id == variant_id,
        )
        return set(self.db.scalars(stmt).all())


class EventLogStore:
    def __init__(self, db: Session):
        self.db = db

    def insert_ignore_duplicates(self, rows: list[dict]) -> int:
        """Writes events keyed by event_id; returns how many were new."""
        if not rows:
            return 0

        insert = _dialect_insert(self.db)
        if insert is not None:
            stmt = insert(EventLog).values(rows).on_conflict_do_nothing(index_elements=[EventLog.event_id])
            result = self.db.execute(stmt)
            return max(result.rowcount or 0, 0)

        inserted = 0
        for row in rows:
            try:
                with self.db.begin_nested():
                    self.db.add(EventLog(**row))
                inserted += 1
            except IntegrityError:
                logger.debug("duplicate event_id %s ignored", row["event_id"])
        return inserted

    def events_between(self, start: datetime, end: datetime, oldest_allowed: datetime,
                       future_bound: datetime, event_names: Iterable[str] | None = None) -> list[EventLog]:
        """Valid events with occurred_at in [start, end)."""
        stmt = select(EventLog).where(
            EventLog.occurred_at >= start,
            EventLog.occurred_at < end,
            EventLog.occurred_at >= oldest_allowed,
            EventLog.occurred_at <= future_bound,
        )
        if event_names is not None:
            stmt = stmt.where(EventLog.event_name.in_(list(event_names)))
        return list(self.db.scalars(stmt.order_by(EventLog.occurred_at, EventLog.id)).all())

    def user_events_between(self, user_ids: Iterable[str], start: datetime, end: datetime,
                            oldest_allowed: datetime, future_bound: datetime) -> list[tuple[str, str, datetime]]:
        """(user, event_name, occurred_at) for the given users with occurred_at in [start, end]."""
        user_ids = list(user_ids)
        if not user_ids:
            return []
        stmt = select(EventLog.anonymous_user_id, EventLog.event_name, EventLog.occurred_at).where(
            EventLog.anonymous_user_id.in_(user_ids),
            EventLog.occurred_at >= start,
            EventLog.occurred_at <= end,
            EventLog.occurred_at >= oldest_allowed,
            EventLog.occurred_at <= future_bound,
        )
        return [tuple(row) for row in self.db.execute(stmt).all()]

    def first_seen_between(self, start: datetime, end: datetime, oldest_allowed: datetime,
                           future_bound: datetime) -> dict[str, datetime]:
        """Users whose first valid event falls in [start, end), with that timestamp."""
        first_seen = func.min(EventLog.occurred_at)
        stmt = (
            select(EventLog.anonymous_user_id, first_seen.label("first_seen_at"))
            .where(EventLog.occurred_at >= oldest_allowed, EventLog.occurred_at <= future_bound)
            .group_by(EventLog.anonymous_user_id)
            .having(and_(first_seen >= start, first_seen < end))
        )
        return {user_id: first_seen_at for user_id, first_seen_at in self.db.execute(stmt).all()}

    def count_ignored(self, window_start: datetime, window_end: datetime, oldest_allowed: datetime,
                      future_bound: datetime) -> int:
        stmt = select(func.count()).select_from(EventLog).where(
            EventLog.occurred_at >= window_start,
            EventLog.occurred_at < window_end,
            or_(EventLog.occurred_at > future_bound, EventLog.occurred_at < oldest_allowed),
        )
        return self.db.scalar(stmt) or 0


class RollupRunStore:
    def __init__(self, db: Session):
        self.db = db

    def start(self, job_name: str, window_start: datetime, window_end: datetime) -> RollupRun:
        run = RollupRun(job_name=job_name, status=RunStatus.RUNNING, window_start=window_start,
                        window_end=window_end, started_at=_utcnow())
        self.db.add(run)
        self.db.commit()
        return run

    def mark_success(self, run: RollupRun, rows_written: int, ignored_count: int) -> RollupRun:
        run.status = RunStatus.SUCCESS
        run.finished_at = _utcnow()
        run.rows_written = rows_written
        run.ignored_count = ignored_count
        self.db.commit()
        return run

    def mark_failed(self, run: RollupRun, error_text: str) -> RollupRun:
        run.status = RunStatus.FAILED
        run.finished_at = _utcnow()
        run.error_text = error_text
        self.db.commit()
        return run

    def count_running(self, since: datetime | None = None) -> int:
        stmt = select(func.count()).select_from(RollupRun).where(RollupRun.status == RunStatus.RUNNING)
        if since is not None:
            stmt = stmt.where(RollupRun.started_at >= since)
        return self.db.scalar(stmt) or 0


class RollupWriter:
    """Upsert and replace helpers for the aggregate tables.

    Rollups run under the advisory lock, so a read-then-write upsert is enough
    here and stays portable across dialects.
    """

    def __init__(self, db: Session):
        self.db = db

    def upsert_daily_metric(self, day: date, metric_name: str, value: float,
                            dimension_key: str = "overall", dimensions: dict | None = None) -> None:
        row = self.db.scalars(select(DailyMetricRollup).where(
            DailyMetricRollup.day == day,
            DailyMetricRollup.metric_name == metric_name,
            DailyMetricRollup.dimension_key == dimension_key,
        )).one_or_none()
        if row is None:
            self.db.add(DailyMetricRollup(day=day, metric_name=metric_name, dimension_key=dimension_key,
                                          dimensions=dimensions, value=value, computed_at=_utcnow()))
        else:
            row.value = value
            row.dimensions = dimensions
            row.computed_at = _utcnow()
        self.db.flush()

    def replace_daily_metric(self, day: date, metric_name: str, rows: list[dict]) -> int:
        """Deletes every row of (day, metric_name) and inserts ``rows`` instead."""
        self.db.execute(delete(DailyMetricRollup).where(
            DailyMetricRollup.day == day, DailyMetricRollup.metric_name == metric_name,
        ))
        now = _utcnow()
        for row in rows:
            self.db.add(DailyMetricRollup(day=day, metric_name=metric_name, computed_at=now, **row))
        self.db.flush()
        return len(rows)

    def upsert_experiment_metric(self, day: date, experiment_id: str, variant_id: str, metric_name: str,
                                 value: float, dimensions: dict | None = None) -> None:
        row = self.db.scalars(select(ExperimentMetricRollup).where(
            ExperimentMetricRollup.day == day,
            ExperimentMetricRollup.experiment_id == experiment_id,
            ExperimentMetricRollup.variant_id == variant_id,
            ExperimentMetricRollup.metric_name == metric_name,
        )).one_or_none()
        if row is None:
            self.db.add(ExperimentMetricRollup(day=day, experiment_id=experiment_id, variant_id=variant_id,
                                               metric_name=metric_name, value=value, dimensions=dimensions,
                                               computed_at=_utcnow()))
        else:
            row.value = value
            row.dimensions = dimensions
            row.computed_at = _utcnow()
        self.db.flush()

    def replace_funnel_step(self, day: date, funnel_name: str, step_name: str, rows: list[dict]) -> int:
        self.db.execute(delete(FunnelRollup).where(
            FunnelRollup.day == day,
            FunnelRollup.funnel_name == funnel_name,
            FunnelRollup.step_name == step_name,
        ))
        now = _utcnow()
        for row in rows:
            self.db.add(FunnelRollup(day=day, funnel_name=funnel_name, step_name=step_name,
                                     computed_at=now, **row))
        self.db.flush()
        return len(rows)
