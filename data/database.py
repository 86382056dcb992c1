from sqlalchemy import (create_engine, Column, Integer, String, Float, DateTime, Date, ForeignKey, Text,
                        Boolean, JSON, UniqueConstraint, Index)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, relationship, declarative_base, Session
from sqlalchemy.orm import class_mapper
from sqlalchemy.pool import StaticPool
from datetime import date, datetime, timezone
from config import config
import json
import logging
import threading
import uuid

logger = logging.getLogger(__name__)

Base = declarative_base()

# --- Process-wide engine (created on first use, disposed by shutdown_engine) ---

_engine: Engine | None = None
_session_factory: sessionmaker | None = None
_engine_lock = threading.Lock()


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": config.db_connect_timeout}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return kwargs

    kwargs = {"pool_pre_ping": True, "pool_timeout": config.db_pool_timeout}
    if url.startswith("postgresql"):
        kwargs["connect_args"] = {
            "connect_timeout": config.db_connect_timeout,
            "options": f"-c statement_timeout={config.db_statement_timeout_ms}",
        }
    return kwargs


def init_engine(database_url: str | None = None) -> Engine:
    """(Re)creates the shared engine. Tests call this with an in-memory url."""
    global _engine, _session_factory
    url = database_url or config.database_url
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = create_engine(url, **_engine_kwargs(url))
        _session_factory = sessionmaker(autoflush=False, bind=_engine, expire_on_commit=False)
    logger.info("database engine initialised for dialect %s", _engine.dialect.name)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_sessionmaker() -> sessionmaker:
    if _session_factory is None:
        init_engine()
    return _session_factory


def SessionLocal() -> Session:
    return get_sessionmaker()()


def shutdown_engine() -> None:
    global _engine, _session_factory
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
            logger.info("database engine disposed")
        _engine = None
        _session_factory = None


def get_db():
    """Dependency to yield a new database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Serializer Mixin ---
class SerializerMixin:
    """Helper class to serialize/deserialize ORM object into JSON string"""

    def to_dict(self, include_relationships=True, exclude_relationships_key: list | None = None):
        """
        Convert ORM object to dictionary, handling datetimes and relationships.
        Use exclude_relationships_key to keep large collections out of the result.
        """
        result = {}
        for c in self.__table__.columns:
            value = getattr(self, c.name)
            if isinstance(value, (datetime, date)):
                result[c.name] = value.isoformat()
            else:
                result[c.name] = value

        if include_relationships:
            for rel in self.__mapper__.relationships:
                if exclude_relationships_key and rel.key in exclude_relationships_key:
                    continue

                value = getattr(self, rel.key)
                if value is None:
                    result[rel.key] = None
                elif isinstance(value, list):  # one-to-many
                    result[rel.key] = [v.to_dict(include_relationships=False) for v in value]
                else:  # many-to-one or one-to-one
                    result[rel.key] = value.to_dict(include_relationships=False)

        return result

    def to_json(self, include_relationships=True, exclude_relationships_key: list | None = None):
        return json.dumps(self.to_dict(include_relationships=include_relationships,
                                       exclude_relationships_key=exclude_relationships_key))

    @classmethod
    def from_dict(cls, data, include_relationship=True):
        """Create a detached ORM object from a dictionary produced by to_dict."""
        fields = {}
        for c in cls.__table__.columns:
            if c.name not in data:
                continue
            value = data[c.name]
            if isinstance(value, str) and isinstance(c.type, DateTime):
                value = datetime.fromisoformat(value)
            elif isinstance(value, str) and isinstance(c.type, Date):
                value = date.fromisoformat(value)
            fields[c.name] = value

        if include_relationship:
            mapper = class_mapper(cls)
            for rel in mapper.relationships:
                rel_key = rel.key
                if rel_key in data and data[rel_key] is not None:
                    target_cls = rel.entity.class_
                    if isinstance(data[rel_key], list):
                        fields[rel_key] = [
                            target_cls.from_dict(item_data, include_relationship=False)
                            for item_data in data[rel_key]
                        ]
                    elif isinstance(data[rel_key], dict):
                        fields[rel_key] = target_cls.from_dict(data[rel_key], include_relationship=False)

        return cls(**fields)

    @classmethod
    def from_json(cls, json_str, include_relationship=True):
        data = json.loads(json_str)
        return cls.from_dict(data, include_relationship)


# --- Status vocabularies ---
class ExperimentStatus:
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    ENDED = "ENDED"


class RunStatus:
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class LoadTestPhase:
    BASELINE = "BASELINE"
    POST_MITIGATION = "POST_MITIGATION"

    ALL = (BASELINE, POST_MITIGATION)


# --- Reference data: experiments and variants ---
class Experiment(Base, SerializerMixin):
    __tablename__ = "experiments"
    experiment_id = Column(String(120), primary_key=True)
    status = Column(String(16), nullable=False, default=ExperimentStatus.DRAFT, index=True)
    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)
    targeting = Column(JSON, nullable=True)
    config_schema_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    variants = relationship("Variant", back_populates="experiment", order_by="Variant.variant_id",
                            cascade="all, delete-orphan")


class Variant(Base, SerializerMixin):
    __tablename__ = "experiment_variants"
    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(120), ForeignKey("experiments.experiment_id"), nullable=False)
    variant_id = Column(String(64), nullable=False)
    variant_name = Column(String(120), nullable=False)
    weight = Column(Float, nullable=False, default=0.0)
    is_control = Column(Boolean, nullable=False, default=False)
    config = Column(JSON, nullable=True)

    experiment = relationship("Experiment", back_populates="variants")

    __table_args__ = (UniqueConstraint('experiment_id', 'variant_id', name='experiment_variant_unique'),)


# --- Sticky assignments ---
class Assignment(Base, SerializerMixin):
    __tablename__ = "assignments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    anonymous_user_id = Column(String(128), nullable=False, index=True)
    experiment_id = Column(String(120), ForeignKey("experiments.experiment_id"), nullable=False)
    variant_id = Column(String(64), nullable=False)
    assignment_version = Column(Integer, nullable=False, default=1)
    context = Column(JSON, nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # At most one row per (user, experiment); the insert-if-absent path relies on it
    __table_args__ = (
        UniqueConstraint('anonymous_user_id', 'experiment_id', name='assignment_user_experiment_unique'),
        Index('idx_assignment_experiment_variant', 'experiment_id', 'variant_id'),
    )


# --- Raw events ---
class EventLog(Base, SerializerMixin):
    __tablename__ = "event_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), nullable=False, unique=True)
    anonymous_user_id = Column(String(128), nullable=False)
    session_id = Column(String(128), nullable=True)
    install_id = Column(String(128), nullable=True)
    platform = Column(String(16), nullable=True)
    app_version = Column(String(32), nullable=True)
    event_name = Column(String(80), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    properties = Column(JSON, nullable=True)
    context = Column(JSON, nullable=True)
    assignment_version = Column(Integer, nullable=True)
    assignments = Column(JSON, nullable=True)
    experiment_map = Column(JSON, nullable=True)
    schema_version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index('idx_event_user_occurred', 'anonymous_user_id', 'occurred_at'),
        Index('idx_event_name_occurred', 'event_name', 'occurred_at'),
    )


# --- Rollup bookkeeping and aggregate tables ---
class RollupRun(Base, SerializerMixin):
    __tablename__ = "rollup_runs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String(64), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=RunStatus.RUNNING, index=True)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    rows_written = Column(Integer, nullable=True)
    ignored_count = Column(Integer, nullable=True)
    error_text = Column(Text, nullable=True)


class DailyMetricRollup(Base, SerializerMixin):
    __tablename__ = "daily_metric_rollups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    day = Column(Date, nullable=False)
    metric_name = Column(String(64), nullable=False)
    dimension_key = Column(String(160), nullable=False, default="overall")
    dimensions = Column(JSON, nullable=True)
    value = Column(Float, nullable=False, default=0.0)
    computed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('day', 'metric_name', 'dimension_key', name='daily_metric_rollup_unique'),
    )


class ExperimentMetricRollup(Base, SerializerMixin):
    __tablename__ = "experiment_metric_rollups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    day = Column(Date, nullable=False)
    experiment_id = Column(String(120), nullable=False)
    variant_id = Column(String(64), nullable=False)
    metric_name = Column(String(64), nullable=False)
    value = Column(Float, nullable=False, default=0.0)
    dimensions = Column(JSON, nullable=True)
    computed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('day', 'experiment_id', 'variant_id', 'metric_name',
                         name='experiment_metric_rollup_unique'),
    )


class FunnelRollup(Base, SerializerMixin):
    __tablename__ = "funnel_rollups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    day = Column(Date, nullable=False)
    funnel_name = Column(String(64), nullable=False)
    step_name = Column(String(64), nullable=False)
    dimension_key = Column(String(200), nullable=False, default="overall")
    experiment_id = Column(String(120), nullable=True)
    variant_id = Column(String(64), nullable=True)
    users_count = Column(Integer, nullable=False, default=0)
    events_count = Column(Integer, nullable=False, default=0)
    computed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('day', 'funnel_name', 'step_name', 'dimension_key', name='funnel_rollup_unique'),
    )


# --- Load-test bookkeeping (read by the data-quality gate) ---
class LoadTestRun(Base, SerializerMixin):
    __tablename__ = "load_test_runs"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_name = Column(String(120), nullable=False)
    scenario_name = Column(String(64), nullable=False, index=True)
    phase = Column(String(32), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=RunStatus.RUNNING)
    target_base_url = Column(String(255), nullable=False)
    git_sha = Column(String(64), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    artifacts_path = Column(String(255), nullable=True)
    tags = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    error_text = Column(Text, nullable=True)

    endpoint_metrics = relationship("LoadTestEndpointMetric", back_populates="run",
                                    cascade="all, delete-orphan")
    data_checks = relationship("LoadTestDataCheck", back_populates="run", cascade="all, delete-orphan")


class LoadTestEndpointMetric(Base, SerializerMixin):
    __tablename__ = "load_test_endpoint_metrics"
    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("load_test_runs.id"), nullable=False, index=True)
    endpoint = Column(String(255), nullable=False)
    method = Column(String(16), nullable=False)
    requests_total = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=True)
    error_count = Column(Integer, nullable=True)
    timeout_count = Column(Integer, nullable=True)
    error_rate = Column(Float, nullable=True)
    min_ms = Column(Float, nullable=True)
    max_ms = Column(Float, nullable=True)
    mean_ms = Column(Float, nullable=True)
    p50_ms = Column(Float, nullable=True)
    p95_ms = Column(Float, nullable=True)
    p99_ms = Column(Float, nullable=True)
    rps = Column(Float, nullable=True)
    response_codes = Column(JSON, nullable=True)
    error_breakdown = Column(JSON, nullable=True)

    run = relationship("LoadTestRun", back_populates="endpoint_metrics")


class LoadTestDataCheck(Base, SerializerMixin):
    __tablename__ = "load_test_data_checks"
    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("load_test_runs.id"), nullable=False, index=True)
    check_name = Column(String(80), nullable=False)
    passed = Column(Boolean, nullable=False)
    observed_value = Column(Float, nullable=True)
    details = Column(JSON, nullable=True)

    run = relationship("LoadTestRun", back_populates="data_checks")


# Function to create tables
def create_tables():
    Base.metadata.create_all(bind=get_engine())
