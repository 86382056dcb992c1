import pytest
from fastapi.testclient import TestClient
from data.database import (Base, Experiment, ExperimentStatus, Variant, get_engine, get_sessionmaker, init_engine,
                           shutdown_engine)
from services.cache import get_cache_client, get_mock_cache_client
from config import config
import main
from main import app
from seed_data import seed_activity

config.valid_tokens = ["fake-client-token"]


@pytest.fixture(autouse=True)
def setup_database():
    # One in-memory database per test (StaticPool keeps it alive across sessions)
    init_engine("sqlite://")
    Base.metadata.create_all(bind=get_engine())
    yield
    shutdown_engine()


@pytest.fixture
def db_session(setup_database):
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def cache_client():
    return get_mock_cache_client()


@pytest.fixture
def client(cache_client, monkeypatch):
    app.dependency_overrides[get_cache_client] = lambda: cache_client
    # the engine belongs to setup_database, not to the app lifespan
    monkeypatch.setattr(main, "shutdown_engine", lambda: None)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_experiment(db_session):
    """Factory: persists an experiment with (variant_id, weight, config) variants."""
    def _make(experiment_id, variants, status=ExperimentStatus.RUNNING, targeting=None, start_at=None,
              end_at=None):
        experiment = Experiment(experiment_id=experiment_id, status=status, targeting=targeting,
                                start_at=start_at, end_at=end_at)
        for index, (variant_id, weight, variant_config) in enumerate(variants):
            experiment.variants.append(Variant(
                variant_id=variant_id,
                variant_name=variant_id.replace("_", " ").title(),
                weight=weight,
                is_control=index == 0,
                config=variant_config,
            ))
        db_session.add(experiment)
        db_session.commit()
        return experiment
    return _make


@pytest.fixture
def seeded(db_session, make_experiment):
    seed_activity(db_session, make_experiment)
    return db_session
