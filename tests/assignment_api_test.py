from fastapi import status
from sqlalchemy import func, select
from datetime import timedelta
from data.database import Assignment, ExperimentStatus
from services.assignment import resolve_assignment
from services.cache import EXPERIMENT_CACHE_TTL, CacheClient, _MockValkeyBackend
from services.config_merge import BASELINE_CONFIG
from services.timeutil import utcnow


def _two_way(make_experiment, experiment_id="landing_tab", **kwargs):
    return make_experiment(experiment_id, [
        ("control", 50, {"navigation": {"default_landing_tab": "workouts"}}),
        ("treatment", 50, {"navigation": {"default_landing_tab": "creatures"}}),
    ], **kwargs)


def test_assignment_response_shape(client, make_experiment):
    _two_way(make_experiment)

    response = client.post("/v1/assignment", json={"anonymous_user_id": "user-123", "platform": "ios"})
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["anonymous_user_id"] == "user-123"
    assert data["assignment_version"] == 1
    assert "generated_at" in data
    assert len(data["assignments"]) == 1
    assignment = data["assignments"][0]
    assert assignment["experiment_id"] == "landing_tab"
    assert assignment["variant_id"] in ("control", "treatment")
    expected_tab = "workouts" if assignment["variant_id"] == "control" else "creatures"
    assert data["config"]["navigation"]["default_landing_tab"] == expected_tab
    assert data["config"]["achievements"] == BASELINE_CONFIG["achievements"]


def test_assignment_is_sticky_across_requests(client, make_experiment, db_session):
    _two_way(make_experiment)
    payload = {"anonymous_user_id": "user-sticky", "session_id": "s-1"}

    first = client.post("/v1/assignment", json=payload).json()
    for _ in range(5):
        again = client.post("/v1/assignment", json={**payload, "session_id": "s-2"}).json()
        assert again["assignments"] == first["assignments"]

    count = db_session.scalar(select(func.count()).select_from(Assignment)
                              .where(Assignment.anonymous_user_id == "user-sticky"))
    assert count == 1


def test_stored_assignment_survives_weight_change(client, make_experiment, db_session, cache_client):
    experiment = _two_way(make_experiment)
    first = client.post("/v1/assignment", json={"anonymous_user_id": "user-w"}).json()
    assigned = first["assignments"][0]["variant_id"]

    for variant in experiment.variants:
        variant.weight = 100 if variant.variant_id != assigned else 0
    db_session.commit()
    cache_client.invalidate_running_experiments()

    again = client.post("/v1/assignment", json={"anonymous_user_id": "user-w"}).json()
    assert again["assignments"][0]["variant_id"] == assigned


def test_multiple_experiments_ordered_and_merged(client, make_experiment):
    make_experiment("b_achievements", [("celebrate", 1, {"achievements": {"ui_mode": "celebrate"}})])
    make_experiment("a_preload", [("preload", 1, {"workouts": {"preload_default_plan": True}})])

    data = client.post("/v1/assignment", json={"anonymous_user_id": "user-m"}).json()
    assert [a["experiment_id"] for a in data["assignments"]] == ["a_preload", "b_achievements"]
    assert data["config"]["workouts"]["preload_default_plan"] is True
    assert data["config"]["achievements"]["ui_mode"] == "celebrate"


def test_ineligible_experiments_are_skipped(client, make_experiment):
    now = utcnow()
    make_experiment("draft", [("a", 1, None)], status=ExperimentStatus.DRAFT)
    make_experiment("future", [("a", 1, None)], start_at=now + timedelta(days=1))
    make_experiment("ended", [("a", 1, None)], end_at=now - timedelta(days=1))
    make_experiment("ios_only", [("a", 1, None)], targeting={"platform": "ios"})
    make_experiment("new_builds", [("a", 1, None)], targeting={"min_app_version": "2.0.0"})
    make_experiment("no_weight", [("a", 0, None)])

    data = client.post("/v1/assignment", json={"anonymous_user_id": "user-e", "platform": "android",
                                               "app_version": "1.9.3"}).json()
    assert data["assignments"] == []
    assert data["config"] == BASELINE_CONFIG

    data = client.post("/v1/assignment", json={"anonymous_user_id": "user-e", "platform": "ios",
                                               "app_version": "2.1"}).json()
    assert [a["experiment_id"] for a in data["assignments"]] == ["ios_only", "new_builds"]


def test_invalid_body_is_400(client):
    response = client.post("/v1/assignment", json={"anonymous_user_id": "   "})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error"] == "Invalid request"

    response = client.post("/v1/assignment", json={"anonymous_user_id": "u", "platform": "web"})
    assert response.status_code == status.HTTP_400_BAD_REQUEST

    response = client.post("/v1/assignment", json={})
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_health(client):
    response = client.get("/health")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "healthy"}
    assert "X-Request-ID" in response.headers


def test_ended_experiment_drops_out_after_catalog_ttl(make_experiment, db_session):
    clock = [0.0]
    cache = CacheClient(backend=_MockValkeyBackend(clock=lambda: clock[0]))
    experiment = make_experiment("exp_a", [("a", 1, None)])

    first = resolve_assignment(db_session, cache, "user-1")
    assert [a.experiment_id for a in first.assignments] == ["exp_a"]

    experiment.status = ExperimentStatus.ENDED
    db_session.commit()

    # still inside the TTL: the cached catalog is served
    clock[0] = EXPERIMENT_CACHE_TTL - 1
    assert [a.experiment_id for a in resolve_assignment(db_session, cache, "user-2").assignments] == ["exp_a"]

    clock[0] = EXPERIMENT_CACHE_TTL + 1
    assert resolve_assignment(db_session, cache, "user-3").assignments == []
