import uuid
from fastapi import status
from sqlalchemy import func, select
from datetime import timedelta
from data.database import EventLog
from services.timeutil import isoformat, utcnow


def _event(name="app_opened", **extra):
    return {"event_name": name, "occurred_at": isoformat(utcnow() - timedelta(minutes=1)), **extra}


def _payload(events, user="user-ev", **extra):
    return {"anonymous_user_id": user, "session_id": "s-1", "platform": "ios", "app_version": "1.4.0",
            "sent_at": isoformat(utcnow()), "events": events, **extra}


def _stored(db_session):
    return db_session.scalar(select(func.count()).select_from(EventLog))


def test_batch_is_accepted_and_stored(client, db_session):
    response = client.post("/v1/events", json=_payload([_event(), _event("workout_started")]))
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["ok"] is True
    assert data["accepted"] == 2
    assert data["rejected"] == 0
    assert "received_at" in data
    assert "inserted" not in data
    for index, result in enumerate(data["results"]):
        assert result["index"] == index
        assert result["status"] == "accepted"
        assert "error" not in result
        uuid.UUID(result["event_id"])
    assert _stored(db_session) == 2


def test_partial_rejection(client, db_session):
    events = [_event(), {"event_name": "bad-name", "occurred_at": isoformat(utcnow())},
              _event(occurred_at=isoformat(utcnow() + timedelta(hours=1)))]
    data = client.post("/v1/events", json=_payload(events)).json()
    assert data["accepted"] == 1
    assert data["rejected"] == 2
    assert data["results"][1] == {"index": 1, "status": "rejected", "error": "event_name has invalid characters"}
    assert data["results"][2]["error"] == "occurred_at is too far in the future"
    assert _stored(db_session) == 1


def test_resent_event_is_stored_once(client, db_session):
    event_id = str(uuid.uuid4())
    payload = _payload([_event(event_id=event_id)])
    first = client.post("/v1/events", json=payload).json()
    second = client.post("/v1/events", json=payload).json()
    assert first["results"][0]["event_id"] == event_id
    assert second["results"][0]["status"] == "accepted"
    assert _stored(db_session) == 1


def test_retried_batch_without_ids_is_stored_once(client, db_session):
    payload = _payload([_event(), _event("tab_opened")])
    client.post("/v1/events", json=payload)
    client.post("/v1/events", json=payload)
    assert _stored(db_session) == 2


def test_events_carry_assignment_snapshot(client, make_experiment, db_session):
    make_experiment("landing_tab", [("control", 1, None)])
    client.post("/v1/assignment", json={"anonymous_user_id": "user-snap"})

    client.post("/v1/events", json=_payload([_event(properties={"tab": "home"})], user="user-snap"))

    row = db_session.scalars(select(EventLog).where(EventLog.anonymous_user_id == "user-snap")).one()
    assert row.experiment_map == {"landing_tab": "control"}
    assert row.assignment_version == 1
    assert row.properties == {"tab": "home"}
    assert row.platform == "ios"
    assert row.session_id == "s-1"


def test_envelope_errors_are_400(client, db_session):
    for payload in ({"anonymous_user_id": "u", "events": []},
                    {"events": [_event()]},
                    _payload([_event()] * 101),
                    _payload([_event()], sent_at="not a date")):
        response = client.post("/v1/events", json=payload)
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid request"

    response = client.post("/v1/events", content=b"[1, 2]", headers={"Content-Type": "application/json"})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert _stored(db_session) == 0
