from fastapi import APIRouter, Body, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Any

from services.ingestion import ingest_events
from api.depends import DB_DEPENDENCY

import logging

logger = logging.getLogger(__name__)

events_router = APIRouter(
    prefix="/v1/events",
    tags=["events"],
)


# POST /v1/events
@events_router.post("", status_code=status.HTTP_200_OK)
def record_events_route(
    payload: Any = Body(...),
    db: Session = DB_DEPENDENCY
):
    """
    Record a batch of client events.
    The envelope is validated as a whole (400 when malformed); items are then
    accepted or rejected one by one and reported back by index.
    """
    result = ingest_events(db, payload)
    content = result.model_dump(mode="json", exclude={"inserted"})
    content["results"] = [
        {key: value for key, value in item.items() if value is not None} for item in content["results"]
    ]
    return JSONResponse(content=content, status_code=status.HTTP_200_OK)
