from fastapi import APIRouter, status

from models.rollups import RollupRequest, RollupSummary
from rollups.coordinator import run_rollups
from api.depends import CLIENT_AUTH

import logging

logger = logging.getLogger(__name__)

rollup_router = APIRouter(
    prefix="/v1/rollups",
    tags=["rollups"],
    dependencies=[CLIENT_AUTH],
)


# POST /v1/rollups (manual trigger; the scheduled path goes through Celery beat)
@rollup_router.post("", response_model=RollupSummary, status_code=status.HTTP_200_OK)
def run_rollups_route(request: RollupRequest | None = None):
    """
    Recompute the aggregate tables synchronously.
    Answers 409 when another run holds the rollup lock.
    """
    request = request or RollupRequest()
    logger.info("manual rollup requested: window_days=%d jobs=%s", request.window_days, request.jobs or "all")
    return run_rollups(request.window_days, jobs=request.jobs)
