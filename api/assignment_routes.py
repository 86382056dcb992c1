from fastapi import APIRouter, status
from sqlalchemy.orm import Session

from models.assignment import AssignmentRequest, AssignmentResponse
from services import assignment
from services.cache import CacheClient
from services.timeutil import utcnow
from api.depends import DB_DEPENDENCY, CACHE_CLIENT

import logging

logger = logging.getLogger(__name__)

assignment_router = APIRouter(
    prefix="/v1/assignment",
    tags=["assignment"],
)


# POST /v1/assignment (sticky, idempotent per user and experiment)
@assignment_router.post("", response_model=AssignmentResponse, status_code=status.HTTP_200_OK)
def resolve_assignment_route(
    request: AssignmentRequest,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT
):
    """Resolve the user's variants for every eligible running experiment plus the merged config."""
    result = assignment.resolve_assignment(
        db,
        cache,
        request.anonymous_user_id,
        platform=request.platform,
        app_version=request.app_version,
        session_id=request.session_id,
        install_id=request.install_id,
    )
    return AssignmentResponse(
        anonymous_user_id=request.anonymous_user_id,
        generated_at=utcnow(),
        **result.model_dump(),
    )
