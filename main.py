from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Internal imports
from config import config
from data.database import create_tables, shutdown_engine
from api.assignment_routes import assignment_router
from api.events_routes import events_router
from api.metrics_routes import metrics_router
from api.rollup_routes import rollup_router
from services.errors import (ExperimentServiceError, JobFailure, LockContention, NoEligibleVariants, NotFoundError,
                             StorageUnavailable, ValidationError)
from services.event_validation import first_error_message

import contextlib
import logging
import middleware

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles startup and shutdown events for the application.
    Code before 'yield' runs on startup.
    Code after 'yield' runs on shutdown.
    """
    try:
        logger.info("Application starting up: Initializing database connection pool and schema...")
        create_tables()
        logger.info("Database tables initialized successfully.")
    except Exception as e:
        # The app still starts; requests answer 503 until the database is reachable
        logger.error("Failed to initialize database tables: %s", e)

    yield

    logger.info("Application shutting down: Closing resources...")
    shutdown_engine()

# --- FastAPI App Initialization ---
app = FastAPI(
    lifespan=lifespan,
    title="Experimentation and Analytics API",
    version="1.0.0",
    description="Sticky variant assignment, event ingestion and rollup metrics for mobile clients."
)

# Add the middleware to the application
app.add_middleware(middleware.RequestIDMiddleware)

app.include_router(assignment_router)
app.include_router(events_router)
app.include_router(metrics_router)
app.include_router(rollup_router)

# --- Error mapping ---

# (status code, "error" label) per service error, most specific first
ERROR_RESPONSES: list[tuple[type[ExperimentServiceError], int, str]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST, "Invalid request"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "Not found"),
    (LockContention, status.HTTP_409_CONFLICT, "Conflict"),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable"),
    (NoEligibleVariants, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error"),
    (JobFailure, status.HTTP_500_INTERNAL_SERVER_ERROR, "Rollup failed"),
]


def error_response(status_code: int, error: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(content={"error": error, "message": message}, status_code=status_code, headers=headers)


@app.exception_handler(ExperimentServiceError)
async def service_error_handler(request: Request, exc: ExperimentServiceError):
    for error_type, status_code, label in ERROR_RESPONSES:
        if isinstance(exc, error_type):
            break
    else:
        status_code, label = status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error"

    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return error_response(status_code, label, str(exc), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", first_error_message(exc))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    label = "Unauthorized" if exc.status_code == status.HTTP_401_UNAUTHORIZED else "Request failed"
    return error_response(exc.status_code, label, str(exc.detail), headers=getattr(exc, "headers", None))

# --- API Endpoints ---

@app.get("/health")
def health_check():
    return JSONResponse(content={"status": "healthy"}, status_code=200)

logger.debug("application configured: %r", config)
