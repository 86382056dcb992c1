"""Error taxonomy shared by the assignment, ingestion and rollup paths.

Retryable conditions (``StorageUnavailable``, ``LockContention``) are kept
distinct from data errors so callers can apply backoff instead of failing.
"""
import contextlib
import logging
from typing import Iterator

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class ExperimentServiceError(Exception):
    """Base class for every error raised by the service core."""

    retryable = False


class ValidationError(ExperimentServiceError):
    """Malformed request or event envelope. Never reaches storage."""


class NotFoundError(ExperimentServiceError):
    """A referenced record (e.g. a load-test run) does not exist."""


class NoEligibleVariants(ExperimentServiceError):
    """An experiment has no variant with a positive weight."""

    def __init__(self, experiment_id: str | None = None):
        self.experiment_id = experiment_id
        target = f" for experiment {experiment_id}" if experiment_id else ""
        super().__init__(f"No valid variants available for weighted assignment{target}.")


class StorageUnavailable(ExperimentServiceError):
    """Transient connectivity or timeout failure talking to the store."""

    retryable = True

    def __init__(self, message: str = "Database is temporarily unavailable. Please retry."):
        super().__init__(message)


class LockContention(ExperimentServiceError):
    """Another rollup run holds the rollup lock (or is still RUNNING)."""

    retryable = True


class JobFailure(ExperimentServiceError):
    """A rollup job raised mid-run. Its RollupRun row is already FAILED."""

    def __init__(self, job_name: str, cause: BaseException):
        self.job_name = job_name
        self.cause = cause
        super().__init__(f"Rollup job {job_name} failed: {cause}")


# SQLSTATE classes: 08 connection exception, 53 insufficient resources,
# 57 operator intervention (admin shutdown, statement timeout)
TRANSIENT_SQLSTATE_CLASSES = ("08", "53", "57")

# Driver messages without a SQLSTATE (connect failures, SQLite busy/locked)
TRANSIENT_MESSAGES = (
    "could not connect",
    "connection",
    "server closed",
    "timeout",
    "timed out",
    "database is locked",
    "database table is locked",
    "unable to open database file",
    "disk i/o error",
)


def is_storage_unavailable(error: BaseException) -> bool:
    """True for connectivity and timeout failures, false for SQL or schema errors."""
    if isinstance(error, (sa_exc.TimeoutError, sa_exc.DisconnectionError)):
        return True
    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return True
        if not isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError)):
            return False
        sqlstate = getattr(error.orig, "pgcode", None) or getattr(error.orig, "sqlstate", None)
        if sqlstate:
            return sqlstate[:2] in TRANSIENT_SQLSTATE_CLASSES
        message = str(error.orig).lower()
        return any(fragment in message for fragment in TRANSIENT_MESSAGES)
    return isinstance(error, (ConnectionError, TimeoutError))


@contextlib.contextmanager
def storage_errors() -> Iterator[None]:
    """Re-raises connectivity/timeout failures as ``StorageUnavailable``."""
    try:
        yield
    except ExperimentServiceError:
        raise
    except Exception as e:
        if is_storage_unavailable(e):
            logger.warning("storage unavailable: %s", type(e).__name__)
            raise StorageUnavailable() from e
        raise
