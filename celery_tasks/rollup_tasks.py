from celery_config import celery_app
from rollups.coordinator import run_rollups
from services.errors import JobFailure, LockContention, StorageUnavailable, is_storage_unavailable
import logging

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def run_scheduled_rollups(self, window_days: int, jobs: list[str] | None = None):
    """
    Periodic rollup recomputation, scheduled by beat.
    Lock contention and storage outages are retried; a job that fails on its
    own data is re-raised so the worker marks the task FAILURE.
    """
    try:
        summary = run_rollups(window_days, jobs=jobs)
    except (LockContention, StorageUnavailable) as exc:
        logger.warning("Task %s[%s]: rollups not run (%s). Retrying...", self.name, self.request.id, exc)
        raise self.retry(exc=exc)
    except JobFailure as exc:
        if isinstance(exc.cause, StorageUnavailable) or is_storage_unavailable(exc.cause):
            logger.warning("Task %s[%s]: %s lost the database. Retrying...", self.name, self.request.id,
                           exc.job_name)
            raise self.retry(exc=exc)
        logger.error("Task %s[%s]: %s", self.name, self.request.id, exc)
        raise

    result = summary.model_dump(mode="json")
    logger.info("Task %s[%s]: rollups finished, %s", self.name, self.request.id,
                ", ".join(f"{job['job_name']}={job['rows_written']}" for job in result["jobs"]))
    return result
