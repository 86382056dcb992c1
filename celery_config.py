from celery import Celery
from config import config

# A broker must be running (Redis/Valkey); URLs come from CELERY_BROKER_URL / CELERY_BACKEND_URL
BROKER_URL = config.celery_broker_url
BACKEND_URL = config.celery_backend_url

celery_app = Celery(
    "rollup_tasks",
    broker=BROKER_URL,
    backend=BACKEND_URL,
    # This ensures the tasks are loaded when the worker starts
    include=["celery_tasks.rollup_tasks"]
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # === Producer-Side (Sending Message) Retry Settings ===
    task_publish_retry=True,
    task_publish_retry_policy={
        'max_retries': 10,       # Maximum number of retries before giving up
        'interval_start': 0.5,   # Initial wait time in seconds
        'interval_step': 0.5,    # Amount to increase wait time by
        'interval_max': 5,       # Maximum wait time
    },

    # A rollup that is still holding the lock makes the next one fail fast, so never pile them up
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

celery_app.conf.beat_schedule = {
    'recompute-rollups': {
        'task': 'celery_tasks.rollup_tasks.run_scheduled_rollups',
        'schedule': float(config.rollup_interval_seconds),
        'kwargs': {'window_days': config.rollup_window_days},
        # a tick that could not run before the next one is worthless
        'options': {'expires': float(config.rollup_interval_seconds)},
    },
}

celery_app.conf.task_routes = {
    'celery_tasks.rollup_tasks.*': {'queue': 'rollups'},
}
