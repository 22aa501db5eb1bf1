from celery import Celery
from celery.schedules import crontab
from config import config

BROKER_URL = config.celery_broker_url
BACKEND_URL = config.celery_backend_url

celery_app = Celery(
    "lifecycle_tasks",
    broker=BROKER_URL,
    backend=BACKEND_URL,
    # This ensures the tasks are loaded when the worker starts
    include=["celery_tasks.lifecycle_tasks"]
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
)

celery_app.conf.task_routes = {
    # default queue
    'celery_tasks.lifecycle_tasks.*': {'queue': 'default'},
}

# Celery beat drives the periodic lifecycle checks
celery_app.conf.beat_schedule = {
    'complete-ready-experiments': {
        'task': 'celery_tasks.lifecycle_tasks.complete_ready_experiments',
        'schedule': crontab(minute=0),
    },
    'snapshot-running-experiments': {
        'task': 'celery_tasks.lifecycle_tasks.snapshot_running_experiments',
        'schedule': crontab(hour=0, minute=5),
    },
}
