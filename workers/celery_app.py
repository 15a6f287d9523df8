import json
import logging.config
from pathlib import Path

from celery import Celery
from celery.schedules import schedule
from celery.signals import setup_logging, worker_process_init
from kombu import Queue

from crosspost.core.config import settings
from crosspost.integrations.platform_clients import load_platform_client_bindings

celery_app = Celery(
    "crosspost",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="publishing",
    task_queues=(
        Queue("publishing"),
        Queue("scheduler"),
    ),
    task_routes={
        "workers.tasks.dispatch_due_entries": {"queue": "publishing"},
        "workers.tasks.cleanup_expired_oauth_states": {"queue": "scheduler"},
        "workers.tasks.worker_heartbeat": {"queue": "scheduler"},
    },
    beat_schedule={
        "dispatch-due-entries": {
            "task": "workers.tasks.dispatch_due_entries",
            "schedule": schedule(settings.dispatcher_interval_seconds),
            "options": {"queue": "publishing"},
        },
        "cleanup-expired-oauth-states": {
            "task": "workers.tasks.cleanup_expired_oauth_states",
            "schedule": schedule(settings.oauth_state_cleanup_interval_seconds),
            "options": {"queue": "scheduler"},
        },
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "scheduler"},
        },
    },
)


LOGGING_CONFIG_PATH = Path(__file__).resolve().parent.parent / "logging.json"


@setup_logging.connect
def _configure_logging(**kwargs) -> None:
    # Connecting this signal stops Celery from installing its own handlers.
    if LOGGING_CONFIG_PATH.exists():
        logging.config.dictConfig(json.loads(LOGGING_CONFIG_PATH.read_text(encoding="utf-8")))
    else:
        logging.basicConfig(level=logging.INFO)


@worker_process_init.connect
def _bind_platform_clients(**kwargs) -> None:
    load_platform_client_bindings(settings.platform_client_bindings)


celery_app.autodiscover_tasks(["workers"])
