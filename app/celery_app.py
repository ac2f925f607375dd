"""Celery application instance shared across the backend.

Start a worker with:
    celery -A app.celery_app worker -Q reminder,inbound,lifecycle -l info --concurrency=2
and the scheduler with:
    celery -A app.celery_app beat -l info
"""

from celery import Celery
from celery.schedules import crontab

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("remi_backend", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.reminder.*": {"queue": "reminder"},
    "app.workers.inbound.*": {"queue": "inbound"},
    "app.workers.lifecycle.*": {"queue": "lifecycle"},
}

celery_app.conf.beat_schedule = {
    "dispatch-due-reminders": {
        "task": "app.workers.reminder.dispatch_due",
        "schedule": float(settings.DISPATCH_INTERVAL_SECONDS),
    },
    "reconcile-stale-reminders": {
        "task": "app.workers.reminder.reconcile_stale",
        "schedule": float(settings.RECONCILE_INTERVAL_SECONDS),
    },
    "purge-old-feed-events": {
        "task": "app.workers.lifecycle.purge_feed_events",
        "schedule": crontab(hour=3, minute=0),
    },
    "purge-old-changes": {
        "task": "app.workers.lifecycle.purge_change_log",
        "schedule": crontab(hour=3, minute=30),
    },
}

# --- Ensure tasks are registered ---
import app.workers.inbound  # noqa: E402,F401
import app.workers.lifecycle  # noqa: E402,F401
import app.workers.reminder  # noqa: E402,F401
