"""Periodic reminder dispatch tasks (driven by Celery beat)."""

from __future__ import annotations

import asyncio

from app.celery_app import celery_app
from app.services import dispatcher
import db


async def _run(coro_fn):
    # Each asyncio.run gets a fresh loop; pooled connections must not outlive it.
    try:
        return await coro_fn()
    finally:
        await db.dispose_engine()


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.dispatch_due", bind=True, max_retries=3)
def dispatch_due(self):  # noqa: D401
    """Send every reminder that is due in the current poll window."""
    try:
        return asyncio.run(_run(dispatcher.run_once))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)


@celery_app.task(name="app.workers.reminder.reconcile_stale", bind=True, max_retries=3)
def reconcile_stale(self):  # noqa: D401
    """Move reminders stranded in the past to their next occurrence."""
    try:
        return asyncio.run(_run(dispatcher.reconcile_stale))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
