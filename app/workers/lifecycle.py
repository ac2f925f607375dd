"""Lifecycle tasks: confirmation SMS, cascading deletes, retention sweeps.

Cascades are idempotent, so a retry after a partial run just finishes the
remaining batches.
"""

from __future__ import annotations

import asyncio

from app.celery_app import celery_app
from app.services import lifecycle
from app.workers.reminder import _run


@celery_app.task(name="app.workers.lifecycle.send_confirmation", bind=True, max_retries=3)
def send_confirmation(self, account_id: str, contact_id: str):  # noqa: D401
    try:
        return asyncio.run(_run(lambda: lifecycle.send_confirmation(account_id, contact_id)))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)


@celery_app.task(name="app.workers.lifecycle.delete_contact", bind=True, max_retries=5)
def delete_contact(self, account_id: str, contact_id: str):  # noqa: D401
    try:
        return asyncio.run(_run(lambda: lifecycle.delete_contact(account_id, contact_id)))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)


@celery_app.task(name="app.workers.lifecycle.delete_account", bind=True, max_retries=5)
def delete_account(self, account_id: str):  # noqa: D401
    try:
        return asyncio.run(_run(lambda: lifecycle.delete_account(account_id)))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)


@celery_app.task(name="app.workers.lifecycle.purge_feed_events", bind=True, max_retries=3)
def purge_feed_events(self):  # noqa: D401
    try:
        return asyncio.run(_run(lifecycle.purge_old_feed_events))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)


@celery_app.task(name="app.workers.lifecycle.purge_change_log", bind=True, max_retries=3)
def purge_change_log(self):  # noqa: D401
    try:
        return asyncio.run(_run(lifecycle.purge_old_changes))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
