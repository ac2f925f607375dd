from __future__ import annotations

"""Periodic scanner to send due reminders.
Run via Railway schedule every minute (alternative to Celery beat):
    python -m app.scripts.scan_due_reminders
Both may run at once; the dispatcher's claim keeps sends single.
"""

import asyncio
import logging

from app.services import dispatcher
import db


async def main() -> dict:
    try:
        summary = await dispatcher.run_once()
        moved = await dispatcher.reconcile_stale()
    finally:
        await db.dispose_engine()
    return {**summary, "reconciled": moved}


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=logging.INFO)
    print("[CRON] scan_due_reminders: job started")
    try:
        result = asyncio.run(main())
        print(f"[CRON] scan_due_reminders: job completed successfully {result}")
    except Exception as e:
        print(f"[CRON] scan_due_reminders: job failed: {e}")
        raise SystemExit(1)
