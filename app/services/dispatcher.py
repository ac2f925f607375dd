"""Due-reminder dispatcher.

Each tick selects active reminders whose ``next_due`` fell inside the current
poll window, claims each one with a compare-and-swap on ``next_due`` and only
then talks to the messaging gateway. Ticks are at-least-once (beat + cron may
overlap, workers may retry) so the claim is the only thing standing between a
reminder and a double send.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Optional

from app.services.recurrence import RecurrenceConfigError, next_occurrence
from app.utils.sms import MessagingGateway, send_sms
from config import settings
from db import store
from db.db import utcnow
from db.models import Account, Contact, Reminder

_LOGGER = logging.getLogger(__name__)

INSTRUCTIONS = {
    "photo": "Reply with a photo when done.",
    "text": "Reply DONE when complete.",
    "either": "Reply when done.",
}


def render_message(contact_name: str, title: str, response_requirement: str) -> str:
    instructions = INSTRUCTIONS.get(response_requirement, INSTRUCTIONS["either"])
    return f"Hi {contact_name}! Time to: {title}\n\n{instructions}"


def next_due_for(reminder: Reminder, reference: datetime) -> Optional[datetime]:
    return next_occurrence(
        reminder.rule,
        reminder.time_of_day,
        reminder.timezone,
        reference,
        days=reminder.days or (),
        at=reminder.at,
    )


def _window_start(now: datetime) -> datetime:
    return now - timedelta(seconds=settings.DISPATCH_INTERVAL_SECONDS + settings.DISPATCH_SLACK_SECONDS)


def _skip_reason(contact: Contact, account: Account) -> Optional[str]:
    if contact.status != "confirmed":
        return f"contact {contact.status}"
    if contact.sms_opted_out:
        return "contact opted out"
    if account.sms_quota_used >= account.sms_quota_limit:
        return "account over SMS quota"
    return None


async def _reschedule_edited(reminder_id: str, reminder: Optional[Reminder], token: str, now: datetime) -> None:
    """Follow-up for a send whose row changed while it was claimed.

    A paused or archived reminder keeps its slot. An edited one is still
    claimed by *token*; move it on from whatever ``next_due`` the edit left
    behind, using the edited rule.
    """
    if reminder is None or reminder.status != "active":
        _LOGGER.info("reminder %s changed state mid-send; not rescheduled", reminder_id)
        return
    nxt = next_due_for(reminder, now)
    moved = await store.advance_schedule(
        reminder_id, reminder.next_due, nxt, now, settings.CLAIM_LEASE_SECONDS, token=token
    )
    if not moved:
        _LOGGER.warning("reminder %s edited again mid-send; claim left to expire", reminder_id)
        return
    _LOGGER.info("reminder %s edited mid-send; next due %s", reminder_id, nxt)


async def dispatch_one(
    reminder: Reminder,
    contact: Contact,
    account: Account,
    now: datetime,
    gateway: Optional[MessagingGateway] = None,
) -> str:
    """Dispatch a single due reminder. Returns sent/failed/skipped/lost."""
    lease = settings.CLAIM_LEASE_SECONDS

    period_end = account.sms_quota_period_end
    if period_end is None or now >= period_end:
        account = await store.roll_quota_period(account.id, now, settings.SMS_QUOTA_PERIOD_DAYS) or account

    reason = _skip_reason(contact, account)
    if reason:
        advanced = await store.advance_schedule(
            reminder.id, reminder.next_due, next_due_for(reminder, now), now, lease
        )
        if advanced:
            _LOGGER.info("skipped reminder %s (%s)", reminder.id, reason)
        return "skipped" if advanced else "lost"

    claim = await store.claim_reminder(reminder.id, reminder.next_due, now, lease)
    if claim is None:
        _LOGGER.debug("claim lost for reminder %s @ %s", reminder.id, reminder.next_due)
        return "lost"
    token, occurrence_id = claim

    body = render_message(contact.display_name, reminder.title, reminder.response_requirement)
    try:
        delivery_id = await send_sms(contact.phone_number, body, gateway=gateway)
    except Exception as exc:  # noqa: BLE001
        await store.fail_dispatch(
            reminder_id=reminder.id,
            token=token,
            occurrence_id=occurrence_id,
            error=f"{type(exc).__name__}: {exc}",
            to_number=contact.phone_number,
            body=body,
            now=now,
        )
        _LOGGER.error("send failed for reminder %s: %s", reminder.id, exc)
        return "failed"

    fresh, rescheduled = await store.complete_dispatch(
        reminder_id=reminder.id,
        token=token,
        occurrence_id=occurrence_id,
        next_due=next_due_for(reminder, now),
        delivery_id=delivery_id,
        to_number=contact.phone_number,
        body=body,
        now=now,
        claimed_version=reminder.version,
    )
    if not rescheduled:
        await _reschedule_edited(reminder.id, fresh, token, now)
    return "sent"


async def run_once(
    now: Optional[datetime] = None,
    *,
    gateway: Optional[MessagingGateway] = None,
) -> Dict[str, int]:
    """One dispatcher tick. Safe to run concurrently with itself."""
    now = now or utcnow()
    due = await store.fetch_due_reminders(_window_start(now), now, settings.DISPATCH_BATCH_SIZE)
    summary: Counter = Counter()
    for reminder, contact, account in due:
        summary[await dispatch_one(reminder, contact, account, now, gateway)] += 1
    if due:
        _LOGGER.info("dispatch tick: %d due, %s", len(due), dict(summary))
    return dict(summary)


async def reconcile_stale(now: Optional[datetime] = None) -> int:
    """Move active reminders stranded before the poll window to their next
    future occurrence (downtime, repeated send failures)."""
    now = now or utcnow()
    moved = 0
    for reminder in await store.fetch_stale_reminders(
        _window_start(now), now, settings.CLAIM_LEASE_SECONDS, settings.DISPATCH_BATCH_SIZE
    ):
        try:
            nxt = next_due_for(reminder, now)
        except RecurrenceConfigError as exc:
            _LOGGER.error("reminder %s has an invalid schedule: %s", reminder.id, exc)
            continue
        if await store.advance_schedule(reminder.id, reminder.next_due, nxt, now, settings.CLAIM_LEASE_SECONDS):
            moved += 1
            _LOGGER.info("reconciled reminder %s: %s -> %s", reminder.id, reminder.next_due, nxt)
    return moved
