"""Account / contact / reminder lifecycle.

Creation validates schedules up front so configuration errors never reach
the dispatcher. Deletion walks the hierarchy bottom-up in bounded batches;
every batch commits on its own, so an interrupted cascade can simply be
run again.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from app.celery_app import celery_app
from app.services.recurrence import RecurrenceConfigError, next_occurrence, validate_rule
from app.types.reminder_contract import AccountUpsert, ContactCreate, ReminderCreate
from app.utils.sms import send_sms
from config import settings
from db import store
from db.db import utcnow
from db.models import Account, Contact, Reminder

_LOGGER = logging.getLogger(__name__)

CONFIRMATION_TEMPLATE = (
    "Hi {name}! {sender} would like to send you daily habit reminders by text. "
    "Reply YES to confirm or STOP to opt out."
)

SCHEDULE_FIELDS = frozenset({"rule", "days", "at", "time_of_day", "timezone"})

# Children before parents so a partial run never strands an orphan.
CONTACT_CASCADE = ("response", "occurrence", "reminder", "feed_event", "sms_log", "contact")


class NotFound(LookupError):
    pass


class InvalidTransition(ValueError):
    pass


# ──────────────────────────────────────────────────────────────────────
# Accounts & contacts
# ──────────────────────────────────────────────────────────────────────

async def upsert_account(account_id: str, data: AccountUpsert, now: Optional[datetime] = None) -> Account:
    now = now or utcnow()
    return await store.upsert_account(
        account_id,
        data.display_name,
        data.sms_quota_limit,
        default_quota=settings.DEFAULT_SMS_QUOTA,
        quota_period_end=now + timedelta(days=settings.SMS_QUOTA_PERIOD_DAYS),
    )


def _queue_confirmation(account_id: str, contact_id: str) -> None:
    celery_app.send_task(
        "app.workers.lifecycle.send_confirmation",
        args=[account_id, contact_id],
        queue="lifecycle",
    )


async def enroll_contact(
    account_id: str,
    data: ContactCreate,
    now: Optional[datetime] = None,
) -> Contact:
    """Create (or refresh) a contact and ask them to confirm by SMS."""
    now = now or utcnow()
    if await store.get_account(account_id) is None:
        raise NotFound(f"account {account_id} not found")
    contact, created = await store.upsert_contact(account_id, data.phone_number, data.display_name, now)
    _LOGGER.info("%s contact %s for account %s", "enrolled" if created else "updated", contact.id, account_id)
    if contact.status == "pending":
        _queue_confirmation(account_id, contact.id)
    return contact


async def send_confirmation(account_id: str, contact_id: str, now: Optional[datetime] = None) -> Optional[str]:
    """Send the enrollment confirmation SMS. Returns the delivery id, or
    ``None`` when the contact no longer needs one."""
    now = now or utcnow()
    contact = await store.get_contact(account_id, contact_id)
    if contact is None or contact.status != "pending":
        return None
    account = await store.roll_quota_period(account_id, now, settings.SMS_QUOTA_PERIOD_DAYS)
    if account is not None and account.sms_quota_used >= account.sms_quota_limit:
        _LOGGER.warning("account %s over SMS quota; confirmation for %s not sent", account_id, contact_id)
        return None
    body = CONFIRMATION_TEMPLATE.format(
        name=contact.display_name,
        sender=(account.display_name if account and account.display_name else "Someone"),
    )
    try:
        delivery_id = await send_sms(contact.phone_number, body)
    except Exception as exc:
        await store.log_sms(
            account_id=account_id,
            contact_id=contact_id,
            to_number=contact.phone_number,
            body=body,
            message_type="confirmation",
            delivery_id=None,
            status="failed",
            error=str(exc)[:1000],
            now=now,
        )
        raise
    await store.log_sms(
        account_id=account_id,
        contact_id=contact_id,
        to_number=contact.phone_number,
        body=body,
        message_type="confirmation",
        delivery_id=delivery_id,
        status="sent",
        now=now,
    )
    return delivery_id


# ──────────────────────────────────────────────────────────────────────
# Reminders
# ──────────────────────────────────────────────────────────────────────

async def create_reminder(
    account_id: str,
    contact_id: str,
    data: ReminderCreate,
    now: Optional[datetime] = None,
) -> Reminder:
    now = now or utcnow()
    if await store.get_contact(account_id, contact_id) is None:
        raise NotFound(f"contact {contact_id} not found")
    first = next_occurrence(data.rule, data.time_of_day, data.timezone, now, days=data.days, at=data.at)
    if first is None:
        raise RecurrenceConfigError("one-off reminder time is already in the past")
    reminder = await store.insert_reminder(
        account_id,
        contact_id,
        title=data.title,
        rule=data.rule,
        days=list(data.days),
        at=data.at,
        time_of_day=data.time_of_day,
        timezone=data.timezone,
        response_requirement=data.response_requirement,
        response_window_minutes=data.response_window_minutes or settings.RESPONSE_WINDOW_MINUTES,
        next_due=first,
        now=now,
    )
    _LOGGER.info("created reminder %s, first due %s", reminder.id, first.isoformat())
    return reminder


def prepare_reminder_update(current: Reminder, values: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Validate a reminder edit and work out the ``next_due`` it implies.

    Pausing keeps ``next_due`` and the counters untouched; resuming (or
    editing the schedule of an active reminder) recomputes it from *now*.
    """
    values = dict(values)
    status = values.get("status", current.status)
    if current.status == "archived" and status == "active":
        raise InvalidTransition("archived reminders cannot be resumed")

    merged = {field: values.get(field, getattr(current, field)) for field in SCHEDULE_FIELDS}
    if SCHEDULE_FIELDS & values.keys():
        validate_rule(merged["rule"], merged["timezone"], days=merged["days"] or (), at=merged["at"])

    if status == "active" and (current.status != "active" or SCHEDULE_FIELDS & values.keys()):
        nxt = next_occurrence(
            merged["rule"],
            merged["time_of_day"],
            merged["timezone"],
            now,
            days=merged["days"] or (),
            at=merged["at"],
        )
        if nxt is None:
            raise RecurrenceConfigError("schedule has no future occurrence")
        values["next_due"] = nxt
    return values


async def update_reminder_status(
    account_id: str,
    reminder_id: str,
    status: str,
    now: Optional[datetime] = None,
) -> Reminder:
    now = now or utcnow()
    current = await store.get_reminder(account_id, reminder_id)
    if current is None:
        raise NotFound(f"reminder {reminder_id} not found")
    values = prepare_reminder_update(current, {"status": status}, now)
    _, reminder = await store.update_fields(
        "reminder", account_id, reminder_id, values, expected_version=None, now=now
    )
    _LOGGER.info("reminder %s -> %s", reminder_id, status)
    return reminder


# ──────────────────────────────────────────────────────────────────────
# Cascades & retention
# ──────────────────────────────────────────────────────────────────────

async def _drain(entity: str, account_id: str, contact_id: Optional[str]) -> int:
    batch = settings.DELETE_BATCH_SIZE
    total = 0
    while True:
        n = await store.delete_batch(entity, account_id, contact_id, batch)
        total += n
        if n < batch:
            return total


async def delete_contact(account_id: str, contact_id: str) -> Dict[str, int]:
    """Remove a contact and everything under it. Idempotent."""
    counts: Counter = Counter()
    for entity in CONTACT_CASCADE:
        counts[entity] += await _drain(entity, account_id, contact_id)
    _LOGGER.info("deleted contact %s/%s: %s", account_id, contact_id, dict(counts))
    return dict(counts)


async def delete_account(account_id: str) -> Dict[str, int]:
    """Remove an account's whole hierarchy, contact by contact. Idempotent."""
    counts: Counter = Counter()
    for contact_id in await store.list_contact_ids(account_id):
        counts.update(await delete_contact(account_id, contact_id))
    # Rows not tied to any contact (or whose contact is already gone).
    for entity in CONTACT_CASCADE:
        counts[entity] += await _drain(entity, account_id, None)
    if await store.delete_account_row(account_id):
        counts["account"] += 1
    _LOGGER.info("deleted account %s: %s", account_id, dict(counts))
    return dict(counts)


async def purge_old_feed_events(now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.FEED_RETENTION_DAYS)
    total = 0
    while True:
        n = await store.purge_feed_events_before(cutoff, settings.DELETE_BATCH_SIZE)
        total += n
        if n < settings.DELETE_BATCH_SIZE:
            break
    if total:
        _LOGGER.info("purged %d feed events older than %s", total, cutoff.isoformat())
    return total


async def purge_old_changes(now: Optional[datetime] = None) -> int:
    """Trim the change log to its retention window. Tombstones of deleted
    hierarchies go with it, once clients have had the window to see them."""
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.CHANGE_LOG_RETENTION_DAYS)
    total = 0
    while True:
        n = await store.purge_change_log_before(cutoff, settings.DELETE_BATCH_SIZE)
        total += n
        if n < settings.DELETE_BATCH_SIZE:
            break
    if total:
        _LOGGER.info("trimmed %d change-log rows older than %s", total, cutoff.isoformat())
    return total
