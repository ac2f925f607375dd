"""
Hierarchical reminder store.

    account → contacts → {reminders, occurrences, responses}
    account → feed_events

Every helper owns its transaction. Mutations that clients can observe append
a row to ``change_log`` inside the same transaction; the sync layer tails that
log, so a committed write and its notification can never diverge.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timedelta
from typing import Any, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.db import session_scope
from db.models import (
    Account, ChangeLog, Contact, FeedEvent, Occurrence, Reminder, ReminderResponse, SmsLog
)

_LOGGER = logging.getLogger(__name__)

# Namespace for deterministic contact ids (account id + E.164 number).
CONTACT_NAMESPACE = uuid.UUID("6f1d8a4e-2b9c-4c1e-9a57-0d3b5e8f7a21")

SYNCED_MODELS = {
    "contact": Contact,
    "reminder": Reminder,
    "response": ReminderResponse,
    "feed_event": FeedEvent,
}

CASCADE_MODELS = {
    **SYNCED_MODELS,
    "occurrence": Occurrence,
    "sms_log": SmsLog,
}

_NO_SYNC = {"synchronize_session": False}


# ──────────────────────────────────────────────────────────────────────
# 1. Helpers
# ──────────────────────────────────────────────────────────────────────

def contact_id_for(account_id: str, phone_number: str) -> str:
    """Contact identity is derived from the canonical phone number."""
    return str(uuid.uuid5(CONTACT_NAMESPACE, f"{account_id}|{phone_number}"))


def _new_id() -> str:
    return str(uuid.uuid4())


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, time)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def row_dict(obj) -> dict[str, Any]:
    """JSON-safe snapshot of an ORM row."""
    return {attr.key: _jsonable(getattr(obj, attr.key)) for attr in obj.__mapper__.column_attrs}


def _record(s: AsyncSession, account_id: str, entity_type: str, obj) -> None:
    s.add(
        ChangeLog(
            account_id=account_id,
            entity_type=entity_type,
            entity_id=obj.id,
            op="upsert",
            payload=row_dict(obj),
        )
    )


def _tombstone(s: AsyncSession, account_id: str, entity_type: str, entity_id: str) -> None:
    s.add(
        ChangeLog(
            account_id=account_id,
            entity_type=entity_type,
            entity_id=entity_id,
            op="delete",
            payload={"id": entity_id},
        )
    )


async def _reload(s: AsyncSession, model, entity_id: str):
    stmt = select(model).where(model.id == entity_id).execution_options(populate_existing=True)
    return (await s.execute(stmt)).scalar_one_or_none()


async def _emit_feed_event(
    s: AsyncSession,
    *,
    account_id: str,
    kind: str,
    source_id: str,
    contact_id: Optional[str],
    data: dict[str, Any],
    now: datetime,
) -> Optional[FeedEvent]:
    """Insert a feed event unless one already exists for (kind, source_id)."""
    existing = await s.scalar(
        select(FeedEvent.id).where(
            FeedEvent.account_id == account_id,
            FeedEvent.kind == kind,
            FeedEvent.source_id == source_id,
        )
    )
    if existing:
        return None
    event = FeedEvent(
        id=_new_id(),
        account_id=account_id,
        kind=kind,
        source_id=source_id,
        contact_id=contact_id,
        data=_jsonable(data),
        created_at=now,
    )
    s.add(event)
    await s.flush()
    _record(s, account_id, "feed_event", event)
    return event


# ──────────────────────────────────────────────────────────────────────
# 2. Accounts & contacts
# ──────────────────────────────────────────────────────────────────────

async def upsert_account(
    account_id: str,
    display_name: str = "",
    sms_quota_limit: Optional[int] = None,
    *,
    default_quota: int = 500,
    quota_period_end: Optional[datetime] = None,
) -> Account:
    async with session_scope() as s:
        acct = await s.get(Account, account_id)
        if acct is None:
            acct = Account(
                id=account_id,
                display_name=display_name,
                sms_quota_used=0,
                sms_quota_limit=default_quota if sms_quota_limit is None else sms_quota_limit,
                sms_quota_period_end=quota_period_end,
            )
            s.add(acct)
        else:
            if display_name:
                acct.display_name = display_name
            if sms_quota_limit is not None:
                acct.sms_quota_limit = sms_quota_limit
        await s.commit()
        return acct


async def get_account(account_id: str) -> Optional[Account]:
    async with session_scope() as s:
        return await s.get(Account, account_id)


async def roll_quota_period(account_id: str, now: datetime, period_days: int) -> Optional[Account]:
    """Start a fresh SMS quota period once the current one has ended.

    The reset is conditional on the stored period end, so concurrent callers
    reset at most once per period. Returns the current account row.
    """
    async with session_scope() as s:
        await s.execute(
            update(Account)
            .where(
                Account.id == account_id,
                or_(Account.sms_quota_period_end.is_(None), Account.sms_quota_period_end <= now),
            )
            .values(sms_quota_used=0, sms_quota_period_end=now + timedelta(days=period_days))
            .execution_options(**_NO_SYNC)
        )
        account = await _reload(s, Account, account_id)
        await s.commit()
        return account


async def upsert_contact(
    account_id: str,
    phone_number: str,
    display_name: str,
    now: datetime,
) -> tuple[Contact, bool]:
    """Create or refresh a contact. Returns ``(contact, created)``.

    Re-enrolling an inactive number puts it back into ``pending`` so it has to
    confirm again.
    """
    cid = contact_id_for(account_id, phone_number)
    for attempt in range(2):
        async with session_scope() as s:
            contact = await s.get(Contact, cid)
            created = contact is None
            if created:
                contact = Contact(
                    id=cid,
                    account_id=account_id,
                    phone_number=phone_number,
                    display_name=display_name,
                    status="pending",
                    sms_opted_out=False,
                    created_at=now,
                    version=1,
                )
                s.add(contact)
            else:
                contact.display_name = display_name
                if contact.status == "inactive":
                    contact.status = "pending"
                    contact.sms_opted_out = False
                    contact.confirmed_at = None
                contact.version += 1
            try:
                await s.flush()
            except IntegrityError:
                # Concurrent enrollment of the same number; retry as an update.
                await s.rollback()
                if attempt:
                    raise
                continue
            _record(s, account_id, "contact", contact)
            if created:
                await _emit_feed_event(
                    s,
                    account_id=account_id,
                    kind="contact_enrolled",
                    source_id=cid,
                    contact_id=cid,
                    data={"contact_id": cid, "display_name": display_name, "phone_number": phone_number},
                    now=now,
                )
            await s.commit()
            return contact, created
    raise RuntimeError("unreachable")  # pragma: no cover


async def get_contact(account_id: str, contact_id: str) -> Optional[Contact]:
    async with session_scope() as s:
        return await s.scalar(
            select(Contact).where(Contact.account_id == account_id, Contact.id == contact_id)
        )


async def find_contacts_by_phone(phone_number: str) -> list[Contact]:
    """All contacts enrolled with this number, most recently messaged first."""
    async with session_scope() as s:
        stmt = (
            select(Contact)
            .where(Contact.phone_number == phone_number)
            .order_by(Contact.last_outbound_at.desc().nulls_last(), Contact.created_at.desc())
        )
        return list((await s.scalars(stmt)).all())


async def list_contact_ids(account_id: str) -> list[str]:
    async with session_scope() as s:
        return list((await s.scalars(select(Contact.id).where(Contact.account_id == account_id))).all())


# ──────────────────────────────────────────────────────────────────────
# 3. Reminders
# ──────────────────────────────────────────────────────────────────────

async def insert_reminder(
    account_id: str,
    contact_id: str,
    *,
    title: str,
    rule: str,
    days: list[str],
    at: Optional[datetime],
    time_of_day: time,
    timezone: str,
    response_requirement: str,
    response_window_minutes: int,
    next_due: datetime,
    now: datetime,
) -> Reminder:
    async with session_scope() as s:
        reminder = Reminder(
            id=_new_id(),
            account_id=account_id,
            contact_id=contact_id,
            title=title,
            rule=rule,
            days=list(days),
            at=at,
            time_of_day=time_of_day,
            timezone=timezone,
            response_requirement=response_requirement,
            response_window_minutes=response_window_minutes,
            status="active",
            next_due=next_due,
            send_count=0,
            completion_count=0,
            delivery_status="ok",
            version=1,
            created_at=now,
            updated_at=now,
        )
        s.add(reminder)
        await s.flush()
        _record(s, account_id, "reminder", reminder)
        await s.commit()
        return reminder


async def get_reminder(account_id: str, reminder_id: str) -> Optional[Reminder]:
    async with session_scope() as s:
        return await s.scalar(
            select(Reminder).where(Reminder.account_id == account_id, Reminder.id == reminder_id)
        )


async def update_fields(
    entity_type: str,
    account_id: str,
    entity_id: str,
    values: dict[str, Any],
    *,
    expected_version: Optional[int],
    now: datetime,
) -> tuple[bool, Any]:
    """Optimistic update of a contact/reminder. Returns ``(applied, current_row)``.

    ``expected_version=None`` skips the version check (server-side writes).
    """
    model = SYNCED_MODELS[entity_type]
    vals = dict(values)
    vals["version"] = model.version + 1
    if model is Reminder:
        vals["updated_at"] = now
    async with session_scope() as s:
        stmt = update(model).where(model.id == entity_id, model.account_id == account_id)
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)
        res = await s.execute(stmt.values(**vals).execution_options(**_NO_SYNC))
        current = await _reload(s, model, entity_id)
        applied = res.rowcount == 1
        if applied:
            _record(s, account_id, entity_type, current)
        await s.commit()
        return applied, current


# ──────────────────────────────────────────────────────────────────────
# 4. Dispatcher primitives (claim / complete / fail / advance)
# ──────────────────────────────────────────────────────────────────────

async def fetch_due_reminders(
    window_start: datetime,
    now: datetime,
    limit: int = 100,
) -> list[tuple[Reminder, Contact, Account]]:
    async with session_scope() as s:
        stmt = (
            select(Reminder, Contact, Account)
            .join(Contact, Contact.id == Reminder.contact_id)
            .join(Account, Account.id == Reminder.account_id)
            .where(
                Reminder.status == "active",
                Reminder.next_due >= window_start,
                Reminder.next_due <= now,
            )
            .order_by(Reminder.next_due)
            .limit(limit)
        )
        return [tuple(row) for row in (await s.execute(stmt)).all()]


async def fetch_stale_reminders(
    before: datetime,
    now: datetime,
    lease_seconds: int,
    limit: int = 100,
) -> list[Reminder]:
    """Active reminders whose slot fell out of the dispatch window unsent.

    Includes reminders still held by an expired claim (a worker died between
    claim and completion).
    """
    stale_before = now - timedelta(seconds=lease_seconds)
    async with session_scope() as s:
        stmt = (
            select(Reminder)
            .where(
                Reminder.status == "active",
                or_(Reminder.claim_token.is_(None), Reminder.claimed_at < stale_before),
                or_(Reminder.next_due < before, Reminder.next_due.is_(None)),
            )
            .order_by(Reminder.next_due)
            .limit(limit)
        )
        return list((await s.scalars(stmt)).all())


async def claim_reminder(
    reminder_id: str,
    observed_next_due: datetime,
    now: datetime,
    lease_seconds: int,
) -> Optional[tuple[str, str]]:
    """Compare-and-swap claim on ``next_due``.

    Succeeds only if the reminder is still active, still due at the observed
    instant and not held by a live claim. Returns ``(claim_token,
    occurrence_id)`` or ``None`` when another invocation got there first.
    """
    token = _new_id()
    stale_before = now - timedelta(seconds=lease_seconds)
    async with session_scope() as s:
        res = await s.execute(
            update(Reminder)
            .where(
                Reminder.id == reminder_id,
                Reminder.status == "active",
                Reminder.next_due == observed_next_due,
                or_(Reminder.claim_token.is_(None), Reminder.claimed_at < stale_before),
            )
            .values(claim_token=token, claimed_at=now)
            .execution_options(**_NO_SYNC)
        )
        if res.rowcount != 1:
            await s.commit()
            return None

        reminder = await _reload(s, Reminder, reminder_id)
        occurrence = await s.scalar(
            select(Occurrence).where(
                Occurrence.reminder_id == reminder_id,
                Occurrence.scheduled_for == observed_next_due,
            )
        )
        if occurrence is None:
            occurrence = Occurrence(
                id=_new_id(),
                account_id=reminder.account_id,
                contact_id=reminder.contact_id,
                reminder_id=reminder_id,
                scheduled_for=observed_next_due,
                status="sending",
                attempts=1,
            )
            s.add(occurrence)
        else:
            occurrence.status = "sending"
            occurrence.attempts += 1
        await s.commit()
        return token, occurrence.id


async def complete_dispatch(
    *,
    reminder_id: str,
    token: str,
    occurrence_id: str,
    next_due: Optional[datetime],
    delivery_id: Optional[str],
    to_number: str,
    body: str,
    now: datetime,
    claimed_version: Optional[int] = None,
) -> tuple[Optional[Reminder], bool]:
    """Record a successful send and release the claim.

    Returns ``(reminder, rescheduled)``. ``rescheduled`` is False when the
    reminder was paused/archived mid-flight, or edited since *claimed_version*
    was read: the send is still recorded but ``next_due`` is left alone, since
    *next_due* was computed from the stale row. An edited reminder stays
    claimed; finish it with ``advance_schedule(..., token=token)``.
    """
    async with session_scope() as s:
        claimed = update(Reminder).where(Reminder.id == reminder_id, Reminder.claim_token == token)
        common = dict(
            send_count=Reminder.send_count + 1,
            last_sent_at=now,
            delivery_status="ok",
            last_error=None,
            claim_token=None,
            claimed_at=None,
            version=Reminder.version + 1,
            updated_at=now,
        )
        if next_due is None:
            reschedule = dict(common, status="completed", next_due=None)
        else:
            reschedule = dict(common, next_due=next_due)

        current = claimed.where(Reminder.status == "active")
        if claimed_version is not None:
            current = current.where(Reminder.version == claimed_version)
        res = await s.execute(
            current.values(**reschedule).execution_options(**_NO_SYNC)
        )
        rescheduled = res.rowcount == 1
        if not rescheduled:
            res = await s.execute(
                claimed.where(Reminder.status != "active").values(**common).execution_options(**_NO_SYNC)
            )
        if not rescheduled and res.rowcount != 1:
            # Edited while claimed: the claim stays held until the caller
            # moves the slot with the edited rule.
            held = {k: v for k, v in common.items() if k not in ("claim_token", "claimed_at")}
            res = await s.execute(claimed.values(**held).execution_options(**_NO_SYNC))
            if res.rowcount != 1:
                _LOGGER.warning("claim on reminder %s lost before completion", reminder_id)

        await s.execute(
            update(Occurrence)
            .where(Occurrence.id == occurrence_id)
            .values(status="sent", delivery_id=delivery_id, dispatched_at=now, last_error=None)
            .execution_options(**_NO_SYNC)
        )

        reminder = await _reload(s, Reminder, reminder_id)
        if reminder is not None:
            s.add(
                SmsLog(
                    id=_new_id(),
                    account_id=reminder.account_id,
                    contact_id=reminder.contact_id,
                    reminder_id=reminder_id,
                    to_number=to_number,
                    body=body,
                    message_type="reminder",
                    delivery_id=delivery_id,
                    status="sent",
                    created_at=now,
                )
            )
            await s.execute(
                update(Account)
                .where(Account.id == reminder.account_id)
                .values(sms_quota_used=Account.sms_quota_used + 1)
                .execution_options(**_NO_SYNC)
            )
            await s.execute(
                update(Contact)
                .where(Contact.id == reminder.contact_id)
                .values(last_outbound_at=now)
                .execution_options(**_NO_SYNC)
            )
            _record(s, reminder.account_id, "reminder", reminder)
        await s.commit()
        return reminder, rescheduled


async def fail_dispatch(
    *,
    reminder_id: str,
    token: str,
    occurrence_id: str,
    error: str,
    to_number: str,
    body: str,
    now: datetime,
) -> Optional[Reminder]:
    """Surface an exhausted send without consuming the schedule slot."""
    error = error[:1000]
    async with session_scope() as s:
        await s.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.claim_token == token)
            .values(
                delivery_status="failed_send",
                last_error=error,
                claim_token=None,
                claimed_at=None,
                version=Reminder.version + 1,
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )
        await s.execute(
            update(Occurrence)
            .where(Occurrence.id == occurrence_id)
            .values(status="failed_send", last_error=error)
            .execution_options(**_NO_SYNC)
        )
        reminder = await _reload(s, Reminder, reminder_id)
        if reminder is not None:
            s.add(
                SmsLog(
                    id=_new_id(),
                    account_id=reminder.account_id,
                    contact_id=reminder.contact_id,
                    reminder_id=reminder_id,
                    to_number=to_number,
                    body=body,
                    message_type="reminder",
                    status="failed",
                    error=error,
                    created_at=now,
                )
            )
            _record(s, reminder.account_id, "reminder", reminder)
        await s.commit()
        return reminder


async def advance_schedule(
    reminder_id: str,
    observed_next_due: Optional[datetime],
    next_due: Optional[datetime],
    now: datetime,
    lease_seconds: int,
    token: Optional[str] = None,
) -> bool:
    """Move ``next_due`` forward without sending (skips and stale repair).

    Guarded by the same compare-and-swap as a claim; *token* lets the
    holder of a live claim move its own slot.
    """
    stale_before = now - timedelta(seconds=lease_seconds)
    if observed_next_due is None:
        slot = Reminder.next_due.is_(None)
    else:
        slot = Reminder.next_due == observed_next_due
    vals: dict[str, Any] = {
        "version": Reminder.version + 1,
        "updated_at": now,
        "next_due": next_due,
        "claim_token": None,
        "claimed_at": None,
    }
    if next_due is None:
        vals["status"] = "completed"
    free = or_(Reminder.claim_token.is_(None), Reminder.claimed_at < stale_before)
    if token is not None:
        free = or_(free, Reminder.claim_token == token)
    async with session_scope() as s:
        res = await s.execute(
            update(Reminder)
            .where(
                Reminder.id == reminder_id,
                Reminder.status == "active",
                slot,
                free,
            )
            .values(**vals)
            .execution_options(**_NO_SYNC)
        )
        if res.rowcount != 1:
            await s.commit()
            return False
        reminder = await _reload(s, Reminder, reminder_id)
        if observed_next_due is not None:
            # An expired claim may have left its occurrence mid-send.
            await s.execute(
                update(Occurrence)
                .where(
                    Occurrence.reminder_id == reminder_id,
                    Occurrence.scheduled_for == observed_next_due,
                    Occurrence.status == "sending",
                )
                .values(status="failed_send", last_error="claim expired before completion")
                .execution_options(**_NO_SYNC)
            )
        _record(s, reminder.account_id, "reminder", reminder)
        await s.commit()
        return True


async def log_sms(
    *,
    account_id: str,
    contact_id: Optional[str],
    to_number: str,
    body: str,
    message_type: str,
    delivery_id: Optional[str],
    status: str,
    error: Optional[str] = None,
    now: datetime,
) -> None:
    async with session_scope() as s:
        s.add(
            SmsLog(
                id=_new_id(),
                account_id=account_id,
                contact_id=contact_id,
                to_number=to_number,
                body=body,
                message_type=message_type,
                delivery_id=delivery_id,
                status=status,
                error=error,
                created_at=now,
            )
        )
        if status == "sent":
            await s.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(sms_quota_used=Account.sms_quota_used + 1)
                .execution_options(**_NO_SYNC)
            )
            if contact_id:
                await s.execute(
                    update(Contact)
                    .where(Contact.id == contact_id)
                    .values(last_outbound_at=now)
                    .execution_options(**_NO_SYNC)
                )
        await s.commit()


# ──────────────────────────────────────────────────────────────────────
# 5. Correlator primitives
# ──────────────────────────────────────────────────────────────────────

async def get_response_by_message_id(gateway_message_id: str) -> Optional[ReminderResponse]:
    async with session_scope() as s:
        return await s.scalar(
            select(ReminderResponse).where(ReminderResponse.gateway_message_id == gateway_message_id)
        )


async def find_open_occurrence(
    account_id: str,
    contact_id: str,
    received_at: datetime,
    now: datetime,
    scan_limit: int = 20,
) -> Optional[tuple[Occurrence, Reminder]]:
    """Most recently dispatched, not-yet-completed occurrence still inside
    its reminder's response window, measured back from *received_at*.

    Only occurrences sent before the reply arrived qualify.
    """
    async with session_scope() as s:
        stmt = (
            select(Occurrence, Reminder)
            .join(Reminder, Reminder.id == Occurrence.reminder_id)
            .where(
                Occurrence.account_id == account_id,
                Occurrence.contact_id == contact_id,
                Occurrence.status == "sent",
                Occurrence.dispatched_at <= now,
                Occurrence.dispatched_at <= received_at,
            )
            .order_by(Occurrence.dispatched_at.desc())
            .limit(scan_limit)
        )
        for occurrence, reminder in (await s.execute(stmt)).all():
            window = timedelta(minutes=reminder.response_window_minutes)
            if occurrence.dispatched_at >= received_at - window:
                return occurrence, reminder
        return None


def _new_response(**fields) -> ReminderResponse:
    return ReminderResponse(id=_new_id(), **fields)


async def _insert_response(s: AsyncSession, resp: ReminderResponse) -> Optional[ReminderResponse]:
    """Flush a new response; on a duplicate gateway id return the stored one."""
    s.add(resp)
    try:
        await s.flush()
    except IntegrityError:
        await s.rollback()
        return await s.scalar(
            select(ReminderResponse).where(
                ReminderResponse.gateway_message_id == resp.gateway_message_id
            )
        )
    return None


async def record_response(**fields) -> tuple[ReminderResponse, bool]:
    """Store a response that mutates nothing else. Returns ``(row, inserted)``."""
    async with session_scope() as s:
        resp = _new_response(**fields)
        existing = await _insert_response(s, resp)
        if existing is not None:
            return existing, False
        if resp.account_id:
            _record(s, resp.account_id, "response", resp)
        await s.commit()
        return resp, True


async def record_contact_reply(
    *,
    expected_status: str,
    new_status: str,
    opted_out: Optional[bool],
    feed_kind: Optional[str],
    now: datetime,
    **fields,
) -> tuple[ReminderResponse, bool, bool]:
    """Store a confirmation / opt-out reply and move the contact's status.

    Returns ``(row, inserted, contact_changed)``. If the contact already left
    ``expected_status`` the reply is stored as a non-mutating duplicate.
    """
    async with session_scope() as s:
        resp = _new_response(**fields)
        existing = await _insert_response(s, resp)
        if existing is not None:
            return existing, False, False

        vals: dict[str, Any] = {"status": new_status, "version": Contact.version + 1}
        if new_status == "confirmed":
            vals["confirmed_at"] = now
        if opted_out is not None:
            vals["sms_opted_out"] = opted_out
        res = await s.execute(
            update(Contact)
            .where(Contact.id == resp.contact_id, Contact.status == expected_status)
            .values(**vals)
            .execution_options(**_NO_SYNC)
        )
        changed = res.rowcount == 1
        if changed:
            contact = await _reload(s, Contact, resp.contact_id)
            _record(s, resp.account_id, "contact", contact)
            if feed_kind:
                await _emit_feed_event(
                    s,
                    account_id=resp.account_id,
                    kind=feed_kind,
                    source_id=resp.id,
                    contact_id=contact.id,
                    data={
                        "contact_id": contact.id,
                        "display_name": contact.display_name,
                        "reply": resp.body,
                    },
                    now=now,
                )
        else:
            resp.outcome = "duplicate"
            resp.notes = f"contact no longer {expected_status}"
            await s.flush()
        _record(s, resp.account_id, "response", resp)
        await s.commit()
        return resp, True, changed


async def record_completion(*, now: datetime, **fields) -> tuple[ReminderResponse, bool, bool]:
    """Store a reply that completes an occurrence (first writer wins).

    Returns ``(row, inserted, completed)``; a loser is kept as ``duplicate``.
    """
    async with session_scope() as s:
        resp = _new_response(outcome="completion", **fields)
        existing = await _insert_response(s, resp)
        if existing is not None:
            return existing, False, False

        res = await s.execute(
            update(Occurrence)
            .where(Occurrence.id == resp.occurrence_id, Occurrence.status == "sent")
            .values(status="completed", completed_at=resp.received_at, response_id=resp.id)
            .execution_options(**_NO_SYNC)
        )
        completed = res.rowcount == 1
        if completed:
            await s.execute(
                update(Reminder)
                .where(Reminder.id == resp.reminder_id)
                .values(
                    completion_count=Reminder.completion_count + 1,
                    last_completed_at=resp.received_at,
                    version=Reminder.version + 1,
                    updated_at=now,
                )
                .execution_options(**_NO_SYNC)
            )
            reminder = await _reload(s, Reminder, resp.reminder_id)
            _record(s, resp.account_id, "reminder", reminder)
            if resp.body and resp.media_urls:
                response_type = "both"
            elif resp.media_urls:
                response_type = "photo"
            else:
                response_type = "text"
            await _emit_feed_event(
                s,
                account_id=resp.account_id,
                kind="reminder_completed",
                source_id=resp.occurrence_id,
                contact_id=resp.contact_id,
                data={
                    "reminder_id": resp.reminder_id,
                    "reminder_title": reminder.title,
                    "response_id": resp.id,
                    "text": resp.body,
                    "media_urls": list(resp.media_urls or []),
                    "response_type": response_type,
                },
                now=now,
            )
        else:
            resp.outcome = "duplicate"
            resp.notes = "occurrence already completed"
            await s.flush()
        _record(s, resp.account_id, "response", resp)
        await s.commit()
        return resp, True, completed


# ──────────────────────────────────────────────────────────────────────
# 6. Change feed primitives
# ──────────────────────────────────────────────────────────────────────

async def head_seq(account_id: Optional[str] = None) -> int:
    """Highest change-log seq, for one account or (``None``) globally."""
    async with session_scope() as s:
        stmt = select(func.max(ChangeLog.seq))
        if account_id is not None:
            stmt = stmt.where(ChangeLog.account_id == account_id)
        value = await s.scalar(stmt)
        return int(value or 0)


async def oldest_seq() -> Optional[int]:
    """Lowest change-log seq still retained, or ``None`` for an empty log."""
    async with session_scope() as s:
        value = await s.scalar(select(func.min(ChangeLog.seq)))
        return None if value is None else int(value)


async def fetch_changes(account_id: Optional[str], after_seq: int, limit: int = 500) -> list[dict[str, Any]]:
    """Change-log rows after *after_seq* in seq order; ``account_id=None``
    reads every account (the global tail)."""
    async with session_scope() as s:
        stmt = select(ChangeLog).where(ChangeLog.seq > after_seq)
        if account_id is not None:
            stmt = stmt.where(ChangeLog.account_id == account_id)
        stmt = stmt.order_by(ChangeLog.seq).limit(limit)
        return [
            {
                "seq": row.seq,
                "account_id": row.account_id,
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "op": row.op,
                "payload": row.payload,
            }
            for row in (await s.scalars(stmt)).all()
        ]


async def snapshot(
    account_id: str,
    head: Optional[int] = None,
    response_limit: int = 200,
) -> dict[str, Any]:
    """Current state of an account's hierarchy plus the change-log head it
    is consistent with.

    Rows are read after the head is fixed, so they may be newer than the head
    but never older. Pass *head* to pin it to a feed's delivered watermark.
    """
    if head is None:
        head = await head_seq(account_id)
    async with session_scope() as s:
        contacts = (await s.scalars(select(Contact).where(Contact.account_id == account_id))).all()
        reminders = (await s.scalars(select(Reminder).where(Reminder.account_id == account_id))).all()
        responses = (
            await s.scalars(
                select(ReminderResponse)
                .where(ReminderResponse.account_id == account_id)
                .order_by(ReminderResponse.received_at.desc())
                .limit(response_limit)
            )
        ).all()
        feed = (
            await s.scalars(
                select(FeedEvent)
                .where(FeedEvent.account_id == account_id)
                .order_by(FeedEvent.created_at)
            )
        ).all()
    return {
        "head": head,
        "contact": [row_dict(r) for r in contacts],
        "reminder": [row_dict(r) for r in reminders],
        "response": [row_dict(r) for r in responses],
        "feed_event": [row_dict(r) for r in feed],
    }


# ──────────────────────────────────────────────────────────────────────
# 7. Cascade / retention primitives
# ──────────────────────────────────────────────────────────────────────

async def delete_batch(
    entity: str,
    account_id: str,
    contact_id: Optional[str],
    limit: int,
) -> int:
    """Delete up to *limit* rows of one entity type; returns how many went.

    Zero means the level is empty, which makes repeated calls safe.
    """
    model = CASCADE_MODELS[entity]
    async with session_scope() as s:
        stmt = select(model.id).where(model.account_id == account_id)
        if contact_id is not None:
            owner = model.id if model is Contact else model.contact_id
            stmt = stmt.where(owner == contact_id)
        ids = list((await s.scalars(stmt.limit(limit))).all())
        if not ids:
            return 0
        await s.execute(delete(model).where(model.id.in_(ids)).execution_options(**_NO_SYNC))
        if entity in SYNCED_MODELS:
            for entity_id in ids:
                _tombstone(s, account_id, entity, entity_id)
        await s.commit()
        return len(ids)


async def delete_account_row(account_id: str) -> bool:
    async with session_scope() as s:
        res = await s.execute(
            delete(Account).where(Account.id == account_id).execution_options(**_NO_SYNC)
        )
        await s.commit()
        return res.rowcount == 1


async def purge_change_log_before(cutoff: datetime, limit: int) -> int:
    """Trim change-log rows older than *cutoff*, oldest first.

    Only the old end of the log is removed, so the live tail never sees a
    hole; cursors that pointed into the trimmed range resync from a snapshot.
    """
    async with session_scope() as s:
        seqs = list(
            (
                await s.scalars(
                    select(ChangeLog.seq).where(ChangeLog.created_at < cutoff).order_by(ChangeLog.seq).limit(limit)
                )
            ).all()
        )
        if not seqs:
            return 0
        await s.execute(delete(ChangeLog).where(ChangeLog.seq.in_(seqs)).execution_options(**_NO_SYNC))
        await s.commit()
        return len(seqs)


async def purge_feed_events_before(cutoff: datetime, limit: int) -> int:
    async with session_scope() as s:
        rows = (
            await s.execute(
                select(FeedEvent.id, FeedEvent.account_id).where(FeedEvent.created_at < cutoff).limit(limit)
            )
        ).all()
        if not rows:
            return 0
        await s.execute(
            delete(FeedEvent).where(FeedEvent.id.in_([r.id for r in rows])).execution_options(**_NO_SYNC)
        )
        for row in rows:
            _tombstone(s, row.account_id, "feed_event", row.id)
        await s.commit()
        return len(rows)
