from datetime import time, timedelta

import pytest
from sqlalchemy import func, select

import db
from app.services import correlator, dispatcher, lifecycle
from app.services.recurrence import RecurrenceConfigError
from app.types.reminder_contract import AccountUpsert, ContactCreate, InboundMessage, ReminderCreate
from app.utils import sms
from app.utils.sms import GatewayError
from config import settings
from db import store
from db.db import session_scope
from db.models import Contact, FeedEvent, Occurrence, Reminder, ReminderResponse, SmsLog
from tests.conftest import ACCOUNT, PHONE, T0, FakeGateway
from tests.test_dispatcher import TICK


async def _count(model, **where):
    async with session_scope() as s:
        stmt = select(func.count()).select_from(model)
        for key, value in where.items():
            stmt = stmt.where(getattr(model, key) == value)
        return await s.scalar(stmt)


async def _with_history(seed):
    """Contact with one dispatched and answered reminder."""
    contact, reminder = await seed()
    await dispatcher.run_once(TICK, gateway=FakeGateway())
    await correlator.handle_inbound(
        InboundMessage(gateway_message_id="m1", from_number=PHONE, body="done",
                       received_at=TICK + timedelta(minutes=2)),
        now=TICK + timedelta(minutes=2),
    )
    return contact, reminder


@pytest.mark.asyncio
async def test_enroll_queues_confirmation_once_per_identity(store_db, queued_confirmations):
    await lifecycle.upsert_account(ACCOUNT, AccountUpsert(display_name="Mia"))

    first = await lifecycle.enroll_contact(ACCOUNT, ContactCreate(phone_number="555-555-0100", display_name="Joe"), now=T0)
    again = await lifecycle.enroll_contact(ACCOUNT, ContactCreate(phone_number=PHONE, display_name="Grandpa"), now=T0)

    assert first.id == again.id == db.contact_id_for(ACCOUNT, PHONE)
    assert again.display_name == "Grandpa"
    assert first.status == "pending"
    assert queued_confirmations == [(ACCOUNT, first.id), (ACCOUNT, first.id)]
    assert await _count(FeedEvent, kind="contact_enrolled") == 1
    assert await _count(Contact) == 1


@pytest.mark.asyncio
async def test_enroll_requires_account(store_db):
    with pytest.raises(lifecycle.NotFound):
        await lifecycle.enroll_contact("ghost", ContactCreate(phone_number=PHONE, display_name="Joe"))


@pytest.mark.asyncio
async def test_reenrolling_declined_contact_resets_to_pending(seed, queued_confirmations):
    contact, _ = await seed(contact_status="inactive")
    queued_confirmations.clear()

    again = await lifecycle.enroll_contact(ACCOUNT, ContactCreate(phone_number=PHONE, display_name="Joe"), now=T0)

    assert again.status == "pending"
    assert queued_confirmations == [(ACCOUNT, contact.id)]


@pytest.mark.asyncio
async def test_confirmed_contact_is_not_asked_again(seed, queued_confirmations):
    await seed()
    queued_confirmations.clear()
    await lifecycle.enroll_contact(ACCOUNT, ContactCreate(phone_number=PHONE, display_name="Joe"), now=T0)
    assert queued_confirmations == []


@pytest.mark.asyncio
async def test_one_time_in_the_past_rejected(seed):
    contact, _ = await seed()
    data = ReminderCreate(title="Call", rule="one_time", time_of_day=time(7, 0), timezone="UTC",
                          at=T0 - timedelta(hours=1))
    with pytest.raises(RecurrenceConfigError):
        await lifecycle.create_reminder(ACCOUNT, contact.id, data, now=T0)


@pytest.mark.asyncio
async def test_reminder_for_unknown_contact(store_db):
    data = ReminderCreate(title="Walk", time_of_day=time(9, 0), timezone="UTC")
    with pytest.raises(lifecycle.NotFound):
        await lifecycle.create_reminder(ACCOUNT, "nobody", data, now=T0)


@pytest.mark.asyncio
async def test_archived_reminder_cannot_resume(seed):
    _, reminder = await seed()
    await lifecycle.update_reminder_status(ACCOUNT, reminder.id, "archived", now=T0)
    with pytest.raises(lifecycle.InvalidTransition):
        await lifecycle.update_reminder_status(ACCOUNT, reminder.id, "active", now=T0)


@pytest.mark.asyncio
async def test_delete_contact_cascades_in_batches(seed, monkeypatch):
    monkeypatch.setattr(settings, "DELETE_BATCH_SIZE", 1)
    contact, reminder = await _with_history(seed)

    counts = await lifecycle.delete_contact(ACCOUNT, contact.id)

    assert counts == {
        "response": 1,
        "occurrence": 1,
        "reminder": 1,
        "feed_event": 2,
        "sms_log": 1,
        "contact": 1,
    }
    for model in (Contact, Reminder, Occurrence, ReminderResponse, FeedEvent, SmsLog):
        assert await _count(model) == 0

    tombstones = {(r["entity_type"], r["entity_id"]) for r in await db.fetch_changes(ACCOUNT, 0) if r["op"] == "delete"}
    assert ("contact", contact.id) in tombstones
    assert ("reminder", reminder.id) in tombstones

    again = await lifecycle.delete_contact(ACCOUNT, contact.id)
    assert set(again.values()) == {0}


@pytest.mark.asyncio
async def test_interrupted_delete_can_be_rerun(seed, monkeypatch):
    contact, _ = await _with_history(seed)
    real = store.delete_batch

    async def flaky(entity, *args):
        if entity == "reminder":
            raise ConnectionError("db went away")
        return await real(entity, *args)

    monkeypatch.setattr(store, "delete_batch", flaky)
    with pytest.raises(ConnectionError):
        await lifecycle.delete_contact(ACCOUNT, contact.id)
    assert await _count(ReminderResponse) == 0
    assert await _count(Contact) == 1

    monkeypatch.setattr(store, "delete_batch", real)
    counts = await lifecycle.delete_contact(ACCOUNT, contact.id)
    assert counts["response"] == 0
    assert counts["reminder"] == 1
    assert await _count(Contact) == 0


@pytest.mark.asyncio
async def test_delete_account_removes_everything(seed):
    await _with_history(seed)
    await seed(phone="+15555550111")
    await seed(account_id="acct-2", phone="+15555550122")

    counts = await lifecycle.delete_account(ACCOUNT)

    assert counts["account"] == 1
    assert counts["contact"] == 2
    assert await db.get_account(ACCOUNT) is None
    assert await _count(Contact, account_id=ACCOUNT) == 0
    assert await _count(Reminder, account_id=ACCOUNT) == 0
    # Tombstones stay in the change log for connected clients.
    tail = await db.fetch_changes(ACCOUNT, 0, limit=10_000)
    assert {r["entity_type"] for r in tail if r["op"] == "delete"} >= {"contact", "reminder", "feed_event"}
    # Other tenants are untouched.
    assert await _count(Contact, account_id="acct-2") == 1

    assert (await lifecycle.delete_account(ACCOUNT)).get("account", 0) == 0


@pytest.mark.asyncio
async def test_purge_old_feed_events(seed):
    await seed()

    assert await lifecycle.purge_old_feed_events(now=T0 + timedelta(days=10)) == 0
    assert await lifecycle.purge_old_feed_events(now=T0 + timedelta(days=settings.FEED_RETENTION_DAYS + 1)) == 1
    assert await _count(FeedEvent) == 0


@pytest.mark.asyncio
async def test_purge_old_changes_trims_change_log(seed):
    await seed()
    await lifecycle.delete_account(ACCOUNT)
    assert await db.head_seq(ACCOUNT) > 0

    assert await lifecycle.purge_old_changes() == 0
    later = db.utcnow() + timedelta(days=settings.CHANGE_LOG_RETENTION_DAYS + 1)
    assert await lifecycle.purge_old_changes(now=later) > 0
    assert await db.head_seq(ACCOUNT) == 0
    assert await db.oldest_seq() is None


@pytest.mark.asyncio
async def test_send_confirmation(seed, monkeypatch):
    contact, _ = await seed(contact_status="pending")
    gw = FakeGateway()
    monkeypatch.setattr(sms, "get_gateway", lambda: gw)

    delivery_id = await lifecycle.send_confirmation(ACCOUNT, contact.id, now=T0)

    assert delivery_id == "msg-1"
    to, body = gw.sent[0]
    assert to == PHONE
    assert body.startswith("Hi Grandpa Joe! Mia would like")
    assert await _count(SmsLog, message_type="confirmation", status="sent") == 1
    assert (await db.get_account(ACCOUNT)).sms_quota_used == 1
    assert (await db.get_contact(ACCOUNT, contact.id)).last_outbound_at == T0


@pytest.mark.asyncio
async def test_send_confirmation_respects_quota(seed, monkeypatch):
    contact, _ = await seed(contact_status="pending", quota=0)
    gw = FakeGateway()
    monkeypatch.setattr(sms, "get_gateway", lambda: gw)

    assert await lifecycle.send_confirmation(ACCOUNT, contact.id) is None
    assert gw.calls == 0


@pytest.mark.asyncio
async def test_send_confirmation_skips_confirmed_contact(seed, monkeypatch):
    contact, _ = await seed()
    gw = FakeGateway()
    monkeypatch.setattr(sms, "get_gateway", lambda: gw)

    assert await lifecycle.send_confirmation(ACCOUNT, contact.id) is None
    assert gw.calls == 0


@pytest.mark.asyncio
async def test_send_confirmation_failure_is_logged_and_raised(seed, monkeypatch):
    contact, _ = await seed(contact_status="pending")
    monkeypatch.setattr(sms, "get_gateway", lambda: FakeGateway(fail_times=99))

    with pytest.raises(GatewayError):
        await lifecycle.send_confirmation(ACCOUNT, contact.id, now=T0)
    assert await _count(SmsLog, message_type="confirmation", status="failed") == 1
    assert (await db.get_account(ACCOUNT)).sms_quota_used == 0
