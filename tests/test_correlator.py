import asyncio
from datetime import time, timedelta

import pytest
from sqlalchemy import select

import db
from app.services import correlator, dispatcher
from app.types.reminder_contract import InboundMessage
from config import settings
from db.db import session_scope
from db.models import FeedEvent, Occurrence
from tests.conftest import ACCOUNT, T0, FakeGateway
from tests.test_dispatcher import TICK


def _msg(mid, body="", received_at=TICK + timedelta(minutes=5), media=(), phone="(555) 555-0100"):
    return InboundMessage(
        gateway_message_id=mid,
        from_number=phone,
        body=body,
        media_urls=list(media),
        received_at=received_at,
    )


async def _feed(kind):
    async with session_scope() as s:
        return list((await s.scalars(select(FeedEvent).where(FeedEvent.kind == kind))).all())


@pytest.fixture
def dispatched(seed):
    """A confirmed contact whose daily reminder went out at TICK."""

    async def _dispatched(**kwargs):
        contact, reminder = await seed(**kwargs)
        await dispatcher.run_once(TICK, gateway=FakeGateway())
        return contact, reminder

    return _dispatched


@pytest.mark.asyncio
async def test_reply_completes_open_occurrence(dispatched):
    contact, reminder = await dispatched()
    now = TICK + timedelta(minutes=5)

    result = await correlator.handle_inbound(_msg("m1", "Done!"), now=now)

    assert result.outcome == "completion"
    assert not result.already_processed
    assert result.contact_id == contact.id
    assert result.reminder_id == reminder.id
    after = await db.get_reminder(ACCOUNT, reminder.id)
    assert after.completion_count == 1
    assert after.last_completed_at == now

    events = await _feed("reminder_completed")
    assert len(events) == 1
    assert events[0].source_id == result.occurrence_id
    assert events[0].data["reminder_title"] == "Take vitamins"
    assert events[0].data["response_type"] == "text"
    async with session_scope() as s:
        occ = await s.get(Occurrence, result.occurrence_id)
    assert occ.status == "completed" and occ.response_id == result.response_id


@pytest.mark.asyncio
async def test_redelivered_message_is_not_reprocessed(dispatched):
    _, reminder = await dispatched()
    first = await correlator.handle_inbound(_msg("m1", "done"))
    again = await correlator.handle_inbound(_msg("m1", "done"))

    assert again.already_processed
    assert again.response_id == first.response_id
    assert again.outcome == "completion"
    assert (await db.get_reminder(ACCOUNT, reminder.id)).completion_count == 1
    assert len(await _feed("reminder_completed")) == 1


@pytest.mark.asyncio
async def test_two_rapid_replies_complete_once(dispatched):
    _, reminder = await dispatched()

    results = await asyncio.gather(
        correlator.handle_inbound(_msg("m1", "done")),
        correlator.handle_inbound(_msg("m2", "", media=["https://cdn.example/p.jpg"])),
    )

    outcomes = sorted(r.outcome for r in results)
    assert outcomes.count("completion") == 1
    assert set(outcomes) - {"completion"} <= {"duplicate", "unmatched"}
    assert (await db.get_reminder(ACCOUNT, reminder.id)).completion_count == 1
    assert len(await _feed("reminder_completed")) == 1


@pytest.mark.asyncio
async def test_photo_requirement_mismatch_still_completes(dispatched):
    await dispatched(requirement="photo")
    result = await correlator.handle_inbound(_msg("m1", "did it"))

    assert result.outcome == "completion"
    row = await db.get_response_by_message_id("m1")
    assert row.notes == "photo requested, text received"


@pytest.mark.asyncio
async def test_unknown_number_is_retained_unmatched(store_db):
    result = await correlator.handle_inbound(_msg("m1", "hello", phone="+15555550199"))

    assert result.outcome == "unmatched"
    assert result.account_id is None
    row = await db.get_response_by_message_id("m1")
    assert row.from_number == "+15555550199"


@pytest.mark.asyncio
async def test_reply_after_window_is_unmatched(dispatched):
    _, reminder = await dispatched()
    late = TICK + timedelta(minutes=settings.RESPONSE_WINDOW_MINUTES + 1)

    result = await correlator.handle_inbound(_msg("m1", "done", received_at=late), now=late)

    assert result.outcome == "unmatched"
    assert (await db.get_reminder(ACCOUNT, reminder.id)).completion_count == 0


@pytest.mark.asyncio
async def test_reply_without_any_dispatch_is_unmatched(seed):
    await seed()
    result = await correlator.handle_inbound(_msg("m1", "done"))
    assert result.outcome == "unmatched"


@pytest.mark.asyncio
async def test_yes_confirms_pending_contact(seed):
    contact, _ = await seed(contact_status="pending")

    result = await correlator.handle_inbound(_msg("m1", "Yes please!"))

    assert result.outcome == "confirmation_accept"
    refreshed = await db.get_contact(ACCOUNT, contact.id)
    assert refreshed.status == "confirmed"
    assert refreshed.confirmed_at is not None
    assert len(await _feed("contact_confirmed")) == 1


@pytest.mark.asyncio
async def test_ambiguous_reply_declines_by_default(seed):
    contact, _ = await seed(contact_status="pending")

    result = await correlator.handle_inbound(_msg("m1", "maybe later"))

    assert result.outcome == "confirmation_reject"
    assert (await db.get_contact(ACCOUNT, contact.id)).status == "inactive"
    assert len(await _feed("contact_declined")) == 1


@pytest.mark.asyncio
async def test_lenient_confirmation_accepts_ambiguous_reply(seed, monkeypatch):
    monkeypatch.setattr(settings, "CONFIRMATION_DEFAULT", "accept")
    contact, _ = await seed(contact_status="pending")

    result = await correlator.handle_inbound(_msg("m1", "maybe later"))

    assert result.outcome == "confirmation_accept"
    assert (await db.get_contact(ACCOUNT, contact.id)).status == "confirmed"


@pytest.mark.asyncio
async def test_stop_while_pending_opts_out(seed):
    contact, _ = await seed(contact_status="pending")

    result = await correlator.handle_inbound(_msg("m1", "STOP"))

    assert result.outcome == "confirmation_reject"
    refreshed = await db.get_contact(ACCOUNT, contact.id)
    assert refreshed.status == "inactive"
    assert refreshed.sms_opted_out


@pytest.mark.asyncio
async def test_stop_from_confirmed_contact_halts_dispatch(seed):
    contact, reminder = await seed()

    result = await correlator.handle_inbound(_msg("m1", "stop", received_at=TICK - timedelta(minutes=10)))
    assert result.outcome == "opt_out"
    refreshed = await db.get_contact(ACCOUNT, contact.id)
    assert refreshed.sms_opted_out and refreshed.status == "inactive"

    gw = FakeGateway()
    assert await dispatcher.run_once(TICK, gateway=gw) == {"skipped": 1}
    assert gw.sent == []


@pytest.mark.asyncio
async def test_most_recently_messaged_account_wins(seed):
    await seed(account_id="acct-2", time_of_day=time(8, 30))
    _, reminder = await seed()
    await dispatcher.run_once(T0 + timedelta(minutes=30, seconds=30), gateway=FakeGateway())
    await dispatcher.run_once(TICK, gateway=FakeGateway())

    result = await correlator.handle_inbound(_msg("m1", "done"))

    assert result.account_id == ACCOUNT
    assert result.reminder_id == reminder.id
    assert result.outcome == "completion"


def test_sanitize_degrades_malformed_input(monkeypatch):
    monkeypatch.setattr(settings, "MAX_INBOUND_BODY_CHARS", 5)
    monkeypatch.setattr(settings, "MAX_INBOUND_MEDIA", 1)
    msg = _msg(
        "m1",
        "do\x00ne and more",
        media=["ftp://bad", "https://a.example/1.jpg", "https://a.example/2.jpg"],
    )

    clean = correlator.sanitize(msg)

    assert clean.body == "done "
    assert clean.media_urls == ["https://a.example/1.jpg"]


@pytest.mark.parametrize(
    "body,default,expected",
    [
        ("YES", "reject", True),
        ("ok thanks", "reject", True),
        ("who is this?", "reject", False),
        ("who is this?", "accept", True),
        ("No thanks", "accept", False),
        ("STOP", "accept", False),
        ("", "reject", False),
    ],
)
def test_classify_confirmation(body, default, expected):
    assert correlator.classify_confirmation(body, default) is expected


def test_stop_detection_is_whole_message():
    assert correlator.is_stop_request(" stop. ")
    assert not correlator.is_stop_request("don't stop")


@pytest.mark.asyncio
async def test_reply_received_before_dispatch_is_unmatched(dispatched):
    _, reminder = await dispatched()
    early = TICK - timedelta(minutes=5)

    result = await correlator.handle_inbound(
        _msg("m1", "done", received_at=early), now=TICK + timedelta(minutes=1)
    )

    assert result.outcome == "unmatched"
    assert (await db.get_reminder(ACCOUNT, reminder.id)).completion_count == 0
