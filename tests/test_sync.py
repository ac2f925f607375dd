import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

import db
from app.services import lifecycle
from app.services.sync import ChangeFeed, SyncCoordinator, apply_client_mutation
from app.types.sync_contract import ClientMutation, decode_change
from config import settings
from db.db import session_scope
from db.models import ChangeLog
from tests.conftest import ACCOUNT, T0


class Sink:
    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    @property
    def types(self):
        return [m["type"] for m in self.messages]


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


async def _rename(contact, name):
    return await db.update_fields(
        "contact", ACCOUNT, contact.id, {"display_name": name}, expected_version=None, now=T0
    )


async def _insert_change(**fields):
    async with session_scope() as s:
        s.add(ChangeLog(**fields))
        await s.commit()


@pytest_asyncio.fixture
async def stream(seed):
    """Seeded account, a non-polling coordinator and a helper that attaches
    a session with a running writer."""
    contact, reminder = await seed()
    coord = SyncCoordinator(poll=False)
    writers = []

    async def _connect(since=None, start=True):
        sink = Sink()
        session = await coord.subscribe(ACCOUNT, sink, since=since)
        if start:
            writers.append(asyncio.create_task(session.run()))
        return session, sink

    yield coord, contact, reminder, _connect

    await coord.close()
    await asyncio.gather(*writers, return_exceptions=True)


@pytest.mark.asyncio
async def test_subscribe_gets_snapshot_then_live_changes(stream):
    coord, contact, reminder, connect = stream
    _, sink = await connect()

    await _until(lambda: sink.types == ["snapshot"])
    snap = sink.messages[0]
    assert snap["head"] == await db.head_seq()
    assert [c["id"] for c in snap["contacts"]] == [contact.id]
    assert [r["id"] for r in snap["reminders"]] == [reminder.id]
    assert "claim_token" not in snap["reminders"][0]
    assert [e["kind"] for e in snap["feed_events"]] == ["contact_enrolled"]

    await lifecycle.update_reminder_status(ACCOUNT, reminder.id, "paused", now=T0)
    assert await coord.feed.poll_once() == 1

    await _until(lambda: len(sink.messages) == 2)
    change = sink.messages[1]["change"]
    assert change["entity_type"] == "reminder"
    assert change["record"]["status"] == "paused"
    assert change["record"]["version"] == reminder.version + 1


@pytest.mark.asyncio
async def test_changes_only_reach_their_account(stream, seed):
    coord, _, _, connect = stream
    _, sink = await connect()
    await _until(lambda: sink.types == ["snapshot"])

    other, _ = await seed(account_id="acct-2", phone="+15555550111")
    await _rename(other, "Nana")
    await coord.feed.poll_once()
    await asyncio.sleep(0.05)

    assert sink.types == ["snapshot"]
    assert coord.feed.watermark == await db.head_seq()


@pytest.mark.asyncio
async def test_malformed_change_is_skipped(stream):
    coord, contact, _, connect = stream
    _, sink = await connect()
    await _until(lambda: sink.types == ["snapshot"])

    await _insert_change(account_id=ACCOUNT, entity_type="reminder", entity_id="bad", op="upsert", payload={"id": "bad"})
    await _insert_change(account_id=ACCOUNT, entity_type="gizmo", entity_id="g1", op="upsert", payload={})
    await _rename(contact, "Grandpa")

    assert await coord.feed.poll_once() == 1
    await _until(lambda: len(sink.messages) == 2)
    assert sink.messages[1]["change"]["record"]["display_name"] == "Grandpa"
    assert coord.feed.watermark == await db.head_seq()


@pytest.mark.asyncio
async def test_slow_session_is_resynced(stream, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_SESSION_BUFFER", 2)
    coord, contact, _, connect = stream
    session, sink = await connect(start=False)

    for name in ("A", "B", "C"):
        await _rename(contact, name)
    await coord.feed.poll_once()
    assert session.overflows == 1

    writer = asyncio.create_task(session.run())
    await _until(lambda: sink.types == ["resync", "snapshot"])
    assert sink.messages[1]["contacts"][0]["display_name"] == "C"

    await _rename(contact, "D")
    await coord.feed.poll_once()
    await _until(lambda: len(sink.messages) == 3)
    assert sink.types == ["resync", "snapshot", "change"]
    assert sink.messages[2]["change"]["record"]["display_name"] == "D"

    session.close()
    await writer


@pytest.mark.asyncio
async def test_feed_event_not_repeated_after_snapshot(stream):
    coord, _, _, connect = stream
    session, sink = await connect()
    await _until(lambda: sink.types == ["snapshot"])
    enrolled = sink.messages[0]["feed_events"][0]

    # Replaying the enrollment upsert (e.g. after a resume) must not duplicate it.
    rows = await db.fetch_changes(ACCOUNT, 0)
    row = next(r for r in rows if r["entity_type"] == "feed_event")
    session.floor = 0
    session.offer(decode_change(dict(row, seq=10_000)))
    await asyncio.sleep(0.05)

    assert enrolled["id"] in session.sent_feed_ids
    assert sink.types == ["snapshot"]


@pytest.mark.asyncio
async def test_resume_from_cursor_replays_without_snapshot(stream):
    coord, contact, _, connect = stream
    head = await db.head_seq()
    await _rename(contact, "Pop")

    _, sink = await connect(since=head)

    await _until(lambda: len(sink.messages) == 1)
    assert sink.types == ["change"]
    assert sink.messages[0]["change"]["record"]["display_name"] == "Pop"


@pytest.mark.asyncio
async def test_unknown_cursor_falls_back_to_snapshot(stream):
    _, _, _, connect = stream
    _, sink = await connect(since=10_000)
    await _until(lambda: sink.types == ["snapshot"])


@pytest.mark.asyncio
async def test_unsubscribe_stops_feed(stream):
    coord, _, _, connect = stream
    session, _ = await connect()
    assert coord.feed.session_count == 1

    session.close()
    await coord.unsubscribe(session)
    assert coord.feed is None


@pytest.mark.asyncio
async def test_successive_updates_arrive_in_write_order(stream):
    coord, contact, _, connect = stream
    head = await db.head_seq()
    _, live = await connect()
    await _until(lambda: live.types == ["snapshot"])

    for name in ("A", "B", "C"):
        await _rename(contact, name)
    await coord.feed.poll_once()
    await _until(lambda: len(live.messages) == 4)

    changes = [m["change"] for m in live.messages[1:]]
    assert [c["record"]["display_name"] for c in changes] == ["A", "B", "C"]
    assert [c["seq"] for c in changes] == sorted(c["seq"] for c in changes)
    assert [c["record"]["version"] for c in changes] == sorted(c["record"]["version"] for c in changes)

    _, resumed = await connect(since=head)
    await _until(lambda: len(resumed.messages) == 3)
    assert resumed.types == ["change"] * 3
    assert [m["change"] for m in resumed.messages] == changes


@pytest.mark.asyncio
async def test_account_delete_reaches_live_session(stream):
    coord, contact, reminder, connect = stream
    _, sink = await connect()
    await _until(lambda: sink.types == ["snapshot"])

    await lifecycle.delete_account(ACCOUNT)
    await coord.feed.poll_once()

    def deleted():
        return {
            (m["change"]["entity_type"], m["change"]["entity_id"])
            for m in sink.messages
            if m["type"] == "change" and m["change"]["op"] == "delete"
        }

    await _until(lambda: {("contact", contact.id), ("reminder", reminder.id)} <= deleted())
    assert coord.feed.watermark == await db.head_seq()


@pytest.mark.asyncio
async def test_cursor_into_trimmed_log_gets_snapshot(stream):
    coord, contact, _, connect = stream
    await _rename(contact, "Pop")
    _, first = await connect()
    await _until(lambda: first.types == ["snapshot"])

    later = db.utcnow() + timedelta(days=settings.CHANGE_LOG_RETENTION_DAYS + 1)
    assert await lifecycle.purge_old_changes(now=later) > 0

    _, sink = await connect(since=1)
    await _until(lambda: sink.types == ["snapshot"])
    assert sink.messages[0]["contacts"][0]["display_name"] == "Pop"


@pytest.mark.asyncio
async def test_gap_is_held_then_skipped(store_db):
    clock = [100.0]
    feed = ChangeFeed(clock=lambda: clock[0])
    await feed.start(poll=False)
    base = feed.watermark

    def tombstone(seq):
        return dict(seq=seq, account_id=ACCOUNT, entity_type="contact", entity_id=f"c{seq}", op="delete", payload={})

    await _insert_change(**tombstone(base + 2))
    await feed.poll_once()
    assert feed.watermark == base

    clock[0] += settings.SYNC_GAP_GRACE_SECONDS / 2
    await feed.poll_once()
    assert feed.watermark == base

    # The late transaction commits inside the grace period.
    await _insert_change(**tombstone(base + 1))
    await feed.poll_once()
    assert feed.watermark == base + 2

    await _insert_change(**tombstone(base + 4))
    await feed.poll_once()
    assert feed.watermark == base + 2
    clock[0] += settings.SYNC_GAP_GRACE_SECONDS + 1
    await feed.poll_once()
    assert feed.watermark == base + 4


@pytest.mark.asyncio
async def test_mutation_applied_and_conflict_rolls_back(seed):
    _, reminder = await seed()

    first = await apply_client_mutation(
        ACCOUNT,
        ClientMutation(mutation_id="m1", entity_type="reminder", entity_id=reminder.id,
                       expected_version=reminder.version, changes={"title": "Vitamins + water"}),
        now=T0,
    )
    assert first.status == "applied"
    assert first.record["title"] == "Vitamins + water"
    assert first.record["version"] == reminder.version + 1

    stale = await apply_client_mutation(
        ACCOUNT,
        ClientMutation(mutation_id="m2", entity_type="reminder", entity_id=reminder.id,
                       expected_version=reminder.version, changes={"title": "Something else"}),
        now=T0,
    )
    assert stale.status == "rolled_back"
    assert stale.reason == "version conflict"
    assert stale.record["title"] == "Vitamins + water"


@pytest.mark.parametrize(
    "changes,reason",
    [
        ({"next_due": "2030-01-01T00:00:00Z"}, "invalid changes"),
        ({"send_count": 0}, "invalid changes"),
        ({"title": None}, "fields cannot be null: title"),
        ({}, "no changes"),
        ({"timezone": "Nowhere/Special"}, "Olson"),
    ],
)
@pytest.mark.asyncio
async def test_mutation_rejections(seed, changes, reason):
    _, reminder = await seed()
    result = await apply_client_mutation(
        ACCOUNT,
        ClientMutation(mutation_id="m1", entity_type="reminder", entity_id=reminder.id,
                       expected_version=reminder.version, changes=changes),
        now=T0,
    )
    assert result.status == "rolled_back"
    assert reason in result.reason
    assert (await db.get_reminder(ACCOUNT, reminder.id)).version == reminder.version


@pytest.mark.asyncio
async def test_mutation_resume_recomputes_next_due(seed):
    _, reminder = await seed()
    paused = await apply_client_mutation(
        ACCOUNT,
        ClientMutation(mutation_id="m1", entity_type="reminder", entity_id=reminder.id,
                       expected_version=1, changes={"status": "paused"}),
        now=T0,
    )
    later = T0 + timedelta(days=3)
    resumed = await apply_client_mutation(
        ACCOUNT,
        ClientMutation(mutation_id="m2", entity_type="reminder", entity_id=reminder.id,
                       expected_version=paused.record["version"], changes={"status": "active"}),
        now=later,
    )
    assert resumed.status == "applied"
    assert resumed.record["next_due"].startswith("2024-01-04T09:00:00")


@pytest.mark.asyncio
async def test_mutation_on_missing_entity(store_db):
    result = await apply_client_mutation(
        ACCOUNT,
        ClientMutation(mutation_id="m1", entity_type="contact", entity_id="nope",
                       expected_version=1, changes={"display_name": "X"}),
    )
    assert result.status == "rolled_back"
    assert result.reason == "not found"
    assert result.record is None
