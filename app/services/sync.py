"""Real-time fan-out of store changes to connected clients.

A single ``ChangeFeed`` tails the change log after a low watermark and hands
each decoded change to every ``ClientSession`` of the account it belongs
to. Sessions own a bounded queue; a session that cannot keep up is
told to resync and gets a fresh snapshot instead of an ever-growing backlog.

The watermark only moves over contiguous ``seq`` values. A hole (a
transaction that took its sequence number but has not committed yet) is held
back for a short grace period before being skipped.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import ValidationError
from typing_extensions import assert_never

from app.services.lifecycle import InvalidTransition, prepare_reminder_update
from app.services.recurrence import RecurrenceConfigError
from app.types.sync_contract import (
    ChangeMessage,
    ClientMutation,
    ContactChange,
    ContactPatch,
    FeedEventChange,
    MutationResult,
    ReminderChange,
    ReminderPatch,
    ResponseChange,
    ResyncMessage,
    RECORD_ADAPTERS,
    decode_change,
    snapshot_message,
)
from config import settings
from db import store
from db.db import utcnow

_LOGGER = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any]], Awaitable[None]]

_SNAPSHOT = object()
_RESYNC = object()
_CLOSE = object()

PATCH_MODELS = {"contact": ContactPatch, "reminder": ReminderPatch}
NULLABLE_FIELDS = frozenset({"at"})


# ──────────────────────────────────────────────────────────────────────
# 1. Sessions
# ──────────────────────────────────────────────────────────────────────

class ClientSession:
    """One connected client: a bounded outbound queue plus a writer loop."""

    def __init__(self, account_id: str, send: Sender, maxsize: Optional[int] = None):
        self.id = str(uuid.uuid4())
        self.account_id = account_id
        self._send = send
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.SYNC_SESSION_BUFFER)
        # Highest seq handed to this session, and highest seq covered by the
        # last snapshot it received.
        self.cursor = 0
        self.floor = 0
        self.sent_feed_ids: Set[str] = set()
        self.feed: Optional["ChangeFeed"] = None
        self.overflows = 0

    # queue side (called with the feed lock held) ------------------------
    def _put(self, item) -> None:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            self.overflows += 1
            _LOGGER.warning("session %s fell behind; forcing resync", self.id)
            while not self.queue.empty():
                self.queue.get_nowait()
            self.queue.put_nowait(_RESYNC)

    def offer(self, change) -> None:
        if change.seq <= self.cursor:
            return
        self.cursor = change.seq
        self._put(change)

    def push(self, message: Dict[str, Any]) -> None:
        self._put(message)

    def request_snapshot(self) -> None:
        self._put(_SNAPSHOT)

    def close(self) -> None:
        try:
            self.queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            while not self.queue.empty():
                self.queue.get_nowait()
            self.queue.put_nowait(_CLOSE)

    # writer side -------------------------------------------------------
    async def _emit(self, message: Dict[str, Any]) -> None:
        await asyncio.wait_for(self._send(message), timeout=settings.SYNC_SEND_TIMEOUT_SECONDS)

    async def send_snapshot(self) -> None:
        head = self.feed.watermark if self.feed is not None else None
        snap = snapshot_message(await store.snapshot(self.account_id, head=head))
        self.floor = snap.head
        self.sent_feed_ids.update(event.id for event in snap.feed_events)
        await self._emit(snap.model_dump(mode="json"))

    async def _emit_change(self, change) -> None:
        if change.seq <= self.floor:
            return
        if isinstance(change, FeedEventChange) and change.op == "upsert":
            if change.entity_id in self.sent_feed_ids:
                return
            self.sent_feed_ids.add(change.entity_id)
        _LOGGER.debug("session %s <- %s", self.id, describe(change))
        await self._emit(ChangeMessage(change=change).model_dump(mode="json"))

    async def run(self) -> None:
        """Drain the queue to the client until closed.

        Raises ``asyncio.TimeoutError`` if the client stops reading.
        """
        while True:
            item = await self.queue.get()
            if item is _CLOSE:
                return
            if item is _SNAPSHOT:
                await self.send_snapshot()
            elif item is _RESYNC:
                await self._emit(ResyncMessage(reason="overflow").model_dump(mode="json"))
                await self.send_snapshot()
            elif isinstance(item, dict):
                await self._emit(item)
            else:
                await self._emit_change(item)


# ──────────────────────────────────────────────────────────────────────
# 2. Change-log tail
# ──────────────────────────────────────────────────────────────────────

class ChangeFeed:
    """Tails the global change log and routes each row to its account's
    sessions.

    ``seq`` is shared by every account, so contiguity (and the gap grace) is
    judged on the global sequence; rows for accounts nobody is watching just
    move the watermark.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.sessions: Dict[str, Dict[str, ClientSession]] = {}
        self.watermark = 0
        self.lock = asyncio.Lock()
        self._clock = clock
        self._gap_started: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self, poll: bool = True) -> None:
        self.watermark = await store.head_seq()
        if poll:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:  # noqa: BLE001
                _LOGGER.exception("change feed poll failed")
            await asyncio.sleep(settings.SYNC_POLL_INTERVAL_SECONDS)

    async def poll_once(self) -> int:
        """Fan out committed changes past the watermark; returns how many
        reached at least one session."""
        async with self.lock:
            rows = await store.fetch_changes(None, self.watermark, settings.SYNC_FETCH_LIMIT)
            delivered = 0
            for row in rows:
                if row["seq"] > self.watermark + 1:
                    if self._gap_started is None:
                        self._gap_started = self._clock()
                    if self._clock() - self._gap_started < settings.SYNC_GAP_GRACE_SECONDS:
                        break
                    _LOGGER.warning(
                        "change log gap %d..%d never filled; skipping",
                        self.watermark + 1, row["seq"] - 1,
                    )
                self._gap_started = None
                self.watermark = row["seq"]
                sessions = self.sessions.get(row["account_id"])
                if not sessions:
                    continue
                change = decode_change(row)
                if change is None:
                    continue
                for session in list(sessions.values()):
                    session.offer(change)
                delivered += 1
            return delivered

    async def attach(self, session: ClientSession, since: Optional[int]) -> None:
        """Register a session, replaying its account's changes after *since*
        (or queueing a snapshot when there is no usable cursor)."""
        async with self.lock:
            session.feed = self
            if since is not None and since < self.watermark:
                oldest = await store.oldest_seq()
                if oldest is None or since < oldest - 1:
                    _LOGGER.info("session %s resumed from trimmed seq %s; sending snapshot", session.id, since)
                    since = None
            if since is None or since > self.watermark:
                if since is not None:
                    _LOGGER.info("session %s resumed from unknown seq %s; sending snapshot", session.id, since)
                session.cursor = self.watermark
                session.request_snapshot()
            else:
                session.cursor = since
                session.floor = since
                while session.cursor < self.watermark:
                    rows = await store.fetch_changes(session.account_id, session.cursor, settings.SYNC_FETCH_LIMIT)
                    rows = [r for r in rows if r["seq"] <= self.watermark]
                    if not rows:
                        break
                    for row in rows:
                        change = decode_change(row)
                        if change is not None:
                            session.offer(change)
                    session.cursor = max(session.cursor, rows[-1]["seq"])
                session.cursor = self.watermark
            self.sessions.setdefault(session.account_id, {})[session.id] = session

    def detach(self, session: ClientSession) -> None:
        sessions = self.sessions.get(session.account_id, {})
        sessions.pop(session.id, None)
        if not sessions:
            self.sessions.pop(session.account_id, None)

    @property
    def session_count(self) -> int:
        return sum(len(s) for s in self.sessions.values())


# ──────────────────────────────────────────────────────────────────────
# 3. Coordinator
# ──────────────────────────────────────────────────────────────────────

class SyncCoordinator:
    def __init__(self, poll: bool = True):
        self.feed: Optional[ChangeFeed] = None
        self._poll = poll
        self._lock = asyncio.Lock()

    async def subscribe(self, account_id: str, send: Sender, since: Optional[int] = None) -> ClientSession:
        async with self._lock:
            if self.feed is None:
                self.feed = ChangeFeed()
                await self.feed.start(poll=self._poll)
            feed = self.feed
        session = ClientSession(account_id, send)
        await feed.attach(session, since)
        _LOGGER.info("session %s subscribed to %s (since=%s)", session.id, account_id, since)
        return session

    async def unsubscribe(self, session: ClientSession) -> None:
        async with self._lock:
            if self.feed is None:
                return
            self.feed.detach(session)
            if not self.feed.session_count:
                await self.feed.stop()
                self.feed = None
        _LOGGER.info("session %s unsubscribed", session.id)

    async def close(self) -> None:
        async with self._lock:
            if self.feed is None:
                return
            for sessions in self.feed.sessions.values():
                for session in list(sessions.values()):
                    session.close()
            await self.feed.stop()
            self.feed = None


coordinator = SyncCoordinator()


# ──────────────────────────────────────────────────────────────────────
# 4. Client writes
# ──────────────────────────────────────────────────────────────────────

def wire_record(entity_type: str, row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = RECORD_ADAPTERS[entity_type].validate_python(store.row_dict(row))
    return RECORD_ADAPTERS[entity_type].dump_python(record, mode="json")


def _rolled_back(mutation: ClientMutation, reason: str, row=None) -> MutationResult:
    _LOGGER.info("mutation %s rolled back: %s", mutation.mutation_id, reason)
    return MutationResult(
        mutation_id=mutation.mutation_id,
        entity_type=mutation.entity_type,
        entity_id=mutation.entity_id,
        status="rolled_back",
        record=wire_record(mutation.entity_type, row),
        reason=reason,
    )


async def _current(mutation: ClientMutation, account_id: str):
    if mutation.entity_type == "contact":
        return await store.get_contact(account_id, mutation.entity_id)
    if mutation.entity_type == "reminder":
        return await store.get_reminder(account_id, mutation.entity_id)
    assert_never(mutation.entity_type)


async def apply_client_mutation(
    account_id: str,
    mutation: ClientMutation,
    now: Optional[datetime] = None,
) -> MutationResult:
    """Apply a client's optimistic edit if its version is still current.

    Only presentation-owned fields are writable; scheduling state belongs to
    the dispatcher.
    """
    now = now or utcnow()
    current = await _current(mutation, account_id)
    if current is None:
        return _rolled_back(mutation, "not found")

    try:
        patch = PATCH_MODELS[mutation.entity_type].model_validate(mutation.changes)
    except ValidationError as exc:
        return _rolled_back(mutation, f"invalid changes: {exc.errors()[0]['loc']}", current)
    values = patch.model_dump(exclude_unset=True)
    nulls = [k for k, v in values.items() if v is None and k not in NULLABLE_FIELDS]
    if nulls:
        return _rolled_back(mutation, f"fields cannot be null: {', '.join(sorted(nulls))}", current)
    if not values:
        return _rolled_back(mutation, "no changes", current)

    if mutation.entity_type == "reminder":
        try:
            values = prepare_reminder_update(current, values, now)
        except (RecurrenceConfigError, InvalidTransition) as exc:
            return _rolled_back(mutation, str(exc), current)

    applied, row = await store.update_fields(
        mutation.entity_type,
        account_id,
        mutation.entity_id,
        values,
        expected_version=mutation.expected_version,
        now=now,
    )
    if row is None:
        return _rolled_back(mutation, "not found")
    if not applied:
        return _rolled_back(mutation, "version conflict", row)
    return MutationResult(
        mutation_id=mutation.mutation_id,
        entity_type=mutation.entity_type,
        entity_id=mutation.entity_id,
        status="applied",
        record=wire_record(mutation.entity_type, row),
    )


def describe(change) -> str:
    """Short human-readable label for a change (logs, debugging)."""
    if isinstance(change, ContactChange):
        return f"contact {change.entity_id} {change.op}"
    if isinstance(change, ReminderChange):
        return f"reminder {change.entity_id} {change.op}"
    if isinstance(change, ResponseChange):
        return f"response {change.entity_id} {change.op}"
    if isinstance(change, FeedEventChange):
        return f"feed_event {change.entity_id} {change.op}"
    assert_never(change)
