"""Wire contract for the client stream.

Change-log rows are decoded into a tagged union keyed on ``entity_type`` (and
feed events additionally on ``kind``). Anything that fails validation is
rejected per record; callers skip it and keep going.

Record models ignore unknown keys, which is also how dispatcher-internal
columns such as the claim token are kept off the wire.
"""

from __future__ import annotations

import logging
from datetime import datetime, time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from typing_extensions import Annotated

from app.types.reminder_contract import (
    ContactStatus, ReminderStatus, ResponseOutcome, ResponseRequirement, Rule, Weekday
)

_LOGGER = logging.getLogger(__name__)


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ──────────────────────────────────────────────────────────────────────
# 1. Entity records
# ──────────────────────────────────────────────────────────────────────

class ContactRecord(_Record):
    id: str
    account_id: str
    phone_number: str
    display_name: str
    status: ContactStatus
    sms_opted_out: bool = False
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None
    version: int


class ReminderRecord(_Record):
    id: str
    account_id: str
    contact_id: str
    title: str
    rule: Rule
    days: List[Weekday] = Field(default_factory=list)
    at: Optional[datetime] = None
    time_of_day: time
    timezone: str
    response_requirement: ResponseRequirement
    response_window_minutes: int
    status: ReminderStatus
    next_due: Optional[datetime] = None
    send_count: int = 0
    completion_count: int = 0
    last_sent_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    delivery_status: Literal["ok", "failed_send"] = "ok"
    last_error: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime


class ResponseRecord(_Record):
    id: str
    account_id: Optional[str] = None
    contact_id: Optional[str] = None
    reminder_id: Optional[str] = None
    occurrence_id: Optional[str] = None
    body: str = ""
    media_urls: List[str] = Field(default_factory=list)
    received_at: datetime
    outcome: ResponseOutcome
    notes: Optional[str] = None


class CompletedData(_Record):
    reminder_id: str
    reminder_title: str
    response_id: str
    text: str = ""
    media_urls: List[str] = Field(default_factory=list)
    response_type: Literal["text", "photo", "both"]


class ContactEventData(_Record):
    contact_id: str
    display_name: str
    phone_number: Optional[str] = None
    reply: Optional[str] = None


class _FeedEvent(_Record):
    id: str
    account_id: str
    source_id: str
    contact_id: Optional[str] = None
    created_at: datetime


class ReminderCompletedEvent(_FeedEvent):
    kind: Literal["reminder_completed"]
    data: CompletedData


class ContactEnrolledEvent(_FeedEvent):
    kind: Literal["contact_enrolled"]
    data: ContactEventData


class ContactConfirmedEvent(_FeedEvent):
    kind: Literal["contact_confirmed"]
    data: ContactEventData


class ContactDeclinedEvent(_FeedEvent):
    kind: Literal["contact_declined"]
    data: ContactEventData


FeedEventRecord = Annotated[
    Union[ReminderCompletedEvent, ContactEnrolledEvent, ContactConfirmedEvent, ContactDeclinedEvent],
    Field(discriminator="kind"),
]


# ──────────────────────────────────────────────────────────────────────
# 2. Change records (tagged on entity_type)
# ──────────────────────────────────────────────────────────────────────

class _Change(BaseModel):
    seq: int
    entity_id: str
    op: Literal["upsert", "delete"]

    @model_validator(mode="after")
    def _record_for_upsert(self):  # noqa: N805
        if self.op == "upsert" and getattr(self, "record", None) is None:
            raise ValueError("upsert change without a record")
        return self


class ContactChange(_Change):
    entity_type: Literal["contact"]
    record: Optional[ContactRecord] = None


class ReminderChange(_Change):
    entity_type: Literal["reminder"]
    record: Optional[ReminderRecord] = None


class ResponseChange(_Change):
    entity_type: Literal["response"]
    record: Optional[ResponseRecord] = None


class FeedEventChange(_Change):
    entity_type: Literal["feed_event"]
    record: Optional[FeedEventRecord] = None


Change = Annotated[
    Union[ContactChange, ReminderChange, ResponseChange, FeedEventChange],
    Field(discriminator="entity_type"),
]

ChangeAdapter: TypeAdapter[Change] = TypeAdapter(Change)

RECORD_ADAPTERS: Dict[str, TypeAdapter] = {
    "contact": TypeAdapter(ContactRecord),
    "reminder": TypeAdapter(ReminderRecord),
    "response": TypeAdapter(ResponseRecord),
    "feed_event": TypeAdapter(FeedEventRecord),
}


def decode_change(row: Dict[str, Any]) -> Optional[Change]:
    """Decode one change-log row; ``None`` (with a warning) if malformed."""
    data = {
        "seq": row.get("seq"),
        "entity_type": row.get("entity_type"),
        "entity_id": row.get("entity_id"),
        "op": row.get("op"),
        "record": row.get("payload") if row.get("op") == "upsert" else None,
    }
    try:
        return ChangeAdapter.validate_python(data)
    except ValidationError as exc:
        _LOGGER.warning(
            "skipping malformed %s change seq=%s: %s",
            row.get("entity_type"), row.get("seq"), exc.errors()[:1],
        )
        return None


def decode_records(entity_type: str, rows: List[Dict[str, Any]]) -> List[Any]:
    adapter = RECORD_ADAPTERS[entity_type]
    records = []
    for row in rows:
        try:
            records.append(adapter.validate_python(row))
        except ValidationError as exc:
            _LOGGER.warning("skipping malformed %s record %s: %s", entity_type, row.get("id"), exc.errors()[:1])
    return records


# ──────────────────────────────────────────────────────────────────────
# 3. Stream messages
# ──────────────────────────────────────────────────────────────────────

class SnapshotMessage(BaseModel):
    type: Literal["snapshot"] = "snapshot"
    head: int
    contacts: List[ContactRecord] = Field(default_factory=list)
    reminders: List[ReminderRecord] = Field(default_factory=list)
    responses: List[ResponseRecord] = Field(default_factory=list)
    feed_events: List[FeedEventRecord] = Field(default_factory=list)


class ChangeMessage(BaseModel):
    type: Literal["change"] = "change"
    change: Change


class ResyncMessage(BaseModel):
    type: Literal["resync"] = "resync"
    reason: str


class MutationResult(BaseModel):
    type: Literal["mutation_result"] = "mutation_result"
    mutation_id: str
    entity_type: Literal["contact", "reminder"]
    entity_id: str
    status: Literal["applied", "rolled_back"]
    record: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None


ServerMessage = Annotated[
    Union[SnapshotMessage, ChangeMessage, ResyncMessage, MutationResult],
    Field(discriminator="type"),
]

ServerMessageAdapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


class ClientMutation(BaseModel):
    """Optimistic edit sent by a client over the stream."""

    type: Literal["mutation"] = "mutation"
    mutation_id: str
    entity_type: Literal["contact", "reminder"]
    entity_id: str
    expected_version: int
    changes: Dict[str, Any]


class ContactPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    display_name: Optional[str] = None


class ReminderPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    rule: Optional[Rule] = None
    days: Optional[List[Weekday]] = None
    at: Optional[datetime] = None
    time_of_day: Optional[time] = None
    timezone: Optional[str] = None
    response_requirement: Optional[ResponseRequirement] = None
    response_window_minutes: Optional[int] = Field(default=None, gt=0)
    status: Optional[Literal["active", "paused", "archived"]] = None


def snapshot_message(raw: Dict[str, Any]) -> SnapshotMessage:
    """Build a snapshot from raw store rows, dropping malformed records."""
    return SnapshotMessage(
        head=raw["head"],
        contacts=decode_records("contact", raw.get("contact", [])),
        reminders=decode_records("reminder", raw.get("reminder", [])),
        responses=decode_records("response", raw.get("response", [])),
        feed_events=decode_records("feed_event", raw.get("feed_event", [])),
    )
