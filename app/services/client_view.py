"""Client-side view state for one account's stream.

Holds what a client currently believes (contacts, reminders, responses, the
activity feed) plus which contact is selected, and reconciles optimistic
edits with what the server says. Nothing here is global: every screen or
test builds its own ``ClientView``.

The backend never imports this module. It is the reference consumer of the
``/v1/accounts/{account_id}/stream`` protocol, kept beside the server side
in ``app.services.sync`` so both halves of the wire contract change together.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from app.types.sync_contract import (
    RECORD_ADAPTERS,
    ChangeMessage,
    ClientMutation,
    MutationResult,
    ResyncMessage,
    ServerMessageAdapter,
    SnapshotMessage,
)

_LOGGER = logging.getLogger(__name__)

VERSIONED = ("contact", "reminder")


@dataclass
class PendingMutation:
    entity_type: str
    entity_id: str


class ClientView:
    def __init__(self, account_id: str):
        self.account_id = account_id
        self.head = 0
        self.awaiting_snapshot = True
        self.selected_contact_id: Optional[str] = None
        self.entities: Dict[str, Dict[str, Any]] = {
            "contact": {},
            "reminder": {},
            "response": {},
            "feed_event": {},
        }
        self.pending: Dict[str, PendingMutation] = {}

    # ── accessors ──────────────────────────────────────────────────────
    @property
    def contacts(self) -> Dict[str, Any]:
        return self.entities["contact"]

    @property
    def reminders(self) -> Dict[str, Any]:
        return self.entities["reminder"]

    @property
    def feed(self) -> List[Any]:
        return sorted(self.entities["feed_event"].values(), key=lambda e: e.created_at, reverse=True)

    def select_contact(self, contact_id: Optional[str]) -> None:
        if contact_id is not None and contact_id not in self.contacts:
            raise KeyError(contact_id)
        self.selected_contact_id = contact_id

    @property
    def selected_contact(self):
        return self.contacts.get(self.selected_contact_id) if self.selected_contact_id else None

    def reminders_for(self, contact_id: str) -> List[Any]:
        return [r for r in self.reminders.values() if r.contact_id == contact_id]

    # ── server messages ────────────────────────────────────────────────
    def apply(self, raw: Dict[str, Any]) -> None:
        try:
            message = ServerMessageAdapter.validate_python(raw)
        except ValidationError as exc:
            _LOGGER.warning("ignoring malformed stream message: %s", exc.errors()[:1])
            return
        if isinstance(message, SnapshotMessage):
            self._apply_snapshot(message)
        elif isinstance(message, ChangeMessage):
            self._apply_change(message.change)
        elif isinstance(message, ResyncMessage):
            self.awaiting_snapshot = True
        elif isinstance(message, MutationResult):
            self._apply_result(message)

    def _apply_snapshot(self, snap: SnapshotMessage) -> None:
        # Optimistic edits in flight are superseded by authoritative state.
        self.pending.clear()
        self.entities["contact"] = {c.id: c for c in snap.contacts}
        self.entities["reminder"] = {r.id: r for r in snap.reminders}
        self.entities["response"] = {r.id: r for r in snap.responses}
        self.entities["feed_event"] = {e.id: e for e in snap.feed_events}
        self.head = snap.head
        self.awaiting_snapshot = False
        if self.selected_contact_id not in self.contacts:
            self.selected_contact_id = None

    def _apply_change(self, change) -> None:
        self.head = max(self.head, change.seq)
        table = self.entities[change.entity_type]
        if change.op == "delete":
            table.pop(change.entity_id, None)
            if change.entity_type == "contact" and self.selected_contact_id == change.entity_id:
                self.selected_contact_id = None
            self._drop_pending(change.entity_type, change.entity_id)
            return

        record = change.record
        if change.entity_type == "feed_event" and record.id in table:
            return
        existing = table.get(record.id)
        if change.entity_type in VERSIONED and existing is not None:
            if self._has_pending(change.entity_type, record.id):
                # A server echo that moved past our base wins over the edit.
                self._drop_pending(change.entity_type, record.id)
            elif record.version < existing.version:
                return
        table[record.id] = record

    def _apply_result(self, result: MutationResult) -> None:
        self.pending.pop(result.mutation_id, None)
        if result.record is None:
            if result.status == "rolled_back":
                self.entities[result.entity_type].pop(result.entity_id, None)
            return
        record = RECORD_ADAPTERS[result.entity_type].validate_python(result.record)
        self.entities[result.entity_type][record.id] = record

    # ── optimistic edits ──────────────────────────────────────────────
    def mutate(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> ClientMutation:
        """Apply *changes* locally and return the message to send."""
        current = self.entities[entity_type][entity_id]
        mutation = ClientMutation(
            mutation_id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=entity_id,
            expected_version=current.version,
            changes=changes,
        )
        self.pending[mutation.mutation_id] = PendingMutation(entity_type, entity_id)
        self.entities[entity_type][entity_id] = current.model_copy(update=changes)
        return mutation

    def _has_pending(self, entity_type: str, entity_id: str) -> bool:
        return any(p.entity_type == entity_type and p.entity_id == entity_id for p in self.pending.values())

    def _drop_pending(self, entity_type: str, entity_id: str) -> None:
        for mutation_id in [
            mid for mid, p in self.pending.items()
            if p.entity_type == entity_type and p.entity_id == entity_id
        ]:
            del self.pending[mutation_id]
