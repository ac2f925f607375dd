"""Inbound reply correlation.

Resolves which contact sent a message and what it answers:

* a pending contact's reply is a confirmation (accept / reject),
* a confirmed contact's reply completes the most recently dispatched open
  occurrence inside its reminder's response window,
* anything else is retained as ``unmatched`` so it still shows up in history.

Redelivered gateway messages are recognised by ``gateway_message_id`` and
return the previously stored outcome without mutating anything.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional

from app.types.reminder_contract import CorrelationResult, InboundMessage, canonical_phone
from config import settings
from db import store
from db.db import utcnow
from db.models import ReminderResponse

_LOGGER = logging.getLogger(__name__)

STOP_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
ACCEPT_KEYWORDS = frozenset(
    {"YES", "Y", "YEP", "YEAH", "YA", "OK", "OKAY", "CONFIRM", "CONFIRMED", "SURE", "ACCEPT", "START"}
)
REJECT_KEYWORDS = frozenset({"NO", "N", "NOPE", "NAH", "DECLINE", "REJECT"}) | STOP_KEYWORDS

_WORD_RE = re.compile(r"[A-Za-z]+")


def _first_word(body: str) -> str:
    match = _WORD_RE.search(body or "")
    return match.group(0).upper() if match else ""


def is_stop_request(body: str) -> bool:
    return (body or "").strip().upper().rstrip(".!") in STOP_KEYWORDS


def classify_confirmation(body: str, default: Optional[str] = None) -> bool:
    """True when a pending contact's reply accepts enrollment.

    ``reject`` (default): only the affirmative vocabulary accepts.
    ``accept``: only explicit negatives reject.
    """
    default = default or settings.CONFIRMATION_DEFAULT
    word = _first_word(body)
    if default == "accept":
        return word not in REJECT_KEYWORDS
    return word in ACCEPT_KEYWORDS


def sanitize(msg: InboundMessage) -> InboundMessage:
    """Degrade malformed input to something storable instead of failing."""
    body = (msg.body or "").replace("\x00", "")
    if len(body) > settings.MAX_INBOUND_BODY_CHARS:
        _LOGGER.warning("truncating %d-char body of %s", len(body), msg.gateway_message_id)
        body = body[: settings.MAX_INBOUND_BODY_CHARS]

    media = [
        url for url in msg.media_urls
        if isinstance(url, str) and url.lower().startswith(("http://", "https://"))
    ]
    if len(media) != len(msg.media_urls):
        _LOGGER.warning("dropped %d malformed media entries on %s",
                        len(msg.media_urls) - len(media), msg.gateway_message_id)
    media = media[: settings.MAX_INBOUND_MEDIA]
    return msg.model_copy(update={"body": body, "media_urls": media})


def _result(row: ReminderResponse, already_processed: bool) -> CorrelationResult:
    return CorrelationResult(
        response_id=row.id,
        outcome=row.outcome,
        account_id=row.account_id,
        contact_id=row.contact_id,
        reminder_id=row.reminder_id,
        occurrence_id=row.occurrence_id,
        already_processed=already_processed,
    )


async def handle_inbound(msg: InboundMessage, now: Optional[datetime] = None) -> CorrelationResult:
    now = now or utcnow()
    msg = sanitize(msg)

    existing = await store.get_response_by_message_id(msg.gateway_message_id)
    if existing is not None:
        _LOGGER.info("message %s already processed (%s)", msg.gateway_message_id, existing.outcome)
        return _result(existing, already_processed=True)

    try:
        phone = canonical_phone(msg.from_number)
    except ValueError:
        phone = msg.from_number
    fields = dict(
        gateway_message_id=msg.gateway_message_id,
        from_number=phone,
        body=msg.body,
        media_urls=msg.media_urls,
        received_at=msg.received_at,
    )

    contacts = await store.find_contacts_by_phone(phone)
    if not contacts:
        _LOGGER.warning("inbound message from unknown number %s", phone)
        row, inserted = await store.record_response(outcome="unmatched", notes="unknown sender", **fields)
        return _result(row, already_processed=not inserted)

    contact = contacts[0]
    if len(contacts) > 1:
        _LOGGER.info("%s is enrolled in %d accounts; using %s", phone, len(contacts), contact.account_id)
    fields.update(account_id=contact.account_id, contact_id=contact.id)

    if contact.status == "pending":
        accepted = classify_confirmation(msg.body)
        row, inserted, _ = await store.record_contact_reply(
            expected_status="pending",
            new_status="confirmed" if accepted else "inactive",
            opted_out=True if is_stop_request(msg.body) else None,
            feed_kind="contact_confirmed" if accepted else "contact_declined",
            now=now,
            outcome="confirmation_accept" if accepted else "confirmation_reject",
            **fields,
        )
        _LOGGER.info("contact %s %s enrollment", contact.id, "accepted" if accepted else "declined")
        return _result(row, already_processed=not inserted)

    if contact.status != "confirmed":
        _LOGGER.warning("inbound message from %s contact %s", contact.status, contact.id)
        row, inserted = await store.record_response(
            outcome="unmatched", notes=f"contact {contact.status}", **fields
        )
        return _result(row, already_processed=not inserted)

    if is_stop_request(msg.body):
        row, inserted, _ = await store.record_contact_reply(
            expected_status="confirmed",
            new_status="inactive",
            opted_out=True,
            feed_kind=None,
            now=now,
            outcome="opt_out",
            **fields,
        )
        _LOGGER.info("contact %s opted out", contact.id)
        return _result(row, already_processed=not inserted)

    match = await store.find_open_occurrence(contact.account_id, contact.id, msg.received_at, now)
    if match is None:
        _LOGGER.warning("no open reminder for reply %s from contact %s", msg.gateway_message_id, contact.id)
        row, inserted = await store.record_response(
            outcome="unmatched", notes="no open reminder in window", **fields
        )
        return _result(row, already_processed=not inserted)

    occurrence, reminder = match
    notes = None
    if reminder.response_requirement == "photo" and not msg.media_urls:
        notes = "photo requested, text received"
    elif reminder.response_requirement == "text" and not msg.body.strip():
        notes = "text requested, photo received"

    row, inserted, completed = await store.record_completion(
        now=now,
        reminder_id=reminder.id,
        occurrence_id=occurrence.id,
        notes=notes,
        **fields,
    )
    if completed:
        _LOGGER.info("reminder %s completed by %s", reminder.id, msg.gateway_message_id)
    return _result(row, already_processed=not inserted)
