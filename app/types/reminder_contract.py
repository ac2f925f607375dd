"""Pydantic models that define the contract between the webhook/API layer,
the Celery workers and the store.

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in FastAPI or database
layers.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from app.services.recurrence import RecurrenceConfigError, validate_rule
from config import settings

Rule = Literal["one_time", "daily", "weekdays", "weekly", "custom"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
ResponseRequirement = Literal["photo", "text", "either"]
ContactStatus = Literal["pending", "confirmed", "inactive"]
ReminderStatus = Literal["active", "paused", "completed", "archived"]
ResponseOutcome = Literal[
    "completion",
    "confirmation_accept",
    "confirmation_reject",
    "unmatched",
    "duplicate",
    "opt_out",
]

E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def canonical_phone(raw: str, default_country_code: str = "1") -> str:
    """Normalise a user-entered phone number to E.164.

    ``"(778) 814-3739"`` → ``"+17788143739"``. Raises ``ValueError`` when the
    result is not a plausible E.164 number.
    """
    if raw is None:
        raise ValueError("phone number is required")
    raw = str(raw).strip()
    digits = re.sub(r"\D", "", raw)
    if raw.startswith("+"):
        candidate = f"+{digits}"
    elif raw.startswith("00"):
        candidate = f"+{digits[2:]}"
    elif len(digits) == 10:
        candidate = f"+{default_country_code}{digits}"
    else:
        candidate = f"+{digits}"
    if not E164_RE.match(candidate):
        raise ValueError(f"Invalid phone number format: {raw!r}. Must be E.164 (e.g. +17788143739)")
    return candidate


class AccountUpsert(BaseModel):
    display_name: str = ""
    sms_quota_limit: Optional[int] = Field(default=None, ge=0)


class ContactCreate(BaseModel):
    """Enrollment request for a contact who will receive reminders."""

    phone_number: str
    display_name: str

    @field_validator("phone_number")
    def _canonical(cls, v):  # noqa: N805
        return canonical_phone(v)

    @field_validator("display_name")
    def _non_empty(cls, v):  # noqa: N805
        if not v or not v.strip():
            raise ValueError("display_name must be a non-empty string")
        return v.strip()


class ReminderCreate(BaseModel):
    """A recurring (or one-off) habit reminder for a contact.

    Configuration errors (empty day set, unknown timezone, one-off without an
    instant) are rejected here so they never reach the dispatcher.
    """

    title: str
    rule: Rule = "daily"
    time_of_day: time
    timezone: str = Field(default_factory=lambda: settings.DEFAULT_TIMEZONE)
    days: List[Weekday] = Field(default_factory=list)
    at: Optional[datetime] = None
    response_requirement: ResponseRequirement = "either"
    response_window_minutes: Optional[int] = Field(default=None, gt=0)

    @field_validator("title")
    def _title(cls, v):  # noqa: N805
        if not v or not v.strip():
            raise ValueError("title must be a non-empty string")
        return v.strip()

    @field_validator("days")
    def _dedupe_days(cls, v):  # noqa: N805
        return sorted(set(v), key=v.index)

    @field_validator("at")
    def _aware(cls, v):  # noqa: N805
        if v is not None and v.tzinfo is None:
            raise ValueError("at must be timezone-aware")
        return v.astimezone(timezone.utc) if v is not None else v

    @model_validator(mode="after")
    def _validate_schedule(self):  # noqa: N805
        try:
            validate_rule(self.rule, self.timezone, days=self.days, at=self.at)
        except RecurrenceConfigError as exc:
            raise ValueError(str(exc)) from exc
        return self


class ReminderStatusChange(BaseModel):
    status: Literal["active", "paused", "archived"]


class InboundMessage(BaseModel):
    """Normalised inbound SMS/MMS as delivered by the gateway webhook."""

    gateway_message_id: str
    from_number: str
    body: str = ""
    media_urls: List[str] = Field(default_factory=list)
    received_at: datetime

    @field_validator("gateway_message_id")
    def _id_required(cls, v):  # noqa: N805
        if not v or not v.strip():
            raise ValueError("gateway_message_id must be a non-empty string")
        return v.strip()

    @field_validator("received_at")
    def _received_aware(cls, v):  # noqa: N805
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class CorrelationResult(BaseModel):
    """What the correlator did with one inbound message."""

    response_id: str
    outcome: ResponseOutcome
    account_id: Optional[str] = None
    contact_id: Optional[str] = None
    reminder_id: Optional[str] = None
    occurrence_id: Optional[str] = None
    already_processed: bool = False
