"""ORM models for the account → contacts → {reminders, occurrences, responses}
hierarchy plus the per-account feed events and change log.

Every row carries ``account_id`` so every query can be scoped to one
account's hierarchy.
"""

from __future__ import annotations

from datetime import datetime, time
from typing import Any

from sqlalchemy import (
    JSON, BigInteger, Boolean, Index, Integer, String, Text, Time, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from db.db import Base, TZDateTime, utcnow


class Account(Base):
    __tablename__ = "accounts"

    id:                   Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name:         Mapped[str] = mapped_column(String(200), default="")
    sms_quota_used:       Mapped[int] = mapped_column(Integer, default=0)
    sms_quota_limit:      Mapped[int] = mapped_column(Integer, default=500)
    sms_quota_period_end: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    created_at:           Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow)


class Contact(Base):
    __tablename__ = "contacts"

    id:               Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id:       Mapped[str] = mapped_column(String(128), index=True)
    phone_number:     Mapped[str] = mapped_column(String(16), index=True)
    display_name:     Mapped[str] = mapped_column(String(200))
    status:           Mapped[str] = mapped_column(String(16), default="pending")
    sms_opted_out:    Mapped[bool] = mapped_column(Boolean, default=False)
    created_at:       Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow)
    confirmed_at:     Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    last_outbound_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    version:          Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (
        UniqueConstraint("account_id", "phone_number", name="uq_contacts_account_phone"),
    )


class Reminder(Base):
    __tablename__ = "reminders"

    id:                      Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id:              Mapped[str] = mapped_column(String(128), index=True)
    contact_id:              Mapped[str] = mapped_column(String(36), index=True)
    title:                   Mapped[str] = mapped_column(Text)
    rule:                    Mapped[str] = mapped_column(String(16))
    days:                    Mapped[list[str]] = mapped_column(JSON, default=list)
    at:                      Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    time_of_day:             Mapped[time] = mapped_column(Time)
    timezone:                Mapped[str] = mapped_column(String(64))
    response_requirement:    Mapped[str] = mapped_column(String(8), default="either")
    response_window_minutes: Mapped[int] = mapped_column(Integer, default=30)
    status:                  Mapped[str] = mapped_column(String(16), default="active")
    next_due:                Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    send_count:              Mapped[int] = mapped_column(Integer, default=0)
    completion_count:        Mapped[int] = mapped_column(Integer, default=0)
    last_sent_at:            Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    last_completed_at:       Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    delivery_status:         Mapped[str] = mapped_column(String(16), default="ok")
    last_error:              Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token:             Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at:              Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    version:                 Mapped[int] = mapped_column(Integer, default=1)
    created_at:              Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow)
    updated_at:              Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow)

    __table_args__ = (
        Index("ix_reminders_status_next_due", "status", "next_due"),
    )


class Occurrence(Base):
    __tablename__ = "occurrences"

    id:            Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id:    Mapped[str] = mapped_column(String(128), index=True)
    contact_id:    Mapped[str] = mapped_column(String(36), index=True)
    reminder_id:   Mapped[str] = mapped_column(String(36), index=True)
    scheduled_for: Mapped[datetime] = mapped_column(TZDateTime())
    status:        Mapped[str] = mapped_column(String(16), default="sending")
    attempts:      Mapped[int] = mapped_column(Integer, default=0)
    delivery_id:   Mapped[str | None] = mapped_column(String(128), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    completed_at:  Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    response_id:   Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_error:    Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("reminder_id", "scheduled_for", name="uq_occurrences_reminder_slot"),
    )


class ReminderResponse(Base):
    __tablename__ = "responses"

    id:                 Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id:         Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    contact_id:         Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    reminder_id:        Mapped[str | None] = mapped_column(String(36), nullable=True)
    occurrence_id:      Mapped[str | None] = mapped_column(String(36), nullable=True)
    gateway_message_id: Mapped[str] = mapped_column(String(128), unique=True)
    from_number:        Mapped[str] = mapped_column(String(32))
    body:               Mapped[str] = mapped_column(Text, default="")
    media_urls:         Mapped[list[str]] = mapped_column(JSON, default=list)
    received_at:        Mapped[datetime] = mapped_column(TZDateTime())
    outcome:            Mapped[str] = mapped_column(String(24))
    notes:              Mapped[str | None] = mapped_column(Text, nullable=True)


class FeedEvent(Base):
    __tablename__ = "feed_events"

    id:         Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(128), index=True)
    kind:       Mapped[str] = mapped_column(String(32))
    source_id:  Mapped[str] = mapped_column(String(64))
    contact_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    data:       Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "kind", "source_id", name="uq_feed_events_source"),
    )


class ChangeLog(Base):
    __tablename__ = "change_log"

    seq:         Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    account_id:  Mapped[str] = mapped_column(String(128))
    entity_type: Mapped[str] = mapped_column(String(16))
    entity_id:   Mapped[str] = mapped_column(String(64))
    op:          Mapped[str] = mapped_column(String(8), default="upsert")
    payload:     Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at:  Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow)

    __table_args__ = (
        Index("ix_change_log_account_seq", "account_id", "seq"),
        {"sqlite_autoincrement": True},
    )


class SmsLog(Base):
    __tablename__ = "sms_logs"

    id:           Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id:   Mapped[str] = mapped_column(String(128), index=True)
    contact_id:   Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    reminder_id:  Mapped[str | None] = mapped_column(String(36), nullable=True)
    to_number:    Mapped[str] = mapped_column(String(16))
    body:         Mapped[str] = mapped_column(Text)
    message_type: Mapped[str] = mapped_column(String(16), default="reminder")
    delivery_id:  Mapped[str | None] = mapped_column(String(128), nullable=True)
    status:       Mapped[str] = mapped_column(String(16))
    error:        Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at:   Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow)
