"""reminder store: accounts, contacts, reminders, occurrences, responses,
feed events, change log, sms logs

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261017_01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TS = sa.TIMESTAMP(timezone=True)


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("display_name", sa.String(200), nullable=False, server_default=""),
        sa.Column("sms_quota_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sms_quota_limit", sa.Integer, nullable=False, server_default="500"),
        sa.Column("sms_quota_period_end", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False),
    )

    op.create_table(
        "contacts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(128), nullable=False, index=True),
        sa.Column("phone_number", sa.String(16), nullable=False, index=True),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("sms_opted_out", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("confirmed_at", TS, nullable=True),
        sa.Column("last_outbound_at", TS, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.UniqueConstraint("account_id", "phone_number", name="uq_contacts_account_phone"),
    )

    op.create_table(
        "reminders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(128), nullable=False, index=True),
        sa.Column("contact_id", sa.String(36), nullable=False, index=True),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("rule", sa.String(16), nullable=False),
        sa.Column("days", sa.JSON, nullable=False),
        sa.Column("at", TS, nullable=True),
        sa.Column("time_of_day", sa.Time, nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("response_requirement", sa.String(8), nullable=False, server_default="either"),
        sa.Column("response_window_minutes", sa.Integer, nullable=False, server_default="30"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("next_due", TS, nullable=True),
        sa.Column("send_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_sent_at", TS, nullable=True),
        sa.Column("last_completed_at", TS, nullable=True),
        sa.Column("delivery_status", sa.String(16), nullable=False, server_default="ok"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("claim_token", sa.String(36), nullable=True),
        sa.Column("claimed_at", TS, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("updated_at", TS, nullable=False),
    )
    op.create_index("ix_reminders_status_next_due", "reminders", ["status", "next_due"])

    op.create_table(
        "occurrences",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(128), nullable=False, index=True),
        sa.Column("contact_id", sa.String(36), nullable=False, index=True),
        sa.Column("reminder_id", sa.String(36), nullable=False, index=True),
        sa.Column("scheduled_for", TS, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="sending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delivery_id", sa.String(128), nullable=True),
        sa.Column("dispatched_at", TS, nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("response_id", sa.String(36), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.UniqueConstraint("reminder_id", "scheduled_for", name="uq_occurrences_reminder_slot"),
    )

    op.create_table(
        "responses",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(128), nullable=True, index=True),
        sa.Column("contact_id", sa.String(36), nullable=True, index=True),
        sa.Column("reminder_id", sa.String(36), nullable=True),
        sa.Column("occurrence_id", sa.String(36), nullable=True),
        sa.Column("gateway_message_id", sa.String(128), nullable=False, unique=True),
        sa.Column("from_number", sa.String(32), nullable=False),
        sa.Column("body", sa.Text, nullable=False, server_default=""),
        sa.Column("media_urls", sa.JSON, nullable=False),
        sa.Column("received_at", TS, nullable=False),
        sa.Column("outcome", sa.String(24), nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
    )

    op.create_table(
        "feed_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(128), nullable=False, index=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("source_id", sa.String(64), nullable=False),
        sa.Column("contact_id", sa.String(36), nullable=True),
        sa.Column("data", sa.JSON, nullable=False),
        sa.Column("created_at", TS, nullable=False),
        sa.UniqueConstraint("account_id", "kind", "source_id", name="uq_feed_events_source"),
    )

    op.create_table(
        "change_log",
        sa.Column("seq", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("op", sa.String(8), nullable=False, server_default="upsert"),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("created_at", TS, nullable=False),
    )
    op.create_index("ix_change_log_account_seq", "change_log", ["account_id", "seq"])

    op.create_table(
        "sms_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(128), nullable=False, index=True),
        sa.Column("contact_id", sa.String(36), nullable=True, index=True),
        sa.Column("reminder_id", sa.String(36), nullable=True),
        sa.Column("to_number", sa.String(16), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("message_type", sa.String(16), nullable=False, server_default="reminder"),
        sa.Column("delivery_id", sa.String(128), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", TS, nullable=False),
    )


def downgrade() -> None:
    for table in (
        "sms_logs", "change_log", "feed_events", "responses",
        "occurrences", "reminders", "contacts", "accounts",
    ):
        op.drop_table(table)
