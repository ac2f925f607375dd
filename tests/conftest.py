"""Shared fixtures: a throw-away SQLite database per test, a scriptable
messaging gateway and a seeding helper."""

import asyncio
from datetime import datetime, time, timezone

import pytest
import pytest_asyncio

import db
from app.services import lifecycle
from app.types.reminder_contract import AccountUpsert, ContactCreate, ReminderCreate
from app.utils.sms import GatewayError
from config import settings

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
PHONE = "+15555550100"
ACCOUNT = "acct-1"


class FakeGateway:
    def __init__(self, fail_times: int = 0, delay: float = 0.0, on_send=None):
        self.fail_times = fail_times
        self.delay = delay
        self.on_send = on_send
        self.calls = 0
        self.sent = []

    async def send(self, to, body, media_urls=None):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_send is not None:
            await self.on_send()
        if self.calls <= self.fail_times:
            raise GatewayError("carrier unavailable")
        self.sent.append((to, body))
        return f"msg-{len(self.sent)}"


@pytest_asyncio.fixture
async def store_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.dispose_engine()
    await db.create_all()
    yield
    await db.dispose_engine()


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "SMS_BACKOFF_MAX_SECONDS", 0)


@pytest.fixture(autouse=True)
def queued_confirmations(monkeypatch):
    queued = []
    monkeypatch.setattr(lifecycle, "_queue_confirmation", lambda a, c: queued.append((a, c)))
    return queued


@pytest.fixture
def seed(store_db):
    """Create an account, a contact and one reminder; returns (contact, reminder)."""

    async def _seed(
        *,
        now=T0,
        account_id=ACCOUNT,
        phone=PHONE,
        contact_status="confirmed",
        rule="daily",
        time_of_day=time(9, 0),
        tz="UTC",
        days=(),
        at=None,
        requirement="either",
        quota=None,
    ):
        await lifecycle.upsert_account(
            account_id, AccountUpsert(display_name="Mia", sms_quota_limit=quota), now=now
        )
        contact = await lifecycle.enroll_contact(
            account_id, ContactCreate(phone_number=phone, display_name="Grandpa Joe"), now=now
        )
        if contact_status != "pending":
            _, contact = await db.update_fields(
                "contact", account_id, contact.id, {"status": contact_status},
                expected_version=None, now=now,
            )
        reminder = await lifecycle.create_reminder(
            account_id,
            contact.id,
            ReminderCreate(
                title="Take vitamins",
                rule=rule,
                time_of_day=time_of_day,
                timezone=tz,
                days=list(days),
                at=at,
                response_requirement=requirement,
            ),
            now=now,
        )
        return contact, reminder

    return _seed
