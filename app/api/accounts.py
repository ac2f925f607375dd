"""Thin HTTP wrappers over the lifecycle manager for the presentation layer."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from app.services import lifecycle, sync
from app.services.recurrence import RecurrenceConfigError
from app.types.reminder_contract import AccountUpsert, ContactCreate, ReminderCreate, ReminderStatusChange
from app.workers import lifecycle as lifecycle_tasks

router = APIRouter(prefix="/v1/accounts", tags=["accounts"])
_LOGGER = logging.getLogger(__name__)


@router.put("/{account_id}")
async def put_account(account_id: str, body: AccountUpsert):
    account = await lifecycle.upsert_account(account_id, body)
    return {
        "id": account.id,
        "display_name": account.display_name,
        "sms_quota_used": account.sms_quota_used,
        "sms_quota_limit": account.sms_quota_limit,
        "sms_quota_period_end": (
            account.sms_quota_period_end.isoformat() if account.sms_quota_period_end else None
        ),
    }


@router.post("/{account_id}/contacts", status_code=status.HTTP_201_CREATED)
async def post_contact(account_id: str, body: ContactCreate):
    try:
        contact = await lifecycle.enroll_contact(account_id, body)
    except lifecycle.NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return sync.wire_record("contact", contact)


@router.post("/{account_id}/contacts/{contact_id}/reminders", status_code=status.HTTP_201_CREATED)
async def post_reminder(account_id: str, contact_id: str, body: ReminderCreate):
    try:
        reminder = await lifecycle.create_reminder(account_id, contact_id, body)
    except lifecycle.NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RecurrenceConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return sync.wire_record("reminder", reminder)


@router.post("/{account_id}/reminders/{reminder_id}/status")
async def post_reminder_status(account_id: str, reminder_id: str, body: ReminderStatusChange):
    try:
        reminder = await lifecycle.update_reminder_status(account_id, reminder_id, body.status)
    except lifecycle.NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except lifecycle.InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except RecurrenceConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return sync.wire_record("reminder", reminder)


@router.delete("/{account_id}/contacts/{contact_id}", status_code=status.HTTP_202_ACCEPTED)
async def delete_contact(account_id: str, contact_id: str):
    lifecycle_tasks.delete_contact.delay(account_id, contact_id)
    _LOGGER.info("queued delete of contact %s/%s", account_id, contact_id)
    return {"status": "queued"}


@router.delete("/{account_id}", status_code=status.HTTP_202_ACCEPTED)
async def delete_account(account_id: str):
    lifecycle_tasks.delete_account.delay(account_id)
    _LOGGER.info("queued delete of account %s", account_id)
    return {"status": "queued"}
