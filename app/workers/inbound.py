"""Celery task that correlates one inbound SMS/MMS.

The webhook only validates and enqueues; correlation happens here so a slow
database never makes the gateway retry the webhook. Redelivery of the same
task is harmless: the correlator deduplicates on the gateway message id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

from app.celery_app import celery_app
from app.services import correlator
from app.types.reminder_contract import InboundMessage
from app.workers.reminder import _run

_LOGGER = logging.getLogger(__name__)


@celery_app.task(name="app.workers.inbound.handle", bind=True, max_retries=5)
def handle(self, message: Dict):  # noqa: D401
    """Correlate a serialised ``InboundMessage``."""
    inbound = InboundMessage.model_validate(message)
    try:
        result = asyncio.run(_run(lambda: correlator.handle_inbound(inbound)))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    _LOGGER.info("inbound %s -> %s", inbound.gateway_message_id, result.outcome)
    return result.model_dump(mode="json")
