"""Outbound messaging gateway (Telnyx) with bounded retries.

``send_sms`` is what the rest of the backend calls: it picks the configured
gateway, enforces a hard per-attempt timeout and retries transient failures
with exponential back-off. It either returns the gateway's delivery id or
raises once retries are exhausted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import List, Optional, Protocol

import telnyx
from telnyx.http_client import RequestsClient
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from config import settings

_LOGGER = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    """The messaging provider rejected or failed a send."""


class MessagingGateway(Protocol):
    async def send(self, to: str, body: str, media_urls: Optional[List[str]] = None) -> str:
        ...


class TelnyxGateway:
    def __init__(self, api_key: str, from_number: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.from_number = from_number
        # The HTTP call must end on its own: cancelling the awaiting task
        # does not stop the worker thread.
        self.http_client = RequestsClient(timeout=timeout or settings.SMS_SEND_TIMEOUT_SECONDS)

    def _create(self, to: str, body: str, media_urls: Optional[List[str]]) -> str:
        telnyx.api_key = self.api_key
        telnyx.default_http_client = self.http_client
        params = {"from_": self.from_number, "to": to, "text": body}
        if media_urls:
            params["media_urls"] = media_urls
        try:
            message = telnyx.Message.create(**params)
        except telnyx.error.TelnyxError as exc:
            raise GatewayError(str(exc)) from exc
        return str(message.id)

    async def send(self, to: str, body: str, media_urls: Optional[List[str]] = None) -> str:
        # The Telnyx SDK is blocking; keep it off the event loop.
        return await asyncio.to_thread(self._create, to, body, media_urls)


class DevGateway:
    """Used when Telnyx credentials are absent: logs instead of sending."""

    async def send(self, to: str, body: str, media_urls: Optional[List[str]] = None) -> str:
        _LOGGER.info("[SMS] DEV mode: would send to %s: %s", to, body)
        return f"dev-{uuid.uuid4()}"


def get_gateway() -> MessagingGateway:
    if settings.TELNYX_API_KEY and settings.TELNYX_FROM_NUMBER:
        return TelnyxGateway(settings.TELNYX_API_KEY, settings.TELNYX_FROM_NUMBER)
    return DevGateway()


RETRY_ERRORS = (GatewayError, asyncio.TimeoutError)


async def send_sms(
    to: str,
    body: str,
    *,
    gateway: Optional[MessagingGateway] = None,
    media_urls: Optional[List[str]] = None,
) -> str:
    """Send one message; returns the delivery id or raises the last error.

    A timed-out attempt is ambiguous: the provider may have accepted it
    anyway, so the retry that follows can deliver the message twice.
    """
    gateway = gateway or get_gateway()
    async for attempt in AsyncRetrying(
        wait=wait_random_exponential(multiplier=1, max=settings.SMS_BACKOFF_MAX_SECONDS),
        stop=stop_after_attempt(settings.SMS_SEND_ATTEMPTS),
        retry=retry_if_exception_type(RETRY_ERRORS),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                _LOGGER.warning("retrying SMS to %s (attempt %d)", to, attempt.retry_state.attempt_number)
            return await asyncio.wait_for(
                gateway.send(to, body, media_urls),
                timeout=settings.SMS_SEND_TIMEOUT_SECONDS,
            )
    raise GatewayError("send_sms exhausted without result")  # pragma: no cover
