import datetime
import logging
from typing import Any, Dict, Optional

import telnyx
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

import db
from app.api import accounts, stream
from app.services import sync
from app.types.reminder_contract import InboundMessage
from app.workers import inbound
from config import settings

_LOGGER = logging.getLogger(__name__)

# Configure telnyx public key
if settings.TELNYX_PUBLIC_KEY:
    telnyx.public_key = settings.TELNYX_PUBLIC_KEY

app = FastAPI()
app.include_router(accounts.router)
app.include_router(stream.router)


@app.on_event("startup")
async def startup_event():
    pass  # DB connections are managed lazily; tables via Alembic migrations


@app.on_event("shutdown")
async def shutdown_event():
    await sync.coordinator.close()
    await db.dispose_engine()


# --------------------------------------------
# Payload normalisation
# --------------------------------------------

def _as_dict(obj: Any) -> Dict[str, Any]:
    # TelnyxObject -> dict if needed
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj or {}


def parse_inbound(payload: Dict[str, Any], now: Optional[datetime.datetime] = None) -> Optional[InboundMessage]:
    """Turn a Telnyx ``message.received`` payload into an ``InboundMessage``.

    Returns ``None`` for payloads that carry no sender or message id.
    """
    payload = _as_dict(payload)
    sender = _as_dict(payload.get("from") or payload.get("from_"))
    from_num = sender.get("phone_number")
    message_id = payload.get("id")
    if not from_num or not message_id:
        return None

    media = []
    for item in payload.get("media") or []:
        item = _as_dict(item)
        if isinstance(item, dict) and item.get("url"):
            media.append(str(item["url"]))

    text = payload.get("text") or ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    received_at = payload.get("received_at") or now or datetime.datetime.now(tz=datetime.timezone.utc)
    try:
        return InboundMessage(
            gateway_message_id=str(message_id),
            from_number=from_num,
            body=str(text),
            media_urls=media,
            received_at=received_at,
        )
    except ValidationError:
        # Unparseable timestamp: fall back to arrival time.
        _LOGGER.warning("inbound %s has malformed fields; using arrival time", message_id)
        return InboundMessage(
            gateway_message_id=str(message_id),
            from_number=from_num,
            body=str(text),
            media_urls=media,
            received_at=now or datetime.datetime.now(tz=datetime.timezone.utc),
        )


# --------------------------------------------
# Endpoint
# --------------------------------------------
@app.post("/v1/sms/telnyx", response_class=PlainTextResponse)
async def telnyx_webhook(request: Request):
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")

    try:
        if settings.TELNYX_PUBLIC_KEY:
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            data = _as_dict(event.data)
        else:  # dev mode: skip signature verification
            data = (await request.json())["data"]
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("rejected webhook: %s", exc)
        raise HTTPException(400, "Bad signature")

    payload = _as_dict(data.get("payload"))
    if payload.get("type") == "ping":
        return PlainTextResponse("PONG")

    event_type = data.get("event_type")
    if event_type and event_type != "message.received":
        return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)

    message = parse_inbound(payload)
    if message is None:
        return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)

    try:
        inbound.handle.delay(message.model_dump(mode="json"))
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("failed to enqueue inbound %s: %s", message.gateway_message_id, exc)
        raise HTTPException(500, "Queue error")
    _LOGGER.info("[Webhook] queued inbound %s from %s", message.gateway_message_id, message.from_number)
    return PlainTextResponse("OK")
