"""WebSocket stream of an account's state.

Server → client: ``snapshot``, ``change``, ``resync``, ``mutation_result``.
Client → server: ``mutation``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.services import sync
from app.types.sync_contract import ClientMutation

router = APIRouter(prefix="/v1/accounts", tags=["stream"])
_LOGGER = logging.getLogger(__name__)


async def _read_mutations(websocket: WebSocket, session: sync.ClientSession) -> None:
    while True:
        text = await websocket.receive_text()
        try:
            payload = json.loads(text or "")
            mutation = ClientMutation.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            _LOGGER.debug("stream ignored invalid client message: %s", exc)
            continue
        result = await sync.apply_client_mutation(session.account_id, mutation)
        session.push(result.model_dump(mode="json"))


@router.websocket("/{account_id}/stream")
async def stream(websocket: WebSocket, account_id: str, since: Optional[int] = None) -> None:
    await websocket.accept()
    session = await sync.coordinator.subscribe(account_id, websocket.send_json, since)
    writer = asyncio.create_task(session.run())
    reader = asyncio.create_task(_read_mutations(websocket, session))
    try:
        done, _ = await asyncio.wait({writer, reader}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if isinstance(exc, asyncio.TimeoutError):
                _LOGGER.warning("stream %s dropped: client too slow", session.id)
                await websocket.close(code=1011)
            elif isinstance(exc, WebSocketDisconnect):
                _LOGGER.info("stream %s disconnected by client", session.id)
            elif exc is not None:
                _LOGGER.warning("stream %s terminated by error: %s", session.id, exc)
    finally:
        for task in (writer, reader):
            task.cancel()
        await asyncio.gather(writer, reader, return_exceptions=True)
        await sync.coordinator.unsubscribe(session)
