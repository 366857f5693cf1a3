# app/routes/websocket.py
"""
WebSocket endpoint.

- /ws/events/{event_id} : relaie chaque enregistrement livré par le canal `event-<id>`
  ({event_type, payload, nonce, timestamp}) au client distant.

Le client distant applique lui-même le saut du premier message (état antérieur à la
connexion) et la déduplication par nonce. Les messages entrants ne servent qu'au
heartbeat (ping → pong).
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from app.models.broadcast import BroadcastMessage
from app.services.broadcast import event_channel_name
from app.services.registry import get_hub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/events/{event_id}")
async def websocket_event_stream(ws: WebSocket, event_id: str):
    await ws.accept()
    channel = event_channel_name(event_id)
    pending = asyncio.Event()
    latest: dict = {}

    def _on_message(message: Optional[BroadcastMessage]) -> None:
        latest["message"] = message
        pending.set()

    async def _send_json(payload: dict):
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        await ws.send_text(text)

    async def _forward(scope: anyio.CancelScope):
        try:
            while True:
                await pending.wait()
                pending.clear()
                message = latest.get("message")
                # None : canal encore vide, rien à relayer
                if message is not None:
                    await _send_json(message.model_dump())
        except WebSocketDisconnect:
            pass
        finally:
            scope.cancel()

    async def _listen(scope: anyio.CancelScope):
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict) and msg.get("type") == "ping":
                    await _send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        finally:
            scope.cancel()

    unsubscribe = get_hub().subscribe(channel, _on_message)
    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(_forward, tg.cancel_scope)
            tg.start_soon(_listen, tg.cancel_scope)
    except Exception as exc:
        logger.warning("Event stream closed on error", extra={"event_id": event_id, "error": str(exc)})
    finally:
        unsubscribe()
        if ws.client_state != WebSocketState.DISCONNECTED:
            await ws.close()
