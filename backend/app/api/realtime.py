from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.services.notifier import GLOBAL_CHANNEL, RealtimeNotifier, Subscription, building_channel

logger = logging.getLogger("app.realtime")

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/buildings/{building_id}")
async def building_updates(websocket: WebSocket, building_id: int) -> None:
    await _stream(websocket, building_channel(building_id))


@router.websocket("/ws/global")
async def global_updates(websocket: WebSocket) -> None:
    await _stream(websocket, GLOBAL_CHANNEL)


async def _stream(websocket: WebSocket, channel: str) -> None:
    notifier: RealtimeNotifier | None = getattr(websocket.app.state, "notifier", None)
    if notifier is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    subscription = notifier.subscribe(channel)
    await websocket.send_json({"event": "connected", "channel": channel, "payload": {}, "ts": None})
    sender = asyncio.create_task(_forward(websocket, subscription))
    try:
        # inbound frames are ignored; reading surfaces the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("websocket disconnected channel=%s", channel)
    finally:
        notifier.unsubscribe(subscription)
        sender.cancel()
        try:
            with contextlib.suppress(asyncio.CancelledError):
                await sender
        except Exception:
            logger.debug("websocket sender failed channel=%s", channel, exc_info=True)


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.queue.get()
        await websocket.send_json(message)
