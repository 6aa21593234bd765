"""WebSocket live history stream.

First frame is a snapshot of the latest entries, then one `update` frame per
newly stored entry. Idle connections get a `ping` frame every `ping_sec`.
"""

from __future__ import annotations

import asyncio

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from history_relay.infra.events.broadcaster import ConnectionClosedError, LiveBroadcaster


async def stream_history(websocket: WebSocket, broadcaster: LiveBroadcaster, *, ping_sec: float = 30.0) -> None:
    await websocket.accept()
    if not await broadcaster.on_connect(websocket):
        return

    try:
        while True:
            try:
                message = await asyncio.wait_for(websocket.receive(), timeout=ping_sec)
            except asyncio.TimeoutError:
                await broadcaster.send_ping(websocket)
                continue
            # Client frames (text or binary) are ignored; only a disconnect ends the session.
            if message.get("type") == "websocket.disconnect":
                break
    except (WebSocketDisconnect, ConnectionClosedError):
        pass
    except Exception as exc:
        logger.debug("live connection ended: {}", exc)
    finally:
        await broadcaster.unregister(websocket)
