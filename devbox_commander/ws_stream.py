"""
Devbox Commander — WebSocket Event Stream
═════════════════════════════════════════
Forwards Event Bus traffic to dashboard clients.

Protocol (JSON messages over WebSocket):
  Client → Server:
    {"type": "subscribe", "channel": "task:<taskId>"}
    {"type": "subscribe", "channel": "container:*"}
    {"type": "unsubscribe", "channel": "task:<taskId>"}
    {"type": "ping"}

  Server → Client:
    {"type": "event", "channel": "creation:<taskId>", "event": "container:creation:progress", "data": {...}}
    {"type": "subscribed", "channel": "..."}
    {"type": "pong"}
    {"type": "error", "message": "..."}

Channels may also be given up front: /api/events?channels=task:*,container:*
"""

import json
import asyncio
import fnmatch
import logging
from typing import Set

from fastapi import WebSocket, WebSocketDisconnect

from .events import EventBus

logger = logging.getLogger(__name__)


# ── Active Connections ────────────────────────────────────

_connections: Set[WebSocket] = set()


def connection_count() -> int:
    return len(_connections)


# ── WebSocket Handler ─────────────────────────────────────

async def ws_handler(websocket: WebSocket, bus: EventBus):
    """Main WebSocket handler: one bus subscription per client, filtered by channel patterns."""
    await websocket.accept()
    _connections.add(websocket)
    logger.info(f"[WS] Client connected ({len(_connections)} total)")

    initial = websocket.query_params.get("channels", "")
    patterns: Set[str] = {c.strip() for c in initial.split(",") if c.strip()}
    sub = bus.subscribe("*")
    forwarder = asyncio.create_task(_forward(websocket, sub, patterns))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await _send(websocket, {"type": "error", "message": "Invalid JSON"})
                continue

            msg_type = msg.get("type", "")
            channel = msg.get("channel", "")

            if msg_type == "subscribe":
                if not channel:
                    await _send(websocket, {"type": "error", "message": "channel required"})
                    continue
                patterns.add(channel)
                await _send(websocket, {"type": "subscribed", "channel": channel})

            elif msg_type == "unsubscribe":
                patterns.discard(channel)
                await _send(websocket, {"type": "unsubscribed", "channel": channel})

            elif msg_type == "ping":
                await _send(websocket, {"type": "pong"})

            else:
                await _send(websocket, {"type": "error", "message": f"Unknown type: {msg_type}"})

    except WebSocketDisconnect:
        logger.info("[WS] Client disconnected")
    except Exception as e:
        logger.error(f"[WS] Error: {e}")
    finally:
        forwarder.cancel()
        bus.unsubscribe(sub)
        _connections.discard(websocket)


async def _forward(ws: WebSocket, sub, patterns: Set[str]):
    """Pump bus messages whose channel matches one of the client's patterns."""
    while True:
        message = await sub.get()
        if not any(fnmatch.fnmatchcase(message["channel"], p) for p in patterns):
            continue
        await _send(ws, {"type": "event", **message})


# ── Helper ────────────────────────────────────────────────

async def _send(ws: WebSocket, data: dict):
    """Send JSON message to a WebSocket client."""
    try:
        await ws.send_text(json.dumps(data, default=str))
    except Exception as e:
        logger.debug(f"[WS] Send failed: {e}")
