"""
websocket.py — Per-event WebSocket subscriptions and broadcast.

Server → Client: runner_updated, new_scan, event_status_changed
Endpoint: ws://{host}/ws/events/{event_id}

The manager doubles as the publisher handed to the timing engine:
publish() schedules the send and returns immediately.
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger("racesync.ws")

router = APIRouter()


class ConnectionManager:
    """Manages WebSocket subscribers per event and message broadcasting."""

    def __init__(self):
        self.subscribers: dict[int, list[WebSocket]] = {}
        self._pending: set[asyncio.Task] = set()

    async def connect(self, event_id: int, ws: WebSocket):
        await ws.accept()
        self.subscribers.setdefault(event_id, []).append(ws)
        logger.info("WS connected to event %s (%d total)", event_id,
                    len(self.subscribers[event_id]))

    def disconnect(self, event_id: int, ws: WebSocket):
        active = self.subscribers.get(event_id, [])
        if ws in active:
            active.remove(ws)
        if not active:
            self.subscribers.pop(event_id, None)
        logger.info("WS disconnected from event %s", event_id)

    async def broadcast(self, event_id: int, message: dict):
        """Send message to every subscriber of one event."""
        active = list(self.subscribers.get(event_id, []))
        if not active:
            return
        data = json.dumps(message, ensure_ascii=False, default=str)
        disconnected = []
        for ws in active:
            try:
                await ws.send_text(data)
            except Exception:
                disconnected.append(ws)
        for ws in disconnected:
            self.disconnect(event_id, ws)

    def publish(self, event_id: int, msg_type: str, payload: dict) -> None:
        """Fire-and-forget broadcast usable from sync code inside the event loop."""
        if not self.subscribers.get(event_id):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, dropping %s for event %s", msg_type, event_id)
            return
        msg = {"type": msg_type, "event_id": event_id, "data": payload}
        task = loop.create_task(self.broadcast(event_id, msg))
        self._pending.add(task)
        task.add_done_callback(self._on_sent)

    def _on_sent(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("WS broadcast failed: %s", task.exception())

    def connection_count(self, event_id: int) -> int:
        return len(self.subscribers.get(event_id, []))


# Singleton manager
manager = ConnectionManager()


@router.websocket("/ws/events/{event_id}")
async def event_websocket(ws: WebSocket, event_id: int):
    await manager.connect(event_id, ws)
    try:
        while True:
            data = await ws.receive_text()
            # Only keepalive pings are expected from clients
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await ws.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        manager.disconnect(event_id, ws)
