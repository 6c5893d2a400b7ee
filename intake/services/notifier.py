"""Best-effort fan-out of "new study" events to live WebSocket subscribers."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import WebSocket
from prometheus_client import Counter

logger = logging.getLogger(__name__)

NOTIFICATIONS_SENT = Counter("dcm_intake_notifications_total", "New-study notifications delivered", ["outcome"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StudyNotifier:
    """Tracks connected sockets and which of them subscribed to study events."""

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self.connections: set[WebSocket] = set()
        self.subscribers: set[WebSocket] = set()
        self._tasks: set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)
        await websocket.send_json({"type": "connection_established", "timestamp": _now()})
        logger.info("Notification socket connected (%d open)", len(self.connections))

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.discard(websocket)
        self.subscribers.discard(websocket)

    async def handle_message(self, websocket: WebSocket, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "subscribe_to_studies":
            self.subscribers.add(websocket)
            await websocket.send_json({"type": "subscribed_to_studies", "timestamp": _now()})
        elif kind == "ping":
            await websocket.send_json({"type": "pong", "timestamp": _now()})
        else:
            logger.debug("Ignoring socket message of type %r", kind)

    def notify_new_study(self, data: dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule a broadcast and return without waiting for delivery."""
        if not self.subscribers:
            return None
        message = {"type": "new_study_notification", "data": data, "timestamp": _now()}
        try:
            task = asyncio.create_task(self.broadcast(message))
        except Exception as exc:
            logger.warning("Could not schedule study notification: %s", exc)
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def broadcast(self, message: dict[str, Any]) -> int:
        delivered = 0
        for websocket in list(self.subscribers):
            try:
                await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout)
            except Exception as exc:
                logger.warning("Dropping notification subscriber after send failure: %s", exc)
                self.disconnect(websocket)
                NOTIFICATIONS_SENT.labels(outcome="failed").inc()
                continue
            delivered += 1
            NOTIFICATIONS_SENT.labels(outcome="delivered").inc()
        return delivered
