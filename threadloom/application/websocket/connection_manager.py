from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionManager:
    """Manages WebSocket connections, one per thread"""

    def __init__(self, stale_after: float = 300.0):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self.stale_after = stale_after
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, thread_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[thread_id] = websocket
            self.connection_metadata[thread_id] = {
                "connected_at": _now(),
                "last_activity": _now()
            }

        await self.send_event(
            thread_id,
            ConnectionEvent(status="connected", thread_id=thread_id)
        )

        logger.info("WebSocket connected", thread_id=thread_id)

    async def disconnect(self, thread_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            if thread_id in self.active_connections:
                ws = self.active_connections.pop(thread_id)
                self.connection_metadata.pop(thread_id, None)

                try:
                    await ws.close()
                except Exception as e:
                    logger.debug("Error closing WebSocket", thread_id=thread_id, error=str(e))

        logger.info("WebSocket disconnected", thread_id=thread_id)

    async def send_event(self, thread_id: str, event: BaseEvent) -> bool:
        """Send an event to the connection of a thread"""
        if thread_id not in self.active_connections:
            logger.warning("Attempted to send to disconnected thread", thread_id=thread_id)
            return False

        websocket = self.active_connections[thread_id]

        try:
            await websocket.send_json(event.model_dump(mode="json", exclude_none=True))

            if thread_id in self.connection_metadata:
                self.connection_metadata[thread_id]["last_activity"] = _now()

            return True

        except Exception as e:
            logger.error("Failed to send event", thread_id=thread_id, error=str(e))
            await self.disconnect(thread_id)
            return False

    async def send_error(self, thread_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a thread"""
        await self.send_event(
            thread_id,
            ErrorEvent(
                payload={"message": error_message},
                error_code=error_code,
                thread_id=thread_id
            )
        )

    def get_active_threads(self) -> Set[str]:
        return set(self.active_connections.keys())

    async def disconnect_all(self):
        for thread_id in list(self.active_connections.keys()):
            await self.disconnect(thread_id)

    async def health_check(self, interval: float = 60.0):
        """Periodically disconnect idle connections"""
        while True:
            try:
                now = _now()
                stale = [
                    thread_id
                    for thread_id, metadata in self.connection_metadata.items()
                    if (now - metadata["last_activity"]).total_seconds() > self.stale_after
                ]

                for thread_id in stale:
                    logger.warning("Disconnecting stale connection", thread_id=thread_id)
                    await self.disconnect(thread_id)

            except Exception as e:
                logger.error("Health check error", error=str(e))

            await asyncio.sleep(interval)
