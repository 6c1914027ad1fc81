from typing import Dict, Optional, Set
from datetime import datetime, timezone
import asyncio

from fastapi import WebSocket
from pydantic import BaseModel
import structlog

from .schema.events import ConnectionEvent, TransportErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and message routing"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        now = datetime.now(timezone.utc)
        async with self._lock:
            self.active_connections[session_id] = websocket
            self.session_metadata[session_id] = {
                "connected_at": now,
                "last_activity": now,
                "events_sent": 0,
            }

        await self.send_event(session_id, ConnectionEvent(status="connected", session_id=session_id))

        logger.info("WebSocket connected", session_id=session_id)

    async def disconnect(self, session_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            ws = self.active_connections.pop(session_id, None)
            self.session_metadata.pop(session_id, None)

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("WebSocket already closed", session_id=session_id, error=str(e))

        logger.info("WebSocket disconnected", session_id=session_id)

    async def send_event(self, session_id: str, event: BaseModel) -> bool:
        """Send an event to a specific session"""
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected session", session_id=session_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))
        except Exception as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.disconnect(session_id)
            return False

        metadata = self.session_metadata.get(session_id)
        if metadata is not None:
            metadata["last_activity"] = datetime.now(timezone.utc)
            metadata["events_sent"] += 1
        return True

    async def send_error(self, session_id: str, error_message: str, error_code: Optional[str] = None):
        """Send a transport error to a session"""
        await self.send_event(
            session_id,
            TransportErrorEvent(message=error_message, error_code=error_code, session_id=session_id),
        )

    def get_session_metadata(self, session_id: str) -> Optional[Dict]:
        """Get metadata for a session"""
        return self.session_metadata.get(session_id)

    def get_active_sessions(self) -> Set[str]:
        """Get active session IDs"""
        return set(self.active_connections.keys())
