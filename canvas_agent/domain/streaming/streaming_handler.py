from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from ...application.websocket.connection_manager import ConnectionManager
from ..models.events import BaseEvent, EventType, is_terminal

logger = structlog.get_logger(__name__)

EventHandler = Callable[[str, BaseEvent], Awaitable[None]]


class StreamingHandler:
    """Forwards loop events to WebSocket clients and registered handlers"""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        self.connection_manager = connection_manager or ConnectionManager()
        self.event_handlers: Dict[EventType, List[EventHandler]] = {}

    async def stream_run(self, session_id: str, events: AsyncIterator[BaseEvent]) -> Optional[BaseEvent]:
        """Forward every event of a run, returning its terminal event"""

        terminal = None
        async for event in events:
            await self.handle_event(session_id, event)
            if is_terminal(event):
                terminal = event

        logger.info(
            "Run stream finished",
            session_id=session_id,
            outcome=terminal.type.value if terminal else None,
        )
        return terminal

    async def handle_event(self, session_id: str, event: BaseEvent):
        """Send one event to the client, then to custom handlers"""

        logger.debug("Streaming event", session_id=session_id, event_type=event.type.value)
        await self.connection_manager.send_event(session_id, event)
        await self.emit_custom_event(session_id, event)

    def register_event_handler(self, event_type: EventType, handler: EventHandler):
        """Register a custom event handler"""

        self.event_handlers.setdefault(event_type, []).append(handler)

    async def emit_custom_event(self, session_id: str, event: BaseEvent):
        """Emit an event to registered handlers"""

        for handler in self.event_handlers.get(event.type, []):
            try:
                await handler(session_id, event)
            except Exception as e:
                logger.error("Error in event handler",
                             event_type=event.type.value,
                             error=str(e))
