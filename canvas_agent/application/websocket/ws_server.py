from typing import Callable, Dict, Optional
import asyncio
import json
from datetime import datetime, timezone

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
import structlog
import uvicorn

from .connection_manager import ConnectionManager
from .schema.events import CancelRequest, UserMessage, parse_client_message
from ...domain.orchestration.core.cancellation import CancellationToken
from ...domain.orchestration.core.main_agent import AgentLoop
from ...domain.streaming.streaming_handler import StreamingHandler
from ...infrastructure.config.settings import AgentSettings
from ...infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)

LoopFactory = Callable[[], AgentLoop]


class ActiveRun:
    """A run streaming to a connected session"""

    def __init__(self, task: asyncio.Task, cancel_token: CancellationToken):
        self.task = task
        self.cancel_token = cancel_token
        self.started_at = datetime.now(timezone.utc)

    @property
    def running(self) -> bool:
        return not self.task.done()


def create_app(
    loop_factory: LoopFactory,
    connection_manager: Optional[ConnectionManager] = None,
    streaming_handler: Optional[StreamingHandler] = None,
) -> FastAPI:
    """Build the WebSocket app; ``loop_factory`` supplies an AgentLoop per run"""

    app = FastAPI(title="Canvas Agent WebSocket Server")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    connections = connection_manager or ConnectionManager()
    streaming = streaming_handler or StreamingHandler(connections)
    active_runs: Dict[str, ActiveRun] = {}

    app.state.connection_manager = connections
    app.state.streaming_handler = streaming
    app.state.active_runs = active_runs

    async def start_run(session_id: str, message: UserMessage):
        """Start a run and stream its events in the background"""

        current = active_runs.get(session_id)
        if current is not None and current.running:
            await connections.send_error(session_id, "A run is already in progress", "RUN_IN_PROGRESS")
            return

        cancel_token = CancellationToken()
        loop = loop_factory()
        events = loop.run(
            message.content,
            session_id,
            resolved_task=message.resolved_content,
            cancel_token=cancel_token,
        )
        task = asyncio.create_task(streaming.stream_run(session_id, events))
        active_runs[session_id] = ActiveRun(task, cancel_token)

        logger.info("Run dispatched", session_id=session_id)

    async def cancel_run(session_id: str, reason: str):
        current = active_runs.get(session_id)
        if current is None or not current.running:
            await connections.send_error(session_id, "No active run to cancel", "NO_ACTIVE_RUN")
            return
        current.cancel_token.cancel(reason)
        logger.info("Run cancellation requested", session_id=session_id, reason=reason)

    @app.websocket("/ws/agent/{session_id}")
    async def agent_websocket(websocket: WebSocket, session_id: str):
        """Main WebSocket endpoint for agent interaction"""

        await connections.connect(websocket, session_id)

        try:
            while True:
                text = await websocket.receive_text()

                try:
                    data = json.loads(text)
                except json.JSONDecodeError as e:
                    logger.warning("Malformed client message", session_id=session_id, error=str(e))
                    await connections.send_error(session_id, f"Invalid message: {e.msg}", "INVALID_MESSAGE")
                    continue

                try:
                    message = parse_client_message(data)
                except ValidationError as e:
                    logger.warning("Invalid client message", session_id=session_id, error=str(e))
                    await connections.send_error(session_id, f"Invalid message: {e.errors()[0]['msg']}", "INVALID_MESSAGE")
                    continue

                if isinstance(message, UserMessage):
                    await start_run(session_id, message)
                elif isinstance(message, CancelRequest):
                    await cancel_run(session_id, message.reason)

        except WebSocketDisconnect:
            logger.info("Client disconnected", session_id=session_id)
        finally:
            current = active_runs.pop(session_id, None)
            if current is not None and current.running:
                current.cancel_token.cancel("Client disconnected")
                await current.task
            await connections.disconnect(session_id)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_connections": len(connections.active_connections),
            "active_runs": sum(1 for run in active_runs.values() if run.running),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def serve(
    loop_factory: LoopFactory,
    host: str = "0.0.0.0",
    port: int = 8000,
    settings: Optional[AgentSettings] = None,
):
    """Run the WebSocket server under uvicorn"""

    settings = settings or AgentSettings.from_env()
    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(create_app(loop_factory), host=host, port=port, log_level=settings.log_level.lower())
