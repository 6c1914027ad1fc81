"""Tests for the WebSocket surface and event streaming."""

import pytest
from fastapi.testclient import TestClient

from canvas_agent.application.websocket.connection_manager import ConnectionManager
from canvas_agent.application.websocket.schema.events import CancelRequest, UserMessage, parse_client_message
from canvas_agent.application.websocket.ws_server import create_app
from canvas_agent.domain.models.events import (
    CompleteEvent,
    EventType,
    ThinkingEvent,
    agent_event_adapter,
    parse_event,
)
from canvas_agent.domain.orchestration.core.main_agent import AgentLoop
from canvas_agent.domain.streaming.streaming_handler import StreamingHandler
from canvas_agent.infrastructure.config.settings import AgentSettings

from conftest import FakeAdapter, ScriptedProvider, respond


TERMINAL_TYPES = {"complete", "failed", "timeout", "cancelled"}


def _app(provider):
    adapter = FakeAdapter()
    return create_app(lambda: AgentLoop(adapter, provider, AgentSettings(max_iterations=3)))


def _receive_until(websocket, types):
    messages = []
    while True:
        message = websocket.receive_json()
        messages.append(message)
        if message["type"] in types:
            return messages


def _receive_until_terminal(websocket):
    return _receive_until(websocket, TERMINAL_TYPES)


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------


class TestWebSocket:
    def test_user_message_streams_a_run(self):
        client = TestClient(_app(ScriptedProvider([respond("House drawn")])))

        with client.websocket_connect("/ws/agent/s-ws") as websocket:
            connection = websocket.receive_json()
            assert connection == {**connection, "type": "connection", "status": "connected", "session_id": "s-ws"}

            websocket.send_json({"type": "user_message", "content": "Draw a house"})
            messages = _receive_until_terminal(websocket)

        assert [message["type"] for message in messages] == ["thinking", "context", "complete"]
        assert messages[-1]["summary"] == "House drawn"
        assert all(message["session_id"] == "s-ws" for message in messages)

    def test_invalid_message(self):
        client = TestClient(_app(ScriptedProvider([respond("Done")])))

        with client.websocket_connect("/ws/agent/s-bad") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "user_message", "content": ""})
            error = websocket.receive_json()

        assert error["type"] == "transport_error"
        assert error["error_code"] == "INVALID_MESSAGE"

    def test_non_json_text_keeps_the_socket_open(self):
        client = TestClient(_app(ScriptedProvider([respond("Done")])))

        with client.websocket_connect("/ws/agent/s-garbled") as websocket:
            websocket.receive_json()
            websocket.send_text("draw a house {")
            error = websocket.receive_json()
            websocket.send_json({"type": "cancel"})
            follow_up = websocket.receive_json()

        assert error["type"] == "transport_error"
        assert error["error_code"] == "INVALID_MESSAGE"
        assert follow_up["error_code"] == "NO_ACTIVE_RUN"

    def test_cancel_without_run(self):
        client = TestClient(_app(ScriptedProvider([respond("Done")])))

        with client.websocket_connect("/ws/agent/s-idle") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "cancel"})
            error = websocket.receive_json()

        assert error["error_code"] == "NO_ACTIVE_RUN"

    def test_cancel_active_run(self):
        client = TestClient(_app(ScriptedProvider([respond("Done")], delay=5.0)))

        with client.websocket_connect("/ws/agent/s-cancel") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "user_message", "content": "Draw a house"})
            websocket.send_json({"type": "cancel", "reason": "Stop please"})
            messages = _receive_until_terminal(websocket)

        assert messages[-1]["type"] == "cancelled"
        assert messages[-1]["reason"] == "Stop please"

    def test_second_run_is_rejected_while_busy(self):
        client = TestClient(_app(ScriptedProvider([respond("Done")], delay=5.0)))

        with client.websocket_connect("/ws/agent/s-busy") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "user_message", "content": "Draw a house"})
            websocket.send_json({"type": "user_message", "content": "Draw a barn"})
            error = _receive_until(websocket, {"transport_error"})[-1]
            websocket.send_json({"type": "cancel"})
            messages = _receive_until_terminal(websocket)

        assert error["error_code"] == "RUN_IN_PROGRESS"
        assert messages[-1]["type"] == "cancelled"

    def test_health(self):
        client = TestClient(_app(ScriptedProvider([respond("Done")])))

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["active_connections"] == 0
        assert body["active_runs"] == 0


# ---------------------------------------------------------------------------
# Schemas and streaming
# ---------------------------------------------------------------------------


class TestSchemas:
    def test_parse_client_messages(self):
        assert isinstance(parse_client_message({"type": "user_message", "content": "Draw"}), UserMessage)
        assert isinstance(parse_client_message({"type": "cancel"}), CancelRequest)

    def test_events_round_trip_through_json(self):
        event = CompleteEvent(session_id="s", iteration=2, summary="Done")

        parsed = parse_event(event.model_dump(mode="json"))

        assert isinstance(parsed, CompleteEvent)
        assert parsed.summary == "Done"
        assert agent_event_adapter.validate_python({"type": "thinking"}).type == EventType.THINKING


class TestStreamingHandler:
    @pytest.mark.asyncio
    async def test_stream_run_returns_terminal_and_notifies_handlers(self):
        handler = StreamingHandler(ConnectionManager())
        seen = []

        async def on_complete(session_id, event):
            seen.append((session_id, event.summary))

        async def broken(session_id, event):
            raise RuntimeError("handler bug")

        handler.register_event_handler(EventType.COMPLETE, on_complete)
        handler.register_event_handler(EventType.COMPLETE, broken)

        async def events():
            yield ThinkingEvent(session_id="s")
            yield CompleteEvent(session_id="s", summary="Done")

        terminal = await handler.stream_run("s", events())

        assert terminal.type == EventType.COMPLETE
        assert seen == [("s", "Done")]
