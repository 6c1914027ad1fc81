"""Shared fakes for the agent loop tests."""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from canvas_agent.domain.llm.base_provider import GenerateRequest, GenerateResult, LLMProvider, ToolCall
from canvas_agent.domain.models.events import BaseEvent, is_terminal
from canvas_agent.domain.tool.action_adapter import (
    ActionAdapter,
    ActionDefinition,
    ActionResult,
    AwarenessContext,
    AwarenessOptions,
    ExecuteOptions,
    StateSnapshot,
)
from canvas_agent.infrastructure.config.settings import AgentSettings


CANVAS_ACTIONS = [
    ActionDefinition(
        name="create_element",
        description="Add an element to the canvas",
        mutates=True,
        category="edit",
        input_schema={
            "type": "object",
            "properties": {"kind": {"type": "string"}, "label": {"type": "string"}},
            "required": ["kind"],
        },
    ),
    ActionDefinition(
        name="delete_element",
        description="Remove an element",
        mutates=True,
        category="edit",
        input_schema={
            "type": "object",
            "properties": {"id": {"type": "string"}},
            "required": ["id"],
        },
    ),
    ActionDefinition(
        name="list_elements",
        description="List elements on the canvas",
        category="read",
    ),
]

Response = Union[ActionResult, Any, Callable[[Dict[str, Any]], Any]]


class FakeAdapter(ActionAdapter):
    """In-memory canvas with scripted responses per action"""

    def __init__(
        self,
        responses: Optional[Dict[str, Response]] = None,
        connect_ok: bool = True,
        delay: float = 0.0,
        actions: Optional[List[ActionDefinition]] = None,
    ):
        self.responses = responses or {}
        self.actions = list(actions or CANVAS_ACTIONS)
        self.connect_ok = connect_ok
        self.delay = delay
        self.elements: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.awareness_calls = 0
        self.connected = False
        self.disconnected = False

    async def connect(self) -> bool:
        self.connected = True
        return self.connect_ok

    async def disconnect(self):
        self.disconnected = True

    async def execute(self, action: str, params: Dict[str, Any], options: ExecuteOptions) -> ActionResult:
        self.calls.append((action, params))
        if self.delay:
            await asyncio.sleep(self.delay)

        response = self.responses.get(action)
        if callable(response):
            response = response(params)
        if response is not None:
            return response

        if action == "create_element":
            element = {"id": f"el_{len(self.elements) + 1}", **params}
            self.elements.append(element)
            return ActionResult(success=True, data=element)
        return ActionResult(success=True, data={"elements": list(self.elements)})

    async def get_awareness(self, options: AwarenessOptions) -> AwarenessContext:
        self.awareness_calls += 1
        return AwarenessContext(
            summary=f"Canvas with {len(self.elements)} elements",
            skeleton=[element["id"] for element in self.elements],
        )

    async def get_state(self, options: Optional[Dict[str, Any]] = None) -> StateSnapshot:
        return StateSnapshot(version=len(self.elements), data={"elements": list(self.elements)})

    def available_actions(self) -> List[ActionDefinition]:
        return list(self.actions)


class ScriptedProvider(LLMProvider):
    """Plays back results in order, repeating the last one when exhausted.

    An exception in the script is raised instead of returned.
    """

    name = "scripted"

    def __init__(self, script: List[Union[GenerateResult, Exception]], delay: float = 0.0):
        self.script = list(script)
        self.delay = delay
        self.requests: List[GenerateRequest] = []

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        index = min(len(self.requests), len(self.script)) - 1
        step = self.script[index]
        if isinstance(step, Exception):
            raise step
        return step

    def message(self, index: int = -1) -> str:
        return self.requests[index].message_history[0].content


def call(name: str, **args: Any) -> ToolCall:
    return ToolCall(name=name, args=args)


def respond(text: Optional[str] = None, *calls: ToolCall) -> GenerateResult:
    return GenerateResult(text=text, tool_calls=list(calls))


async def collect(events) -> List[BaseEvent]:
    """Drain an event stream, checking that it ends with its only terminal event"""
    collected = [event async for event in events]
    terminals = [event for event in collected if is_terminal(event)]
    assert len(terminals) == 1, [event.type.value for event in collected]
    assert collected[-1] is terminals[0]
    return collected


def of_type(events: List[BaseEvent], event_type) -> List[BaseEvent]:
    return [event for event in events if event.type == event_type]


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def settings():
    return AgentSettings(max_iterations=5, tool_timeout=1.0, generation_timeout=1.0)
