from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..tool.action_adapter import ActionError
from .agent_state import ErrorRecord, FailureKind, utcnow


class EventType(str, Enum):
    """Loop event types"""
    THINKING = "thinking"
    CONTEXT = "context"
    CORRECTION = "correction"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    CHECKPOINT = "checkpoint"
    ERROR = "error"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


TERMINAL_EVENT_TYPES = {EventType.COMPLETE, EventType.FAILED, EventType.TIMEOUT, EventType.CANCELLED}


class BaseEvent(BaseModel):
    """Base event emitted by the loop"""
    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: Optional[str] = None
    iteration: int = 0


class ThinkingEvent(BaseEvent):
    type: Literal[EventType.THINKING] = EventType.THINKING
    message: str = "Thinking"


class ContextEvent(BaseEvent):
    """Prompt assembled for this iteration"""
    type: Literal[EventType.CONTEXT] = EventType.CONTEXT
    summary: str
    tokens_used: int
    token_budget: int
    awareness_refreshed: bool = False
    domain_version: int = 0
    compression_applied: bool = False
    tokens_reclaimed: int = 0
    tokens_archived: int = 0
    warnings: List[str] = Field(default_factory=list)


class CorrectionEvent(BaseEvent):
    type: Literal[EventType.CORRECTION] = EventType.CORRECTION
    corrections: List[str]


class ReasoningEvent(BaseEvent):
    """Model text accompanying tool calls"""
    type: Literal[EventType.REASONING] = EventType.REASONING
    content: str


class ToolCallEvent(BaseEvent):
    type: Literal[EventType.TOOL_CALL] = EventType.TOOL_CALL
    call_id: str
    tool: str
    input: Dict[str, Any] = Field(default_factory=dict)
    mutating: bool = False


class ToolResultEvent(BaseEvent):
    type: Literal[EventType.TOOL_RESULT] = EventType.TOOL_RESULT
    call_id: str
    tool: str
    success: bool
    data: Any = None
    error: Optional[ActionError] = None
    failure_kind: Optional[FailureKind] = None
    duration_ms: float = 0.0


class CheckpointEvent(BaseEvent):
    type: Literal[EventType.CHECKPOINT] = EventType.CHECKPOINT
    domain_version: int = 0


class ErrorEvent(BaseEvent):
    """Recoverable error, the run continues"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    code: str
    message: str
    recoverable: bool = True


class CompleteEvent(BaseEvent):
    type: Literal[EventType.COMPLETE] = EventType.COMPLETE
    summary: str
    duration_ms: float = 0.0


class FailedEvent(BaseEvent):
    type: Literal[EventType.FAILED] = EventType.FAILED
    reason: str
    errors: List[ErrorRecord] = Field(default_factory=list)


class TimeoutEvent(BaseEvent):
    type: Literal[EventType.TIMEOUT] = EventType.TIMEOUT
    iterations: int
    max_iterations: int


class CancelledEvent(BaseEvent):
    type: Literal[EventType.CANCELLED] = EventType.CANCELLED
    reason: str


AgentEvent = Annotated[
    Union[
        ThinkingEvent,
        ContextEvent,
        CorrectionEvent,
        ReasoningEvent,
        ToolCallEvent,
        ToolResultEvent,
        CheckpointEvent,
        ErrorEvent,
        CompleteEvent,
        FailedEvent,
        TimeoutEvent,
        CancelledEvent,
    ],
    Field(discriminator="type"),
]

agent_event_adapter = TypeAdapter(AgentEvent)


def is_terminal(event: BaseEvent) -> bool:
    return event.type in TERMINAL_EVENT_TYPES


def parse_event(payload: Dict[str, Any]) -> BaseEvent:
    """Rebuild a typed event from its JSON form"""
    return agent_event_adapter.validate_python(payload)
