from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, Enum):
    """WebSocket transport message types"""
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"
    CANCEL = "cancel"
    TRANSPORT_ERROR = "transport_error"


class BaseMessage(BaseModel):
    """Base model for transport-level WebSocket messages"""
    type: MessageType
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: Optional[str] = None


class ConnectionEvent(BaseMessage):
    """Connection status event"""
    type: Literal[MessageType.CONNECTION] = MessageType.CONNECTION
    status: Literal["connected", "disconnected"]


class TransportErrorEvent(BaseMessage):
    """Problem with a client message, not with a run"""
    type: Literal[MessageType.TRANSPORT_ERROR] = MessageType.TRANSPORT_ERROR
    message: str
    error_code: Optional[str] = None


class UserMessage(BaseMessage):
    """Start a run for this session"""
    type: Literal[MessageType.USER_MESSAGE] = MessageType.USER_MESSAGE
    content: str = Field(min_length=1)
    resolved_content: Optional[str] = Field(None, description="Task text after alias substitution")
    metadata: Optional[Dict[str, Any]] = None


class CancelRequest(BaseMessage):
    """Cancel the session's active run"""
    type: Literal[MessageType.CANCEL] = MessageType.CANCEL
    reason: str = "Cancelled by user"


ClientMessage = Annotated[Union[UserMessage, CancelRequest], Field(discriminator="type")]

client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(payload: Dict[str, Any]) -> Union[UserMessage, CancelRequest]:
    return client_message_adapter.validate_python(payload)
