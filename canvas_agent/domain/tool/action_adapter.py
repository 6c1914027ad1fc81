from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..orchestration.core.cancellation import CancellationToken


class ActionDefinition(BaseModel):
    """Static description of an action the adapter can execute"""
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object"})
    mutates: bool = Field(default=False, description="Whether the action changes domain state")
    category: str = "general"
    reference_fields: List[str] = Field(
        default_factory=list,
        description="Input fields whose values name existing domain items",
    )


class ActionError(BaseModel):
    """Structured failure reported for an action"""
    code: str
    message: str
    recoverable: bool = True


class ActionResult(BaseModel):
    """Outcome of one adapter call"""
    success: bool
    data: Any = None
    error: Optional[ActionError] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecuteOptions(BaseModel):
    """Per-call options handed to the adapter"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    timeout: Optional[float] = None
    cancel_token: Optional[CancellationToken] = None


class AwarenessOptions(BaseModel):
    include_skeleton: bool = True
    include_relevant: bool = True
    max_tokens: Optional[int] = None
    context_hint: Optional[str] = Field(None, description="Task text used to pick relevant items")


class AwarenessContext(BaseModel):
    """Domain awareness as returned by the adapter"""
    summary: str
    skeleton: Optional[List[Any]] = None
    relevant: Optional[List[Any]] = None
    tokens_used: int = 0


class StateSnapshot(BaseModel):
    """Raw domain state as returned by the adapter"""
    version: Optional[int] = None
    summary: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    tokens_used: int = 0


class ActionAdapter(ABC):
    """Bridge between the loop and the external stateful domain"""

    @abstractmethod
    async def connect(self) -> bool:
        """Open the connection, returning False when the domain is unreachable"""
        pass

    @abstractmethod
    async def disconnect(self):
        """Close the connection"""
        pass

    @abstractmethod
    async def execute(self, action: str, params: Dict[str, Any], options: ExecuteOptions) -> ActionResult:
        """Execute one action"""
        pass

    @abstractmethod
    async def get_awareness(self, options: AwarenessOptions) -> AwarenessContext:
        """Fetch a prompt-sized view of the domain"""
        pass

    @abstractmethod
    async def get_state(self, options: Optional[Dict[str, Any]] = None) -> StateSnapshot:
        """Fetch raw domain state"""
        pass

    @abstractmethod
    def available_actions(self) -> List[ActionDefinition]:
        """Static action catalog"""
        pass

    def is_mutating(self, action: str) -> bool:
        """Whether ``action`` is declared as changing domain state"""
        for definition in self.available_actions():
            if definition.name == action:
                return definition.mutates
        return False
