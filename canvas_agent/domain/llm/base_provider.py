from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from uuid import uuid4

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, ConfigDict, Field

from ..tool.action_adapter import ActionDefinition


class ToolCall(BaseModel):
    """Action requested by the model"""
    id: str = Field(default_factory=lambda: f"call_{uuid4().hex[:12]}")
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class GenerateRequest(BaseModel):
    """Everything the provider needs for one generation"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str
    system_prompt: str
    message_history: List[BaseMessage] = Field(default_factory=list)
    tool_catalog: List[ActionDefinition] = Field(default_factory=list)
    max_tokens: int = 4096
    temperature: float = 0.7
    tool_choice: Optional[str] = None


class GenerateResult(BaseModel):
    """Model response with any requested tool calls"""
    text: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str = "stop"


class LLMProvider(ABC):
    """Black-box language model client"""

    name: str = "provider"

    @abstractmethod
    async def generate(self, request: GenerateRequest) -> GenerateResult:
        """Generate a response; raise ProviderError on failure"""
        pass

    def get_info(self) -> Dict[str, Any]:
        return {"name": self.name}
