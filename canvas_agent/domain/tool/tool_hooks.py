import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..llm.base_provider import ToolCall
from ..models.agent_state import ToolCallResult

logger = structlog.get_logger(__name__)


class HookType(str, Enum):
    PRE_TOOL_USE = "pre_tool_use"
    POST_TOOL_USE = "post_tool_use"
    ERROR = "error"


class HookContext(BaseModel):
    """What a hook handler gets to see"""
    model_config = ConfigDict(frozen=True)

    hook_type: HookType
    call: Optional[ToolCall] = None
    result: Optional[ToolCallResult] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    session_id: Optional[str] = None
    iteration: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HookResult(BaseModel):
    """Returned by pre-tool-use handlers to block a call or rewrite its input"""
    proceed: bool = True
    reason: Optional[str] = None
    modified_input: Optional[Dict[str, Any]] = None


class HookOutcome(BaseModel):
    blocked: bool = False
    reason: Optional[str] = None
    modified_input: Optional[Dict[str, Any]] = None


HookHandler = Callable[[HookContext], Union[Optional[HookResult], Awaitable[Optional[HookResult]]]]


class HookManager:
    """Registry of handlers invoked around tool execution and on errors.

    Handlers may be plain functions or coroutines. A handler that raises is
    logged and skipped; only an explicit ``HookResult(proceed=False)`` blocks
    a call.
    """

    def __init__(self):
        self.handlers: Dict[HookType, List[HookHandler]] = {}

    def register(self, hook_type: HookType, handler: HookHandler) -> Callable[[], None]:
        """Register a handler, returning a function that removes it again"""

        self.handlers.setdefault(hook_type, []).append(handler)

        def unregister():
            handlers = self.handlers.get(hook_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unregister

    def on_pre_tool_use(self, handler: HookHandler) -> Callable[[], None]:
        return self.register(HookType.PRE_TOOL_USE, handler)

    def on_post_tool_use(self, handler: HookHandler) -> Callable[[], None]:
        return self.register(HookType.POST_TOOL_USE, handler)

    def on_error(self, handler: HookHandler) -> Callable[[], None]:
        return self.register(HookType.ERROR, handler)

    def has_handlers(self, hook_type: HookType) -> bool:
        return bool(self.handlers.get(hook_type))

    def clear(self, hook_type: Optional[HookType] = None):
        if hook_type is None:
            self.handlers.clear()
        else:
            self.handlers.pop(hook_type, None)

    async def trigger(self, context: HookContext) -> HookOutcome:
        """Run every handler for the context's hook type in registration order"""

        outcome = HookOutcome()
        for handler in list(self.handlers.get(context.hook_type, [])):
            try:
                result = handler(context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                logger.error("Error in hook handler", hook_type=context.hook_type.value, error=str(e))
                continue

            if not isinstance(result, HookResult):
                continue
            if not result.proceed:
                logger.info("Hook blocked operation", hook_type=context.hook_type.value, reason=result.reason)
                return HookOutcome(blocked=True, reason=result.reason)
            if result.modified_input is not None:
                outcome.modified_input = result.modified_input

        return outcome

    async def trigger_pre_execute(self, call: ToolCall, **context: Any) -> HookOutcome:
        return await self.trigger(HookContext(hook_type=HookType.PRE_TOOL_USE, call=call, **context))

    async def trigger_post_execute(self, result: ToolCallResult, **context: Any) -> HookOutcome:
        return await self.trigger(
            HookContext(hook_type=HookType.POST_TOOL_USE, call=result.call, result=result, **context)
        )

    async def trigger_error(self, code: str, message: str, **context: Any) -> HookOutcome:
        return await self.trigger(HookContext(hook_type=HookType.ERROR, error_code=code, error=message, **context))
