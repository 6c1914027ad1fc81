import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from ..errors import AdapterProtocolError, OperationCancelled
from ..llm.base_provider import ToolCall
from ..models.agent_state import FailureKind, ToolCallResult
from ..orchestration.core.cancellation import CancellationToken, run_with_deadline
from .action_adapter import ActionAdapter, ActionDefinition, ActionError, ActionResult, ExecuteOptions
from .tool_hooks import HookManager
from .tool_registry import ToolRegistry
from .tool_validator import ToolParameterValidator


logger = structlog.get_logger(__name__)

LocalHandler = Callable[[Dict[str, Any]], Awaitable[ActionResult]]


class ToolExecutor:
    """Runs requested tool calls against the adapter.

    Every call ends in a ToolCallResult. Adapter-reported failures, deadline
    overruns, transport exceptions and cancellations are told apart by
    ``failure_kind``. A response that is not an ActionResult at all raises
    AdapterProtocolError.
    """

    def __init__(
        self,
        adapter: ActionAdapter,
        registry: ToolRegistry,
        timeout: float = 30.0,
        parallel: bool = False,
        validator: Optional[ToolParameterValidator] = None,
        metrics=None,
        hooks: Optional[HookManager] = None,
    ):
        self.adapter = adapter
        self.registry = registry
        self.timeout = timeout
        self.parallel = parallel
        self.validator = validator or ToolParameterValidator()
        self.metrics = metrics
        self.hooks = hooks
        self.local_handlers: Dict[str, LocalHandler] = {}

    def register_local_handler(self, name: str, handler: LocalHandler):
        self.local_handlers[name] = handler

    async def execute_all(
        self,
        calls: List[ToolCall],
        cancel_token: Optional[CancellationToken] = None,
        hook_context: Optional[Dict[str, Any]] = None,
    ) -> List[ToolCallResult]:
        """Execute calls, returning one result per call in request order"""

        if self.parallel and len(calls) > 1:
            return list(await asyncio.gather(
                *(self.execute_call(call, cancel_token, hook_context) for call in calls)
            ))

        results = []
        for call in calls:
            results.append(await self.execute_call(call, cancel_token, hook_context))
        return results

    async def execute_call(
        self,
        call: ToolCall,
        cancel_token: Optional[CancellationToken] = None,
        hook_context: Optional[Dict[str, Any]] = None,
    ) -> ToolCallResult:
        """Execute a single call, running pre and post hooks around dispatch"""

        definition = self.registry.get_tool(call.name)
        if definition is None:
            return self._failure(
                call, FailureKind.UNKNOWN_ACTION, "UNKNOWN_ACTION",
                f"Unknown action '{call.name}'", started=time.monotonic(),
            )

        hook_context = hook_context or {}
        if self.hooks is not None:
            outcome = await self.hooks.trigger_pre_execute(call, **hook_context)
            if outcome.blocked:
                return self._failure(
                    call, FailureKind.BLOCKED, "BLOCKED_BY_HOOK",
                    outcome.reason or f"Action '{call.name}' was blocked", started=time.monotonic(),
                )
            if outcome.modified_input is not None:
                call = call.model_copy(update={"args": outcome.modified_input})

        result = await self._dispatch(call, definition, cancel_token)

        if self.hooks is not None:
            await self.hooks.trigger_post_execute(result, **hook_context)
        return result

    async def _dispatch(
        self,
        call: ToolCall,
        definition: ActionDefinition,
        cancel_token: Optional[CancellationToken],
    ) -> ToolCallResult:
        started = time.monotonic()
        mutating = self.registry.is_mutating(call.name)

        validation = self.validator.validate_tool_call(definition, call.args)
        if not validation.is_valid:
            return self._failure(
                call, FailureKind.VALIDATION, "INVALID_PARAMS",
                "; ".join(validation.errors), started=started,
            )

        if self.registry.is_local(call.name):
            handler = self.local_handlers[call.name]
            raw = await handler(call.args)
        else:
            options = ExecuteOptions(timeout=self.timeout, cancel_token=cancel_token)
            try:
                raw = await run_with_deadline(
                    self.adapter.execute(call.name, call.args, options),
                    self.timeout,
                    cancel_token,
                )
            except asyncio.TimeoutError:
                return self._failure(
                    call, FailureKind.TIMEOUT, "TOOL_TIMEOUT",
                    f"Action '{call.name}' timed out after {self.timeout}s",
                    started=started, mutating=mutating,
                )
            except OperationCancelled as e:
                return self._failure(
                    call, FailureKind.CANCELLED, "TOOL_CANCELLED", str(e),
                    started=started, mutating=mutating,
                )
            except Exception as e:
                logger.warning("Tool transport error", tool=call.name, error=str(e))
                return self._failure(
                    call, FailureKind.TRANSPORT, "TOOL_TRANSPORT_ERROR", str(e),
                    started=started, mutating=mutating,
                )

        result = self._coerce(call.name, raw)
        duration_ms = (time.monotonic() - started) * 1000
        self._record_metrics(call.name, duration_ms, result.success)

        if not result.success:
            error = result.error or ActionError(code="ACTION_FAILED", message="Action reported failure")
            logger.info("Tool reported failure", tool=call.name, code=error.code)
            return ToolCallResult(
                call=call,
                success=False,
                data=result.data,
                error=error,
                failure_kind=FailureKind.ADAPTER,
                mutating=mutating,
                duration_ms=duration_ms,
            )

        logger.debug("Tool executed", tool=call.name, duration_ms=round(duration_ms, 2))
        return ToolCallResult(
            call=call,
            success=True,
            data=result.data,
            mutating=mutating,
            duration_ms=duration_ms,
        )

    def _coerce(self, action: str, raw: Any) -> ActionResult:
        if isinstance(raw, ActionResult):
            return raw
        try:
            return ActionResult.model_validate(raw)
        except ValidationError as e:
            raise AdapterProtocolError(action, raw, original=e) from e

    def _failure(
        self,
        call: ToolCall,
        kind: FailureKind,
        code: str,
        message: str,
        started: float,
        mutating: bool = False,
    ) -> ToolCallResult:
        duration_ms = (time.monotonic() - started) * 1000
        self._record_metrics(call.name, duration_ms, False)
        logger.info("Tool call failed", tool=call.name, failure_kind=kind.value, code=code)
        return ToolCallResult(
            call=call,
            success=False,
            error=ActionError(code=code, message=message, recoverable=True),
            failure_kind=kind,
            mutating=mutating,
            duration_ms=duration_ms,
        )

    def _record_metrics(self, tool: str, duration_ms: float, success: bool):
        if self.metrics is None:
            return
        self.metrics.record_latency("tool_execution", duration_ms, {"tool": tool})
        self.metrics.increment_counter("tool_calls", tags={"tool": tool, "success": str(success).lower()})
