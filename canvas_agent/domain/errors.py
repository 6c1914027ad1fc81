"""Structured error types for the agent loop.

Most failures inside an iteration never surface as exceptions: generation
and tool errors are caught by the phase that produced them and turned into
events. The types here cover what is left:

    from canvas_agent.domain.errors import AdapterProtocolError

    try:
        result = ActionResult.model_validate(raw)
    except ValidationError as exc:
        # The adapter broke its contract, the run cannot continue safely
        raise AdapterProtocolError(action, raw) from exc
"""

from typing import Any, Optional


class AgentError(Exception):
    """Base for all canvas_agent errors."""

    def __init__(self, message: str, original: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.original = original


class BudgetConfigurationError(AgentError):
    """Category percentages do not sum to 100 or a category is malformed."""


class AdapterProtocolError(AgentError):
    """Adapter returned something that is not an ActionResult."""

    def __init__(self, action: str, payload: Any, original: Optional[Exception] = None) -> None:
        super().__init__(
            f"Adapter returned a malformed result for '{action}': {type(payload).__name__}",
            original=original,
        )
        self.action = action
        self.payload = payload


class CheckpointError(AgentError):
    """Checkpoint could not be written or read."""


class OperationCancelled(AgentError):
    """A suspended call was abandoned because the run was cancelled."""

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(reason or "Operation cancelled")
        self.reason = reason


class ProviderError(AgentError):
    """LLM provider call failed.

    ``recoverable`` tells the loop whether retrying on the next iteration
    makes sense. Authentication or quota failures should set it to False.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "GENERATION_ERROR",
        recoverable: bool = True,
        original: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, original=original)
        self.code = code
        self.recoverable = recoverable


class RunInProgressError(AgentError):
    """A loop bound to one shared adapter was asked to start a second run."""
