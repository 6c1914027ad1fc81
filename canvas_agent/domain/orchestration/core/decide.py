from typing import Optional

from ...llm.base_provider import GenerateResult
from ...models.agent_state import Decision, DecisionType, IterationRecord, Run


DEFAULT_COMPLETION_SUMMARY = "Task completed successfully"


def decide_after_generation(generation: Optional[GenerateResult]) -> Optional[Decision]:
    """Pre-ACT decision: a response without tool calls completes the run"""

    if generation is None or generation.tool_calls:
        return None

    summary = (generation.text or "").strip() or DEFAULT_COMPLETION_SUMMARY
    return Decision(type=DecisionType.COMPLETE, summary=summary)


def decide(
    run: Run,
    record: Optional[IterationRecord],
    max_iterations: int,
    max_errors: int,
    cancelled: bool = False,
    cancel_reason: Optional[str] = None,
    generation: Optional[GenerateResult] = None,
) -> Decision:
    """Choose what happens after an iteration.

    Checked in order: cancellation, completion, failure, iteration ceiling.
    """

    if cancelled:
        return Decision(type=DecisionType.CANCELLED, reason=cancel_reason or "Cancelled by caller")

    completion = decide_after_generation(generation)
    if completion is not None:
        return completion

    if record is not None and record.unrecoverable:
        return Decision(
            type=DecisionType.FAILED,
            reason=f"Iteration {record.number} failed with an unrecoverable error",
        )

    if run.consecutive_errors > max_errors:
        return Decision(
            type=DecisionType.FAILED,
            reason=f"Too many consecutive errors ({run.consecutive_errors} > {max_errors})",
        )

    if run.iteration >= max_iterations:
        return Decision(
            type=DecisionType.TIMEOUT,
            reason=f"Reached maximum iterations ({max_iterations})",
        )

    return Decision(type=DecisionType.CONTINUE)
