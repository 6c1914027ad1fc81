from typing import Any, List, Optional

import structlog
from pydantic import BaseModel

from ..models.agent_state import Run
from .context_budget import BuiltContext, ContextBudgetManager, ContextCategory, create_chunk
from .state.awareness_cache import AwarenessSnapshot
from .tokens import render_payload
from .tool_lifecycle import ToolResultLifecycle

logger = structlog.get_logger(__name__)

NOTE_HISTORY_ENTRIES = 5
NOTE_CHARS = 100
SKELETON_ITEMS = 50

# Categories that travel outside the user message
_OUT_OF_BAND = (ContextCategory.SYSTEM_PROMPT, ContextCategory.TOOLS, ContextCategory.FREE)


class PromptContext(BaseModel):
    """Prompt assembled for one THINK phase"""
    system_prompt: str
    message: str
    built: BuiltContext

    @property
    def tokens_used(self) -> int:
        return self.built.total_tokens

    @property
    def warnings(self) -> List[str]:
        return self.built.warnings


def _render_items(items: List[Any], limit: int) -> List[str]:
    lines = [f"- {render_payload(item)}" for item in items[:limit]]
    if len(items) > limit:
        lines.append(f"- ... ({len(items) - limit} more)")
    return lines


class ContextManager:
    """Assembles the outbound prompt from budgeted context chunks"""

    def __init__(self, budget_manager: ContextBudgetManager, skills: Optional[str] = None):
        self.budget_manager = budget_manager
        self.skills = skills

    def build_context(
        self,
        run: Run,
        system_prompt: str,
        tool_catalog: str,
        awareness: Optional[AwarenessSnapshot],
        lifecycle: ToolResultLifecycle,
        corrections: Optional[str] = None,
    ) -> PromptContext:
        """Build this iteration's prompt within the token budget"""

        manager = self.budget_manager
        manager.clear_warnings()

        # Required content, never dropped
        manager.ensure(create_chunk(
            ContextCategory.SYSTEM_PROMPT, system_prompt,
            chunk_id="system_prompt", compressible=False, priority=100,
        ))
        manager.ensure(create_chunk(ContextCategory.TOOLS, tool_catalog, chunk_id="tools", priority=100))
        manager.ensure(create_chunk(
            ContextCategory.DOMAIN_STATE, self.format_domain_state(awareness), chunk_id="domain_state",
        ))
        manager.ensure(create_chunk(ContextCategory.TASK, self.format_task(run), chunk_id="task", priority=100))

        # Corrections are shown once, then dropped
        manager.remove("corrections")
        if corrections:
            manager.ensure(create_chunk(
                ContextCategory.CORRECTIONS, corrections, chunk_id="corrections", priority=100,
            ))

        # Optional content, compressed or skipped under pressure
        manager.remove("working_set")
        if awareness and awareness.relevant:
            lines = ["## Relevant Items"] + _render_items(awareness.relevant, SKELETON_ITEMS)
            manager.add(create_chunk(ContextCategory.WORKING_SET, "\n".join(lines), chunk_id="working_set"))

        if self.skills:
            manager.add(create_chunk(ContextCategory.SKILLS, self.skills, chunk_id="skills"))

        manager.remove("history")
        history = self.format_history(run, lifecycle)
        if history:
            manager.add(create_chunk(ContextCategory.HISTORY, history, chunk_id="history"))

        manager.rebalance()
        built = manager.build()

        logger.debug(
            "Context built",
            session_id=run.session_id,
            iteration=run.iteration,
            tokens=built.total_tokens,
            compressed=built.compression_applied,
            warnings=len(built.warnings),
        )

        return PromptContext(
            system_prompt=built.content_for(ContextCategory.SYSTEM_PROMPT),
            message=built.render(exclude=_OUT_OF_BAND),
            built=built,
        )

    def format_domain_state(self, awareness: Optional[AwarenessSnapshot]) -> str:
        """Current domain summary plus its skeleton"""

        if awareness is None:
            return "## Current State\nNo domain state available yet."

        lines = ["## Current State", awareness.summary]
        if awareness.skeleton:
            lines.append("")
            lines.append("Structure:")
            lines.extend(_render_items(awareness.skeleton, SKELETON_ITEMS))
        return "\n".join(lines)

    def format_task(self, run: Run) -> str:
        """Task statement and the working plan"""

        lines = ["## Task", run.effective_task]
        if run.tasks:
            lines.append("")
            lines.append("### Plan")
            for task in run.tasks:
                lines.append(f"- [{task.status.value}] {task.content}")
        return "\n".join(lines)

    def format_history(self, run: Run, lifecycle: ToolResultLifecycle) -> str:
        """Recent model notes and tool results"""

        notes = []
        for record in run.history[-NOTE_HISTORY_ENTRIES:]:
            if record.number >= run.iteration or not record.text:
                continue
            text = " ".join(record.text.split())
            if len(text) > NOTE_CHARS:
                text = text[:NOTE_CHARS] + "..."
            notes.append(f"- [iteration {record.number}] note: {text}")

        results = lifecycle.format_for_context()
        if not notes and not results:
            return ""

        lines = ["## Recent History"]
        lines.extend(notes)
        if results:
            lines.append(results)
        return "\n".join(lines)
