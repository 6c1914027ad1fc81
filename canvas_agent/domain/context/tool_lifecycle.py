"""Ageing of recorded tool results.

A result is shown in full while it is recent, as a one-line summary once it
is archived, and only counted once it is evicted. The stage depends on
nothing but how many iterations ago the result was recorded, and it never
moves backwards.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from .tokens import estimate_payload_tokens, estimate_tokens, render_payload


logger = structlog.get_logger(__name__)

DEFAULT_RECENT_THRESHOLD = 1
DEFAULT_ARCHIVE_THRESHOLD = 5
SUMMARY_DETAIL_CHARS = 80
RECENT_OUTPUT_CHARS = 2000


class LifecycleStage(str, Enum):
    """Lifecycle stage of a tool result"""
    RECENT = "recent"
    ARCHIVED = "archived"
    EVICTED = "evicted"

    @property
    def rank(self) -> int:
        return list(LifecycleStage).index(self)


def stage_for_age(
    age: int,
    recent_threshold: int = DEFAULT_RECENT_THRESHOLD,
    archive_threshold: int = DEFAULT_ARCHIVE_THRESHOLD,
) -> LifecycleStage:
    """Stage of a result recorded ``age`` iterations ago"""
    if age <= recent_threshold:
        return LifecycleStage.RECENT
    if age <= archive_threshold:
        return LifecycleStage.ARCHIVED
    return LifecycleStage.EVICTED


class ToolResultRecord(BaseModel):
    """A tool call and its outcome as remembered by the loop"""
    id: str = Field(default_factory=lambda: uuid4().hex)
    tool_name: str
    input: Optional[Dict[str, Any]] = None
    output: Any = None
    error: Optional[str] = None
    iteration: int
    success: bool
    stage: LifecycleStage = LifecycleStage.RECENT
    tokens: int = 0
    summary: Optional[str] = None

    @property
    def status_label(self) -> str:
        return "ok" if self.success else "failed"

    def placeholder(self) -> str:
        return f"[{self.tool_name}: {self.status_label}]"

    def full_text(self) -> str:
        body = render_payload(self.output) if self.success else (self.error or "unknown error")
        if len(body) > RECENT_OUTPUT_CHARS:
            body = body[:RECENT_OUTPUT_CHARS] + "..."
        return f"{self.tool_name}({render_payload(self.input or {})}) -> {self.status_label}: {body}"


class AgeingReport(BaseModel):
    """What one ageing pass changed"""
    iteration: int
    archived: List[str] = Field(default_factory=list)
    evicted: List[str] = Field(default_factory=list)
    tokens_archived: int = 0
    tokens_evicted: int = 0

    @property
    def tokens_reclaimed(self) -> int:
        """Tokens freed by eviction"""
        return self.tokens_evicted

    @property
    def tokens_saved(self) -> int:
        return self.tokens_archived + self.tokens_evicted


def _summarize(record: ToolResultRecord) -> str:
    if record.success:
        detail = render_payload(record.output)
        if isinstance(record.output, (list, tuple)):
            detail = f"{len(record.output)} items"
        elif isinstance(record.output, dict):
            detail = "keys: " + ", ".join(list(record.output)[:5])
    else:
        detail = record.error or "unknown error"

    detail = " ".join(detail.split())[:SUMMARY_DETAIL_CHARS] or "-"
    return f"[{record.tool_name}: {record.status_label} - {detail}]"


class ToolResultLifecycle:
    """Records tool results and ages them out of the prompt"""

    def __init__(
        self,
        recent_threshold: int = DEFAULT_RECENT_THRESHOLD,
        archive_threshold: int = DEFAULT_ARCHIVE_THRESHOLD,
    ):
        if recent_threshold < 0 or archive_threshold < recent_threshold:
            raise ValueError(
                f"Invalid lifecycle thresholds: recent={recent_threshold}, archive={archive_threshold}"
            )
        self.recent_threshold = recent_threshold
        self.archive_threshold = archive_threshold
        self._records: List[ToolResultRecord] = []

    @property
    def records(self) -> List[ToolResultRecord]:
        return list(self._records)

    def restore(self, records: List[ToolResultRecord]):
        """Replace all records, used when resuming from a checkpoint"""
        self._records = [record.model_copy(deep=True) for record in records]

    def add_result(
        self,
        tool_name: str,
        input: Optional[Dict[str, Any]],
        output: Any,
        iteration: int,
        success: bool,
        error: Optional[str] = None,
    ) -> ToolResultRecord:
        """Record a fresh result at full detail"""

        record = ToolResultRecord(
            tool_name=tool_name,
            input=input or {},
            output=output,
            error=error,
            iteration=iteration,
            success=success,
        )
        record.tokens = estimate_payload_tokens(record.full_text())
        self._records.append(record)
        return record

    def get(self, record_id: str) -> Optional[ToolResultRecord]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def by_stage(self, stage: LifecycleStage) -> List[ToolResultRecord]:
        return [record for record in self._records if record.stage == stage]

    @property
    def total_tokens(self) -> int:
        return sum(record.tokens for record in self._records)

    def age_results(self, current_iteration: int) -> AgeingReport:
        """Move every record to the stage its age calls for"""

        report = AgeingReport(iteration=current_iteration)

        for record in self._records:
            age = current_iteration - record.iteration
            target = stage_for_age(age, self.recent_threshold, self.archive_threshold)
            if target.rank <= record.stage.rank:
                continue

            before = record.tokens
            if target == LifecycleStage.ARCHIVED:
                record.summary = _summarize(record)
                record.tokens = estimate_tokens(record.summary)
                record.stage = LifecycleStage.ARCHIVED
                report.archived.append(record.id)
                report.tokens_archived += max(0, before - record.tokens)
            else:
                record.summary = None
                record.input = None
                record.output = None
                record.error = None
                record.tokens = 0
                record.stage = LifecycleStage.EVICTED
                report.evicted.append(record.id)
                report.tokens_evicted += before

        if report.archived or report.evicted:
            logger.debug(
                "Tool results aged",
                iteration=current_iteration,
                archived=len(report.archived),
                evicted=len(report.evicted),
                tokens_archived=report.tokens_archived,
                tokens_evicted=report.tokens_evicted,
            )

        return report

    def format_for_context(self) -> str:
        """Render results for the history section of the prompt"""

        lines = []
        evicted = len(self.by_stage(LifecycleStage.EVICTED))
        if evicted:
            lines.append(f"({evicted} older tool results evicted)")

        for record in self._records:
            if record.stage == LifecycleStage.RECENT:
                lines.append(f"- [iteration {record.iteration}] {record.full_text()}")
            elif record.stage == LifecycleStage.ARCHIVED:
                lines.append(f"- [iteration {record.iteration}] {record.summary}")

        return "\n".join(lines)
