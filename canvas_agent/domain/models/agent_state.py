from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..llm.base_provider import ToolCall
from ..tool.action_adapter import ActionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Run execution status"""
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != RunStatus.RUNNING


class TaskStatus(str, Enum):
    """Plan item status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


OPEN_TASK_STATUSES = {TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}


class Task(BaseModel):
    """An item of the agent's working plan"""
    id: str = Field(default_factory=lambda: f"task_{uuid4().hex[:8]}")
    content: str = Field(description="What the step does")
    status: TaskStatus = Field(default=TaskStatus.PENDING)


class FailureKind(str, Enum):
    """Why a tool call did not succeed"""
    ADAPTER = "adapter"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    CANCELLED = "cancelled"
    VALIDATION = "validation"
    UNKNOWN_ACTION = "unknown_action"
    BLOCKED = "blocked"


class ToolCallResult(BaseModel):
    """Result, or structured failure, for one requested tool call"""
    call: ToolCall
    success: bool
    data: Any = None
    error: Optional[ActionError] = None
    failure_kind: Optional[FailureKind] = None
    mutating: bool = False
    duration_ms: float = 0.0

    @property
    def recoverable(self) -> bool:
        return self.success or self.error is None or self.error.recoverable


class ErrorRecord(BaseModel):
    """An error observed during a run"""
    code: str
    message: str
    iteration: int
    recoverable: bool = True
    timestamp: datetime = Field(default_factory=utcnow)


class IterationRecord(BaseModel):
    """One THINK/ACT/OBSERVE/DECIDE cycle"""
    number: int
    text: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    results: List[ToolCallResult] = Field(default_factory=list)
    generation_error: Optional[ErrorRecord] = None
    corrections: Optional[str] = None

    @property
    def errored(self) -> bool:
        """Generation failed, or every executed call failed"""
        if self.generation_error is not None:
            return True
        return bool(self.results) and not any(result.success for result in self.results)

    @property
    def unrecoverable(self) -> bool:
        if self.generation_error is not None and not self.generation_error.recoverable:
            return True
        return any(not result.recoverable for result in self.results)


class DecisionType(str, Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class Decision(BaseModel):
    """Outcome of the DECIDE phase"""
    type: DecisionType
    summary: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type != DecisionType.CONTINUE


class Run(BaseModel):
    """One task execution"""
    session_id: str
    task: str
    resolved_task: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    iteration: int = 0
    status: RunStatus = Field(default=RunStatus.RUNNING)
    outcome: Optional[Decision] = None
    consecutive_errors: int = 0
    error_count: int = 0
    errors: List[ErrorRecord] = Field(default_factory=list)
    history: List[IterationRecord] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    max_history_entries: int = 50

    @property
    def effective_task(self) -> str:
        return self.resolved_task or self.task

    @property
    def current_record(self) -> Optional[IterationRecord]:
        if self.history and self.history[-1].number == self.iteration:
            return self.history[-1]
        return None

    def start_iteration(self) -> IterationRecord:
        """Advance the counter and open a record for the new iteration"""
        self.iteration += 1
        record = IterationRecord(number=self.iteration)
        self.history.append(record)
        if len(self.history) > self.max_history_entries:
            self.history = self.history[-self.max_history_entries:]
        return record

    def log_error(self, code: str, message: str, recoverable: bool = True) -> ErrorRecord:
        """Log an error against the current iteration, keeping the newest entries only"""
        error = ErrorRecord(code=code, message=message, iteration=self.iteration, recoverable=recoverable)
        self.errors.append(error)
        self.error_count += 1
        if len(self.errors) > self.max_history_entries:
            self.errors = self.errors[-self.max_history_entries:]
        return error

    def finish(self, decision: Decision):
        status = RunStatus(decision.type.value)
        self.status = status
        self.outcome = decision

    def open_tasks(self) -> List[Task]:
        return [task for task in self.tasks if task.status in OPEN_TASK_STATUSES]

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "iteration": self.iteration,
            "consecutive_errors": self.consecutive_errors,
            "errors": self.error_count,
            "open_tasks": len(self.open_tasks()),
            "started_at": self.started_at.isoformat(),
        }
