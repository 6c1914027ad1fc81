"""Checkpoint snapshot of a run.

A snapshot carries everything needed to resume: the run record, the budget
with its admitted chunks, tool result records, correction records and the
awareness cache. Round-tripping through JSON reproduces all of them.
"""

import random
import string
import time
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ...models.agent_state import Run, utcnow
from ..context_budget import ContextBudget, ContextBudgetManager, ContextChunk
from ..echo_prevention import CorrectionRecord, EchoPoisoningPrevention
from ..tool_lifecycle import ToolResultLifecycle, ToolResultRecord
from .awareness_cache import AwarenessCache, AwarenessSnapshot


SNAPSHOT_SCHEMA_VERSION = 1

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_session_id(prefix: str = "session") -> str:
    """Session id of the form ``prefix_<time36>_<random>``"""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"{prefix}_{stamp}_{suffix}"


class RunSnapshot(BaseModel):
    """Serializable state of a run"""
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    session_id: str
    saved_at: datetime = Field(default_factory=utcnow)
    run: Run
    budget: ContextBudget
    chunks: List[ContextChunk] = Field(default_factory=list)
    lifecycle: List[ToolResultRecord] = Field(default_factory=list)
    recent_threshold: int
    archive_threshold: int
    corrections: List[CorrectionRecord] = Field(default_factory=list)
    loop_threshold: int
    awareness: Optional[AwarenessSnapshot] = None
    awareness_stale: bool = False
    domain_version: int = 0

    @property
    def iteration(self) -> int:
        return self.run.iteration


def capture_snapshot(
    run: Run,
    budget_manager: ContextBudgetManager,
    lifecycle: ToolResultLifecycle,
    echo_prevention: EchoPoisoningPrevention,
    awareness: AwarenessCache,
) -> RunSnapshot:
    """Copy the run's state into a snapshot"""
    return RunSnapshot(
        session_id=run.session_id,
        run=run.model_copy(deep=True),
        budget=budget_manager.budget,
        chunks=budget_manager.all_chunks(),
        lifecycle=[record.model_copy(deep=True) for record in lifecycle.records],
        recent_threshold=lifecycle.recent_threshold,
        archive_threshold=lifecycle.archive_threshold,
        corrections=[record.model_copy(deep=True) for record in echo_prevention.records],
        loop_threshold=echo_prevention.loop_threshold,
        awareness=awareness.snapshot,
        awareness_stale=awareness.is_stale,
        domain_version=awareness.version,
    )


def restore_budget_manager(snapshot: RunSnapshot) -> ContextBudgetManager:
    return ContextBudgetManager.restore(snapshot.budget, snapshot.chunks)


def restore_lifecycle(snapshot: RunSnapshot) -> ToolResultLifecycle:
    lifecycle = ToolResultLifecycle(snapshot.recent_threshold, snapshot.archive_threshold)
    lifecycle.restore(snapshot.lifecycle)
    return lifecycle


def restore_echo_prevention(snapshot: RunSnapshot) -> EchoPoisoningPrevention:
    echo_prevention = EchoPoisoningPrevention(snapshot.loop_threshold)
    echo_prevention.restore(snapshot.corrections)
    echo_prevention.set_iteration(snapshot.run.iteration)
    return echo_prevention


def restore_awareness(snapshot: RunSnapshot, ttl_seconds: Optional[float] = None) -> AwarenessCache:
    cache = AwarenessCache(ttl_seconds=ttl_seconds)
    cache.restore(snapshot.awareness, snapshot.awareness_stale, snapshot.domain_version)
    return cache


def dump_snapshot(snapshot: RunSnapshot) -> str:
    return snapshot.model_dump_json(indent=2)


def load_snapshot(payload: str) -> RunSnapshot:
    return RunSnapshot.model_validate_json(payload)
