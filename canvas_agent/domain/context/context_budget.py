"""Token budget allocation and tiered compression for prompt context.

The budget splits a fixed token ceiling across named categories. Chunks of
text are admitted into a category only while they fit its allowance,
compressing through ``full -> summary -> minimal -> count-only`` when they
do not. ``rebalance`` squeezes the cheapest categories first when the
total ends up above the ceiling.
"""

import math
from enum import Enum
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..errors import BudgetConfigurationError
from . import compressors
from .tokens import estimate_tokens


logger = structlog.get_logger(__name__)

DEFAULT_TOTAL_TOKENS = 8000


class CompressionLevel(str, Enum):
    """Compression levels, ordered from least to most compressed"""
    FULL = "full"
    SUMMARY = "summary"
    MINIMAL = "minimal"
    COUNT_ONLY = "count-only"

    @property
    def rank(self) -> int:
        return COMPRESSION_ORDER.index(self)


COMPRESSION_ORDER: List[CompressionLevel] = [
    CompressionLevel.FULL,
    CompressionLevel.SUMMARY,
    CompressionLevel.MINIMAL,
    CompressionLevel.COUNT_ONLY,
]


def next_level(level: CompressionLevel) -> Optional[CompressionLevel]:
    """Next stronger compression level, None at the floor"""
    if level.rank + 1 >= len(COMPRESSION_ORDER):
        return None
    return COMPRESSION_ORDER[level.rank + 1]


class ContextCategory(str, Enum):
    """Built-in context categories"""
    SYSTEM_PROMPT = "system_prompt"
    TOOLS = "tools"
    DOMAIN_STATE = "domain_state"
    TASK = "task"
    CORRECTIONS = "corrections"
    WORKING_SET = "working_set"
    SKILLS = "skills"
    HISTORY = "history"
    FREE = "free"


def category_key(category) -> str:
    """Plain string key for a category given as a name or a ContextCategory"""
    if isinstance(category, Enum):
        return category.value
    return category


class CategorySpec(BaseModel):
    """Requested share of the budget for one category"""
    percentage: float = Field(ge=0, le=100)
    priority: int = Field(ge=0, le=100, description="Higher is cut last")
    required: bool = False


DEFAULT_CATEGORIES: Dict[str, CategorySpec] = {
    ContextCategory.SYSTEM_PROMPT.value: CategorySpec(percentage=10, priority=100, required=True),
    ContextCategory.TOOLS.value: CategorySpec(percentage=10, priority=95, required=True),
    ContextCategory.DOMAIN_STATE.value: CategorySpec(percentage=15, priority=90, required=True),
    ContextCategory.TASK.value: CategorySpec(percentage=10, priority=85, required=True),
    ContextCategory.CORRECTIONS.value: CategorySpec(percentage=5, priority=80),
    ContextCategory.WORKING_SET.value: CategorySpec(percentage=10, priority=70),
    ContextCategory.SKILLS.value: CategorySpec(percentage=10, priority=60),
    ContextCategory.HISTORY.value: CategorySpec(percentage=20, priority=50),
    ContextCategory.FREE.value: CategorySpec(percentage=10, priority=0, required=True),
}


class CategoryAllocation(BaseModel):
    """Fixed allocation for a category"""
    model_config = ConfigDict(frozen=True)

    percentage: float
    tokens: int
    priority: int
    required: bool


class ContextBudget(BaseModel):
    """Token ceiling, per-category allocations and live usage.

    Allocations never change after ``create``. Usage moves only through
    ``with_usage``, which returns a new budget with the version bumped.
    """
    model_config = ConfigDict(frozen=True)

    total: int
    allocations: Dict[str, CategoryAllocation]
    usage: Dict[str, int] = Field(default_factory=dict)
    version: int = 0

    @classmethod
    def create(
        cls,
        total: int = DEFAULT_TOTAL_TOKENS,
        categories: Optional[Dict[str, CategorySpec]] = None,
    ) -> "ContextBudget":
        """Allocate ``total`` tokens across categories by percentage"""

        if total <= 0:
            raise BudgetConfigurationError(f"Token budget must be positive, got {total}")

        specs = categories if categories is not None else DEFAULT_CATEGORIES
        if not specs:
            raise BudgetConfigurationError("At least one context category is required")

        share = sum(spec.percentage for spec in specs.values())
        if not math.isclose(share, 100.0, abs_tol=1e-6):
            raise BudgetConfigurationError(f"Category percentages must sum to 100, got {share:g}")

        allocations = {
            category_key(name): CategoryAllocation(
                percentage=spec.percentage,
                tokens=math.floor(total * spec.percentage / 100),
                priority=spec.priority,
                required=spec.required,
            )
            for name, spec in specs.items()
        }
        return cls(total=total, allocations=allocations, usage={name: 0 for name in allocations})

    def allocation(self, category: str) -> CategoryAllocation:
        try:
            return self.allocations[category_key(category)]
        except KeyError:
            raise BudgetConfigurationError(f"Unknown context category '{category}'") from None

    def allocated(self, category: str) -> int:
        return self.allocation(category).tokens

    def used(self, category: str) -> int:
        return self.usage.get(category_key(category), 0)

    def remaining(self, category: str) -> int:
        return self.allocated(category) - self.used(category)

    @property
    def total_used(self) -> int:
        return sum(self.usage.values())

    @property
    def total_remaining(self) -> int:
        return self.total - self.total_used

    def with_usage(self, category: str, tokens: int) -> "ContextBudget":
        """Return a copy with ``category`` usage set to ``tokens``"""
        self.allocation(category)
        usage = dict(self.usage)
        usage[category_key(category)] = max(0, tokens)
        return self.model_copy(update={"usage": usage, "version": self.version + 1})


class ContextChunk(BaseModel):
    """A unit of injectable prompt text"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    category: str
    content: str
    tokens: int
    level: CompressionLevel = CompressionLevel.FULL
    compressible: bool = True
    priority: int = Field(default=50, ge=0, le=100)
    original_tokens: int
    source: str = Field(description="Uncompressed content, kept for on-demand retrieval")
    metadata: Dict[str, str] = Field(default_factory=dict)


def create_chunk(
    category: str,
    content: str,
    *,
    chunk_id: Optional[str] = None,
    compressible: bool = True,
    priority: int = 50,
    metadata: Optional[Dict[str, str]] = None,
) -> ContextChunk:
    """Create an uncompressed chunk with its token estimate"""
    tokens = estimate_tokens(content)
    return ContextChunk(
        id=chunk_id or uuid4().hex,
        category=category_key(category),
        content=content,
        tokens=tokens,
        compressible=compressible,
        priority=priority,
        original_tokens=tokens,
        source=content,
        metadata=metadata or {},
    )


def compress_chunk(chunk: ContextChunk, level: CompressionLevel) -> ContextChunk:
    """Compress a chunk to ``level``.

    Levels only move forward: asking for the current level or a weaker one,
    or compressing a non-compressible chunk, returns the same instance.
    """
    if level.rank <= chunk.level.rank or not chunk.compressible:
        return chunk

    if level == CompressionLevel.SUMMARY:
        content = compressors.summarize(chunk.category, chunk.source)
    elif level == CompressionLevel.MINIMAL:
        content = compressors.minimize(chunk.category, chunk.source)
    else:
        content = compressors.count_only(chunk.category, chunk.original_tokens)

    return chunk.model_copy(update={
        "content": content,
        "tokens": estimate_tokens(content),
        "level": level,
    })


class BuiltContext(BaseModel):
    """Ordered chunks ready to be rendered into a prompt"""
    chunks: List[ContextChunk]
    total_tokens: int
    compression_applied: bool
    warnings: List[str] = Field(default_factory=list)
    budget: ContextBudget

    def render(self, exclude: Iterable[str] = ()) -> str:
        skipped = {category_key(category) for category in exclude}
        return "\n\n".join(
            chunk.content for chunk in self.chunks
            if chunk.content and chunk.category not in skipped
        )

    def content_for(self, category: str) -> str:
        return "\n\n".join(chunk.content for chunk in self.chunks if chunk.category == category_key(category))

    @property
    def text(self) -> str:
        return self.render()


class ContextBudgetManager:
    """Tracks chunks against a ContextBudget and keeps usage within it"""

    def __init__(
        self,
        total_tokens: int = DEFAULT_TOTAL_TOKENS,
        categories: Optional[Dict[str, CategorySpec]] = None,
        budget: Optional[ContextBudget] = None,
    ):
        self._budget = budget or ContextBudget.create(total_tokens, categories)
        self._chunks: Dict[str, ContextChunk] = {}
        self._warnings: List[str] = []

    @classmethod
    def restore(cls, budget: ContextBudget, chunks: List[ContextChunk]) -> "ContextBudgetManager":
        """Rebuild a manager from a checkpointed budget and its chunks"""
        manager = cls(budget=budget)
        manager._chunks = {chunk.id: chunk for chunk in chunks}
        return manager

    @property
    def budget(self) -> ContextBudget:
        return self._budget

    @property
    def warnings(self) -> List[str]:
        return list(self._warnings)

    def clear_warnings(self):
        self._warnings.clear()

    def allocated(self, category: str) -> int:
        return self._budget.allocated(category)

    def used(self, category: str) -> int:
        return self._budget.used(category)

    def remaining(self, category: str) -> int:
        return self._budget.remaining(category)

    def all_chunks(self) -> List[ContextChunk]:
        return list(self._chunks.values())

    def chunks(self, category: str) -> List[ContextChunk]:
        """Chunks of a category, highest priority first"""
        matching = [chunk for chunk in self._chunks.values() if chunk.category == category_key(category)]
        return sorted(matching, key=lambda chunk: -chunk.priority)

    def get(self, chunk_id: str) -> Optional[ContextChunk]:
        return self._chunks.get(chunk_id)

    def add(self, chunk: ContextChunk) -> Optional[ContextChunk]:
        """Admit a chunk, compressing it if needed.

        Returns the chunk as stored, or None when it does not fit even at
        ``count-only``. A chunk whose id is already present replaces it.
        """
        allocation = self._budget.allocation(chunk.category)
        self.remove(chunk.id)

        fitted = self._fit(chunk)
        if fitted is None:
            if allocation.required:
                self._warn(
                    f"{chunk.category} rejected required chunk '{chunk.id}' "
                    f"({chunk.tokens} tokens, {self.remaining(chunk.category)} remaining)"
                )
            logger.debug(
                "Context chunk rejected",
                category=chunk.category,
                chunk_id=chunk.id,
                tokens=chunk.tokens,
                remaining=self.remaining(chunk.category),
            )
            return None

        self._store(fitted)
        return fitted

    def ensure(self, chunk: ContextChunk) -> ContextChunk:
        """Admit a chunk that must not be dropped.

        Falls back to the most compressed representation and admits it over
        the allowance, recording a warning instead of losing the content.
        """
        self._budget.allocation(chunk.category)
        self.remove(chunk.id)

        fitted = self._fit(chunk)
        if fitted is not None:
            self._store(fitted)
            return fitted

        floor = compress_chunk(chunk, CompressionLevel.COUNT_ONLY)
        remaining = self.remaining(chunk.category)
        self._store(floor)
        self._warn(
            f"{chunk.category} over budget: admitted '{chunk.id}' at {floor.level.value} "
            f"({floor.tokens} tokens, {remaining} remaining)"
        )
        return floor

    def remove(self, chunk_id: str) -> bool:
        chunk = self._chunks.pop(chunk_id, None)
        if chunk is None:
            return False
        self._budget = self._budget.with_usage(chunk.category, self.used(chunk.category) - chunk.tokens)
        return True

    def rebalance(self) -> int:
        """Compress non-required categories until usage is back within the total.

        Categories are visited by ascending priority; equal priorities keep
        registration order. Returns the number of tokens saved.
        """
        if not self._over_budget():
            return 0

        before = self._budget.total_used
        allocations = self._budget.allocations
        candidates = sorted(
            (name for name, allocation in allocations.items() if not allocation.required),
            key=lambda name: allocations[name].priority,
        )

        for category in candidates:
            while self._over_budget():
                progressed = False
                for chunk in sorted(self.chunks(category), key=lambda c: c.priority):
                    level = next_level(chunk.level)
                    if level is None or not chunk.compressible:
                        continue
                    self._replace(chunk, compress_chunk(chunk, level))
                    progressed = True
                    if not self._over_budget():
                        break
                if not progressed:
                    break
            if not self._over_budget():
                break

        saved = before - self._budget.total_used
        if self._over_budget():
            self._warn(
                f"Context over budget after rebalance: {self._budget.total_used}/{self._budget.total} tokens"
            )

        logger.debug("Context rebalanced", tokens_saved=saved, total_used=self._budget.total_used)
        return saved

    def build(self) -> BuiltContext:
        """Order chunks by category priority, then chunk priority"""

        allocations = self._budget.allocations
        ordered = sorted(
            self._chunks.values(),
            key=lambda chunk: (-allocations[chunk.category].priority, -chunk.priority),
        )

        warnings = list(self._warnings)
        for name, allocation in allocations.items():
            used = self.used(name)
            if used > allocation.tokens:
                warnings.append(f"{name} over budget: {used}/{allocation.tokens} tokens")

        return BuiltContext(
            chunks=ordered,
            total_tokens=sum(chunk.tokens for chunk in ordered),
            compression_applied=any(chunk.level != CompressionLevel.FULL for chunk in ordered),
            warnings=warnings,
            budget=self._budget,
        )

    def summary(self) -> str:
        """Fixed-width usage table"""
        lines = [f"Context budget: {self._budget.total_used}/{self._budget.total} tokens"]
        for name, allocation in self._budget.allocations.items():
            used = self.used(name)
            ratio = used / allocation.tokens if allocation.tokens else 0.0
            filled = min(20, round(ratio * 20))
            bar = "#" * filled + "." * (20 - filled)
            flag = "*" if allocation.required else " "
            lines.append(f"{flag}{name:<14} [{bar}] {used:>6}/{allocation.tokens:<6}")
        return "\n".join(lines)

    def _fit(self, chunk: ContextChunk) -> Optional[ContextChunk]:
        remaining = self.remaining(chunk.category)
        if chunk.tokens <= remaining:
            return chunk
        if not chunk.compressible:
            return None

        for level in COMPRESSION_ORDER[chunk.level.rank + 1:]:
            compressed = compress_chunk(chunk, level)
            if compressed.tokens <= remaining:
                return compressed
        return None

    def _store(self, chunk: ContextChunk):
        self._chunks[chunk.id] = chunk
        self._budget = self._budget.with_usage(chunk.category, self.used(chunk.category) + chunk.tokens)

    def _replace(self, old: ContextChunk, new: ContextChunk):
        self._chunks[old.id] = new
        self._budget = self._budget.with_usage(old.category, self.used(old.category) - old.tokens + new.tokens)

    def _over_budget(self) -> bool:
        return self._budget.total_used > self._budget.total

    def _warn(self, message: str):
        self._warnings.append(message)
        logger.warning("Context budget warning", detail=message)
