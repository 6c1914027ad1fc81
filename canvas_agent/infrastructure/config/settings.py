import os
from typing import Any, Dict, Mapping, Optional

import structlog
from pydantic import BaseModel, Field, model_validator


logger = structlog.get_logger(__name__)

ENV_PREFIX = "CANVAS_AGENT_"

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous agent operating on a shared workspace. "
    "Inspect the current state, call the available actions to make progress, "
    "and reply without any action calls once the task is complete."
)


class AgentSettings(BaseModel):
    """Runtime configuration for the agent loop"""

    model: str = Field(default="default", description="Model identifier handed to the provider")
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Loop limits
    max_iterations: int = Field(default=20, ge=1)
    max_errors: int = Field(default=3, ge=0, description="Consecutive errored iterations tolerated")
    max_history_entries: int = Field(default=50, ge=1)

    # Generation
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    generation_timeout: float = Field(default=120.0, gt=0)

    # Actions
    tool_timeout: float = Field(default=30.0, gt=0)
    parallel_tool_calls: bool = False

    # Context
    token_budget: int = Field(default=8000, ge=100)
    recent_threshold: int = Field(default=1, ge=0)
    archive_threshold: int = Field(default=5, ge=0)
    loop_threshold: int = Field(default=2, ge=1)
    awareness_ttl: Optional[float] = Field(default=None, gt=0)

    # Checkpointing, 0 disables
    checkpoint_interval: int = Field(default=0, ge=0)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @model_validator(mode="after")
    def check_thresholds(self) -> "AgentSettings":
        if self.archive_threshold < self.recent_threshold:
            raise ValueError("archive_threshold must not be lower than recent_threshold")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "AgentSettings":
        """Build settings from ``CANVAS_AGENT_*`` environment variables"""

        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            values[name] = raw.strip()

        values.update(overrides)
        settings = cls.model_validate(values)
        logger.debug("Settings loaded", overridden=sorted(values))
        return settings
