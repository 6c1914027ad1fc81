"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from canvas_agent.infrastructure.config.settings import AgentSettings


def test_defaults():
    settings = AgentSettings()

    assert settings.max_iterations == 20
    assert settings.max_errors == 3
    assert settings.token_budget == 8000
    assert (settings.recent_threshold, settings.archive_threshold) == (1, 5)
    assert settings.loop_threshold == 2
    assert settings.checkpoint_interval == 0
    assert settings.awareness_ttl is None


def test_from_env_reads_prefixed_variables():
    environ = {
        "CANVAS_AGENT_MAX_ITERATIONS": "7",
        "CANVAS_AGENT_PARALLEL_TOOL_CALLS": "true",
        "CANVAS_AGENT_AWARENESS_TTL": "15.5",
        "CANVAS_AGENT_MODEL": "  small  ",
        "CANVAS_AGENT_LOG_LEVEL": "",
        "MAX_ITERATIONS": "99",
    }

    settings = AgentSettings.from_env(environ)

    assert settings.max_iterations == 7
    assert settings.parallel_tool_calls is True
    assert settings.awareness_ttl == 15.5
    assert settings.model == "small"
    assert settings.log_level == "INFO"


def test_overrides_win_over_environment():
    settings = AgentSettings.from_env({"CANVAS_AGENT_MAX_ERRORS": "5"}, max_errors=1)
    assert settings.max_errors == 1


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        AgentSettings.from_env({"CANVAS_AGENT_MAX_ITERATIONS": "0"})


def test_archive_threshold_below_recent():
    with pytest.raises(ValidationError):
        AgentSettings(recent_threshold=4, archive_threshold=2)
