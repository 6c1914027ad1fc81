import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "canvas-agent"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add run context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    context = structlog.contextvars.get_contextvars()
    for key in ("session_id", "iteration"):
        if key in context and key not in event_dict:
            event_dict[key] = context[key]

    return event_dict


def bind_run_context(session_id: str, iteration: Optional[int] = None):
    """Bind the current run to every log entry on this task"""
    if iteration is None:
        structlog.contextvars.bind_contextvars(session_id=session_id)
    else:
        structlog.contextvars.bind_contextvars(session_id=session_id, iteration=iteration)


def clear_run_context():
    structlog.contextvars.unbind_contextvars("session_id", "iteration")


class AgentLogger:
    """Specialized logger for loop operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_iteration(
        self,
        session_id: str,
        iteration: int,
        phase: str,
        data: Optional[Dict[str, Any]] = None,
    ):
        """Log the start of a loop phase"""

        self.logger.info(
            "loop_phase",
            session_id=session_id,
            iteration=iteration,
            phase=phase,
            data=data or {},
        )

    def log_tool_execution(
        self,
        tool_name: str,
        session_id: str,
        input_data: Dict[str, Any],
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            session_id=session_id,
            input_data=input_data,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_decision(
        self,
        session_id: str,
        iteration: int,
        decision: str,
        reason: Optional[str] = None,
        state_summary: Optional[Dict[str, Any]] = None
    ):
        """Log a DECIDE outcome"""

        self.logger.info(
            "loop_decision",
            session_id=session_id,
            iteration=iteration,
            decision=decision,
            reason=reason,
            state_summary=state_summary or {}
        )

    def log_context_update(
        self,
        session_id: str,
        tokens_used: int,
        token_budget: int,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log context assembly"""

        self.logger.info(
            "context_update",
            session_id=session_id,
            tokens_used=tokens_used,
            token_budget=token_budget,
            details=details or {}
        )


class LatencyStats(BaseModel):
    """Running latency aggregate for one operation"""
    count: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0

    def observe(self, duration_ms: float):
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg": self.total_ms / self.count if self.count else 0.0,
            "min": self.min_ms or 0.0,
            "max": self.max_ms,
        }


class MetricsCollector:
    """In-process metrics for one agent loop, each update also logged at debug"""

    def __init__(self, logger: Optional[AgentLogger] = None):
        self.latencies: Dict[str, LatencyStats] = {}
        self.counters: Dict[str, int] = {}
        self.gauges: Dict[str, float] = {}
        self.logger = logger or AgentLogger("canvas_agent.metrics")

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        self.latencies.setdefault(operation, LatencyStats()).observe(duration_ms)
        self._emit("latency", operation, duration_ms, tags)

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] = self.counters.get(name, 0) + value
        self._emit("counter", name, value, tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        self._emit("gauge", name, value, tags)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Latencies under ``latency.<operation>``, counters and gauges by name"""

        summary: Dict[str, Any] = {
            f"latency.{operation}": stats.summary() for operation, stats in self.latencies.items()
        }
        summary.update(self.counters)
        summary.update(self.gauges)
        return summary

    def reset(self):
        self.latencies.clear()
        self.counters.clear()
        self.gauges.clear()

    def _emit(self, metric_type: str, name: str, value: float, tags: Optional[Dict[str, str]]):
        self.logger.logger.debug("metric", metric_type=metric_type, name=name, value=value, tags=tags or {})
