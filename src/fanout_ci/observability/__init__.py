"""Run logging and in-process progress events."""

from fanout_ci.observability.events import EventBus, EventType, PipelineEvent, Subscriber
from fanout_ci.observability.logging import (
    LoggingHandle,
    correlation_scope,
    redact_text,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "EventBus",
    "EventType",
    "LoggingHandle",
    "PipelineEvent",
    "Subscriber",
    "correlation_scope",
    "redact_text",
    "setup_logging",
    "shutdown_logging",
]
