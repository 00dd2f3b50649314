"""Run-scoped JSON-lines logging on top of ``structlog``.

``setup_logging`` points the ``fanout_ci`` logger tree at
``<log_dir>/<run_id>/fanout.jsonl``. Both structlog events and plain stdlib
records are rendered by one ``ProcessorFormatter`` chain, so correlation keys
bound with ``correlation_scope`` and secret redaction apply to every line.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

REDACTED: Final[str] = "***REDACTED***"
_LOG_FILENAME: Final[str] = "fanout.jsonl"
ROOT_LOGGER_NAME: Final[str] = "fanout_ci"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "authorization",
    "credential",
)

_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_GITHUB_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b")
_TOKEN_FLAG_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)(--token)(\s+|=)(\S+)")

_active: LoggingHandle | None = None


@dataclass(slots=True)
class LoggingHandle:
    """Handlers installed by ``setup_logging``; ``shutdown`` detaches and closes them."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    handlers: tuple[logging.Handler, ...] = field(default_factory=tuple)
    closed: bool = False

    def shutdown(self) -> None:
        if self.closed:
            return
        for handler in self.handlers:
            self.logger.removeHandler(handler)
            handler.flush()
            handler.close()
        self.closed = True


def redact_text(text: str) -> str:
    """Mask token-shaped substrings in free text such as command output."""

    redacted = _ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{REDACTED}", text
    )
    redacted = _BEARER_PATTERN.sub(f"Bearer {REDACTED}", redacted)
    redacted = _GITHUB_TOKEN_PATTERN.sub(REDACTED, redacted)
    return _TOKEN_FLAG_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{REDACTED}", redacted
    )


def _redact_event(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    """structlog processor: mask secret-named keys and token-shaped strings."""

    return {key: _redact(value, key) for key, value in event_dict.items()}


def _redact(value: object, key: str | None) -> object:
    if key is not None and any(term in key.lower() for term in _SENSITIVE_KEY_TERMS):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, MutableMapping):
        return {str(k): _redact(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, None) for item in value]
    return value


def _uppercase_level(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    level = event_dict.get("level")
    if isinstance(level, str):
        event_dict["level"] = level.upper()
    return event_dict


def _default_run_id(run_id: str) -> Processor:
    def processor(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("run_id", run_id)
        return event_dict

    return processor


_SHARED_PROCESSORS: Final[tuple[Processor, ...]] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
)


def _configure_structlog() -> None:
    """Route structlog loggers into stdlib ``logging`` for the run's formatter."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_logging(
    observability: dict[str, Any] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
    level: int | str | None = None,
) -> LoggingHandle:
    """Attach JSON-lines handlers for one run, replacing any earlier run's."""

    global _active

    run_id = run_id.strip() if isinstance(run_id, str) else ""
    if not run_id:
        raise ValueError("run_id must not be empty")
    settings = dict(observability or {})
    resolved_level = _parse_level(
        level if level is not None else settings.get("log_level", "INFO")
    )
    base_dir = Path(log_dir if log_dir is not None else settings.get("log_dir", ".fanout/logs"))

    shutdown_logging()

    run_log_dir = base_dir / run_id
    run_log_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_log_dir / _LOG_FILENAME

    render_chain: list[Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        _default_run_id(run_id),
        _uppercase_level,
        structlog.processors.format_exc_info,
    ]
    if settings.get("redact_secrets", True):
        render_chain.append(_redact_event)
    render_chain += [
        structlog.processors.EventRenamer("message"),
        structlog.processors.JSONRenderer(sort_keys=True, default=str),
    ]
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*_SHARED_PROCESSORS, structlog.stdlib.ExtraAdder()],
        processors=render_chain,
    )

    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if settings.get("log_to_stdout", False):
        handlers.append(logging.StreamHandler())

    logger = logging.getLogger(logger_name)
    logger.setLevel(resolved_level)
    logger.propagate = False
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    _configure_structlog()
    _active = LoggingHandle(
        logger=logger, run_id=run_id, log_path=log_path, handlers=tuple(handlers)
    )
    return _active


def shutdown_logging(handle: LoggingHandle | None = None) -> None:
    """Close ``handle``, or the most recent run's handlers when omitted."""

    global _active

    target = handle if handle is not None else _active
    if target is None:
        return
    target.shutdown()
    if target is _active:
        _active = None


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation keys (``run_id``, ``lane``, ``job_name``) for log lines in scope.

    asyncio tasks copy the context when created, so a scope entered inside one
    job task never leaks into its siblings.
    """

    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def _parse_level(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = logging.getLevelName(value.strip().upper())
        if isinstance(parsed, int):
            return parsed
    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "REDACTED",
    "LoggingHandle",
    "correlation_scope",
    "redact_text",
    "setup_logging",
    "shutdown_logging",
]
