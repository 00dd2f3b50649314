"""In-process progress events for pipeline runs."""

from __future__ import annotations

import itertools
import math
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import Any

import structlog

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]


class EventType(StrEnum):
    RUN_ADMITTED = "run_admitted"
    RUN_SUPERSEDED = "run_superseded"
    BUILD_STARTED = "build_started"
    BUILD_FINISHED = "build_finished"
    ARTIFACT_PUBLISHED = "artifact_published"
    JOB_STARTED = "job_started"
    JOB_FINISHED = "job_finished"
    COVERAGE_REPORTED = "coverage_reported"
    RUN_FINISHED = "run_finished"


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    sequence: int
    event_type: EventType
    timestamp: datetime
    run_id: str | None = None
    payload: dict[str, JSONValue] = field(default_factory=dict)


Subscriber = Callable[[PipelineEvent], object]


class EventBus:
    """Delivers each event synchronously to matching subscribers and keeps a bounded history.

    A subscriber that raises is logged and skipped; the publisher never sees
    the exception.
    """

    def __init__(self, *, history: int = 512, logger: Any | None = None) -> None:
        if isinstance(history, bool) or not isinstance(history, int) or history <= 0:
            raise ValueError("history must be a positive integer")
        self._history: deque[PipelineEvent] = deque(maxlen=history)
        self._subscribers: list[tuple[frozenset[EventType] | None, Subscriber]] = []
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.failures = 0

    def subscribe(self, callback: Subscriber, *event_types: str | EventType) -> Callable[[], None]:
        """Register ``callback`` for ``event_types`` (all events when none given).

        Returns a function that removes the subscription.
        """

        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = frozenset(EventType(kind) for kind in event_types) or None
        entry = (wanted, callback)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object] | None = None,
        *,
        run_id: str | None = None,
    ) -> PipelineEvent:
        kind = EventType(event_type)
        body = {key: _plain(value, key) for key, value in (payload or {}).items()}
        with self._lock:
            event = PipelineEvent(
                sequence=next(self._sequence),
                event_type=kind,
                timestamp=datetime.now(tz=UTC),
                run_id=run_id,
                payload=body,
            )
            self._history.append(event)
            targets = [cb for wanted, cb in self._subscribers if wanted is None or kind in wanted]

        for callback in targets:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                self._logger.warning(
                    "event_subscriber_failed",
                    event_type=kind.value,
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                    error=f"{type(exc).__name__}: {exc}",
                )
        return event

    def replay(
        self,
        *,
        event_type: str | EventType | None = None,
        run_id: str | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Events still in history, oldest first."""

        kind = None if event_type is None else EventType(event_type)
        with self._lock:
            events = tuple(self._history)
        return tuple(
            event
            for event in events
            if (kind is None or event.event_type is kind)
            and (run_id is None or event.run_id == run_id)
        )


def _plain(value: object, path: str) -> JSONValue:
    if isinstance(value, Enum):
        return _plain(value.value, path)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"payload {path}: float must be finite")
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple)):
        return [_plain(item, f"{path}[{index}]") for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        return {str(key): _plain(item, f"{path}.{key}") for key, item in value.items()}
    raise ValueError(f"payload {path}: {type(value).__name__} is not JSON-serializable")


__all__ = ["EventBus", "EventType", "JSONValue", "PipelineEvent", "Subscriber"]
