"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import NoReturn, TypeVar, cast

from fanout_ci.constants import RUN_IF_ALWAYS
from fanout_ci.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_ERROR_TEXT = 4096
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})
# Statuses in which the test unit ran to completion and may carry coverage.
COMPLETED_JOB_STATUSES = frozenset({JobStatus.PASSED, JobStatus.FAILED})

_ALLOWED_RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.RUNNING: TERMINAL_RUN_STATUSES,
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class TriggerMetadata(CanonicalModel):
    """What started a run: event kind plus the ref it targets."""

    kind: str
    ref: str
    sha: str | None = None
    actor: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_str(self.kind, "TriggerMetadata.kind", max_len=64))
        object.__setattr__(self, "ref", _as_str(self.ref, "TriggerMetadata.ref", max_len=512))
        object.__setattr__(self, "sha", _as_optional_str(self.sha, "TriggerMetadata.sha"))
        object.__setattr__(self, "actor", _as_optional_str(self.actor, "TriggerMetadata.actor"))


@dataclass(slots=True)
class Run(CanonicalModel):
    id: str
    lane: str
    trigger: TriggerMetadata
    cancel_on_supersede: bool
    started_at: datetime
    status: RunStatus = RunStatus.PENDING
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_run_id(_as_str(self.id, "Run.id"))
        except ValueError as exc:
            _fail("Run.id", str(exc))
        self.lane = _as_str(self.lane, "Run.lane", max_len=512)
        if not isinstance(self.trigger, TriggerMetadata):
            _fail("Run.trigger", "must be TriggerMetadata")
        if not isinstance(self.cancel_on_supersede, bool):
            _fail("Run.cancel_on_supersede", "expected boolean")
        self.started_at = _as_datetime(self.started_at, "Run.started_at")
        self.status = _as_enum(RunStatus, self.status, "Run.status")
        if self.finished_at is not None:
            self.finished_at = _as_datetime(self.finished_at, "Run.finished_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def transition(self, status: RunStatus, *, at: datetime | None = None) -> None:
        """Move to ``status``; terminal states are final."""

        target = _as_enum(RunStatus, status, "Run.status")
        if target is self.status:
            return
        if target not in _ALLOWED_RUN_TRANSITIONS[self.status]:
            _fail("Run.status", f"illegal transition {self.status.value} -> {target.value}")
        self.status = target
        if target in TERMINAL_RUN_STATUSES:
            finished = at if at is not None else datetime.now(tz=UTC)
            self.finished_at = max(_as_datetime(finished, "Run.finished_at"), self.started_at)


@dataclass(frozen=True, slots=True)
class BuildOutput(CanonicalModel):
    """Result reported by the build recipe executor."""

    succeeded: bool
    path: Path | None = None
    error: str | None = None
    duration_ms: float = 0.0
    log_tail: str = ""

    def __post_init__(self) -> None:
        if self.succeeded and self.path is None:
            _fail("BuildOutput.path", "a successful build must produce an artifact path")
        if not self.succeeded and not self.error:
            object.__setattr__(self, "error", "build failed")


@dataclass(frozen=True, slots=True)
class ArtifactHandle(CanonicalModel):
    """Opaque, immutable reference to a published build artifact."""

    id: str
    run_id: str
    sha256: str
    size_bytes: int
    path: Path
    published_at: datetime

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_artifact_id(self.id)
            domain_ids.validate_run_id(self.run_id)
        except ValueError as exc:
            _fail("ArtifactHandle", str(exc))
        if not _SHA256_RE.fullmatch(self.sha256):
            _fail("ArtifactHandle.sha256", "must be lowercase 64-char hex SHA-256")
        _as_int(self.size_bytes, "ArtifactHandle.size_bytes", minimum=0)


@dataclass(frozen=True, slots=True)
class MatrixGroup(CanonicalModel):
    """Named collection of test units sharing a timeout."""

    name: str
    timeout_seconds: float
    members: tuple[str, ...]
    required: bool = True
    run_if: str | tuple[str, ...] = RUN_IF_ALWAYS

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "MatrixGroup.name", max_len=128))
        path = f"MatrixGroup[{self.name}]"
        timeout = _as_float(self.timeout_seconds, f"{path}.timeout_seconds")
        if timeout <= 0:
            _fail(f"{path}.timeout_seconds", "must be > 0")
        object.__setattr__(self, "timeout_seconds", timeout)
        if not isinstance(self.members, tuple) or not self.members:
            _fail(f"{path}.members", "must be a non-empty tuple of test names")
        for index, member in enumerate(self.members):
            _as_str(member, f"{path}.members[{index}]", max_len=512)
        if len(set(self.members)) != len(self.members):
            _fail(f"{path}.members", "must not contain duplicates")
        if isinstance(self.run_if, str):
            if self.run_if != RUN_IF_ALWAYS:
                _fail(f"{path}.run_if", f"must be {RUN_IF_ALWAYS!r} or a list of trigger kinds")
        elif not self.run_if:
            _fail(f"{path}.run_if", "trigger kind list must not be empty")

    def admits(self, trigger_kind: str) -> bool:
        if self.run_if == RUN_IF_ALWAYS:
            return True
        return trigger_kind in self.run_if


@dataclass(frozen=True, slots=True)
class MatrixDeclaration(CanonicalModel):
    """Ordered group records loaded once at run start."""

    groups: tuple[MatrixGroup, ...]

    def __post_init__(self) -> None:
        if not self.groups:
            _fail("MatrixDeclaration.groups", "must declare at least one group")
        names = [group.name for group in self.groups]
        if len(set(names)) != len(names):
            _fail("MatrixDeclaration.groups", "group names must be unique")

    def group(self, name: str) -> MatrixGroup:
        for group in self.groups:
            if group.name == name:
                return group
        raise KeyError(name)

    @property
    def job_names(self) -> tuple[str, ...]:
        return tuple(member for group in self.groups for member in group.members)


@dataclass(frozen=True, slots=True)
class JobSpec(CanonicalModel):
    name: str
    group: str
    timeout_seconds: float
    index: int
    required: bool = True

    def __post_init__(self) -> None:
        _as_str(self.name, "JobSpec.name", max_len=512)
        _as_str(self.group, "JobSpec.group", max_len=128)
        if _as_float(self.timeout_seconds, "JobSpec.timeout_seconds") <= 0:
            _fail("JobSpec.timeout_seconds", "must be > 0")
        _as_int(self.index, "JobSpec.index", minimum=0)


@dataclass(frozen=True, slots=True)
class CoverageReport(CanonicalModel):
    """Opaque coverage payload tagged with the job that produced it."""

    job_name: str
    payload: bytes

    def __post_init__(self) -> None:
        _as_str(self.job_name, "CoverageReport.job_name", max_len=512)
        if not isinstance(self.payload, bytes):
            _fail("CoverageReport.payload", f"expected bytes, got {type(self.payload).__name__}")

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.payload).hexdigest()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "job_name": self.job_name,
            "sha256": self.sha256,
            "size_bytes": len(self.payload),
        }


@dataclass(frozen=True, slots=True)
class JobResult(CanonicalModel):
    job_name: str
    group: str
    status: JobStatus
    required: bool = True
    coverage: CoverageReport | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", _as_enum(JobStatus, self.status, "JobResult.status"))
        if self.coverage is not None:
            if self.status not in COMPLETED_JOB_STATUSES:
                _fail("JobResult.coverage", f"not allowed for status {self.status.value}")
            if self.coverage.job_name != self.job_name:
                _fail("JobResult.coverage", "coverage must be tagged with the job name")
        if self.error is not None and len(self.error) > _MAX_ERROR_TEXT:
            object.__setattr__(self, "error", self.error[-_MAX_ERROR_TEXT:])

    @property
    def ran_to_completion(self) -> bool:
        return self.status in COMPLETED_JOB_STATUSES

    @property
    def passed(self) -> bool:
        return self.status is JobStatus.PASSED


@dataclass(frozen=True, slots=True)
class RunError(CanonicalModel):
    """One failure recorded against a run, tagged with the stage it came from."""

    stage: str
    kind: str
    message: str
    job_name: str | None = None


@dataclass(frozen=True, slots=True)
class RunOutcome(CanonicalModel):
    run: Run
    artifact: ArtifactHandle | None = None
    jobs: tuple[JobSpec, ...] = ()
    results: tuple[JobResult, ...] = ()
    reported: tuple[str, ...] = ()
    errors: tuple[RunError, ...] = field(default_factory=tuple)

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def succeeded(self) -> bool:
        return self.run.status is RunStatus.SUCCEEDED

    def result_for(self, job_name: str) -> JobResult | None:
        for result in self.results:
            if result.job_name == job_name:
                return result
        return None

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    if not isinstance(value, datetime):
        _fail(path, f"expected datetime, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return value.astimezone(UTC)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, CanonicalModel) and type(value).to_dict is not CanonicalModel.to_dict:
        return value.to_dict()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "ArtifactHandle",
    "BuildOutput",
    "CoverageReport",
    "JobResult",
    "JobSpec",
    "JobStatus",
    "MatrixDeclaration",
    "MatrixGroup",
    "Run",
    "RunError",
    "RunOutcome",
    "RunStatus",
    "TriggerMetadata",
]
