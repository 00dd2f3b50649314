"""
Matrix declaration loading and job expansion.

A declaration is an ordered list of groups, each with a timeout and a list of
named test units::

    schema_version: 1
    groups:
      - name: sampled-genesis
        timeout_minutes: 30
        tests:
          - tests::neon_integrations::microblock_integration_test
      - name: atlas-test
        timeout_minutes: 40
        run_if: always
        tests:
          - tests::neon_integrations::atlas_integration_test

Expansion is pure: the same declaration always yields the same job specs in the
same order (group order, then member order).
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from fanout_ci.constants import MATRIX_SCHEMA_VERSION, RUN_IF_ALWAYS
from fanout_ci.domain.errors import MatrixDeclarationError
from fanout_ci.domain.models import JobSpec, MatrixDeclaration, MatrixGroup, TriggerMetadata

_GROUP_KEYS = frozenset(
    {"name", "timeout_minutes", "timeout_seconds", "tests", "required", "run_if"}
)
_ROOT_KEYS = frozenset({"schema_version", "groups"})


def load_matrix(path: str | Path) -> MatrixDeclaration:
    """Load and validate a YAML matrix declaration."""

    matrix_path = Path(path)
    try:
        raw_text = matrix_path.read_text(encoding="utf-8")
    except OSError as exc:
        message = f"{matrix_path}: unable to read matrix file: {exc}"
        raise MatrixDeclarationError((message,)) from exc

    try:
        payload = yaml.safe_load(raw_text)
    except yaml.YAMLError as exc:
        raise MatrixDeclarationError((f"{matrix_path}: invalid YAML: {exc}",)) from exc

    return matrix_from_mapping(payload, source=str(matrix_path))


def matrix_from_mapping(payload: object, *, source: str = "<matrix>") -> MatrixDeclaration:
    """Validate a parsed declaration and build a ``MatrixDeclaration``.

    All structural problems are collected and raised together.
    """

    issues: list[str] = []
    if not isinstance(payload, Mapping):
        raise MatrixDeclarationError((f"{source}: matrix root must be a mapping",))

    for key in sorted(str(item) for item in payload if item not in _ROOT_KEYS):
        issues.append(f"{source}.{key}: unknown field")

    version = payload.get("schema_version", MATRIX_SCHEMA_VERSION)
    if isinstance(version, bool) or not isinstance(version, int):
        issues.append(f"{source}.schema_version: expected integer")
    elif version != MATRIX_SCHEMA_VERSION:
        issues.append(
            f"{source}.schema_version: unsupported version {version}; "
            f"expected {MATRIX_SCHEMA_VERSION}"
        )

    raw_groups = payload.get("groups")
    if not isinstance(raw_groups, list) or not raw_groups:
        issues.append(f"{source}.groups: expected a non-empty list of groups")
        raise MatrixDeclarationError(issues)

    groups: list[MatrixGroup] = []
    seen_groups: set[str] = set()
    seen_tests: dict[str, str] = {}
    for index, raw_group in enumerate(raw_groups):
        path = f"{source}.groups[{index}]"
        group = _parse_group(raw_group, path, issues)
        if group is None:
            continue
        if group.name in seen_groups:
            issues.append(f"{path}.name: duplicate group name {group.name!r}")
            continue
        seen_groups.add(group.name)
        for member in group.members:
            owner = seen_tests.get(member)
            if owner is not None:
                issues.append(f"{path}.tests: {member!r} is already declared in group {owner!r}")
            else:
                seen_tests[member] = group.name
        groups.append(group)

    if issues:
        raise MatrixDeclarationError(issues)
    return MatrixDeclaration(groups=tuple(groups))


def expand(
    declaration: MatrixDeclaration,
    trigger: TriggerMetadata | None = None,
) -> tuple[JobSpec, ...]:
    """Expand a declaration into job specs.

    With ``trigger`` set, groups whose ``run_if`` does not admit the trigger kind
    are skipped; ``run_if: always`` groups are always expanded.
    """

    specs: list[JobSpec] = []
    for group in declaration.groups:
        if trigger is not None and not group.admits(trigger.kind):
            continue
        for member in group.members:
            specs.append(
                JobSpec(
                    name=member,
                    group=group.name,
                    timeout_seconds=group.timeout_seconds,
                    index=len(specs),
                    required=group.required,
                )
            )
    return tuple(specs)


def _parse_group(raw: object, path: str, issues: list[str]) -> MatrixGroup | None:
    if not isinstance(raw, Mapping):
        issues.append(f"{path}: expected mapping")
        return None

    start = len(issues)
    for key in sorted(str(item) for item in raw if item not in _GROUP_KEYS):
        issues.append(f"{path}.{key}: unknown field")

    name = raw.get("name")
    group_name = name.strip() if isinstance(name, str) else ""
    if not group_name:
        issues.append(f"{path}.name: expected non-empty string")

    timeout = _parse_timeout(raw, path, issues)

    tests = raw.get("tests")
    members: list[str] = []
    if not isinstance(tests, list) or not tests:
        issues.append(f"{path}.tests: expected a non-empty list of test names")
    else:
        for test_index, test_name in enumerate(tests):
            if not isinstance(test_name, str) or not test_name.strip():
                issues.append(f"{path}.tests[{test_index}]: expected non-empty string")
                continue
            normalized = test_name.strip()
            if normalized in members:
                issues.append(f"{path}.tests[{test_index}]: duplicate test {normalized!r}")
                continue
            members.append(normalized)

    required = raw.get("required", True)
    if not isinstance(required, bool):
        issues.append(f"{path}.required: expected boolean")

    run_if = _parse_run_if(raw.get("run_if", RUN_IF_ALWAYS), f"{path}.run_if", issues)

    if len(issues) > start or timeout is None or run_if is None:
        return None
    return MatrixGroup(
        name=group_name,
        timeout_seconds=timeout,
        members=tuple(members),
        required=bool(required),
        run_if=run_if,
    )


def _parse_timeout(raw: Mapping[str, Any], path: str, issues: list[str]) -> float | None:
    has_minutes = "timeout_minutes" in raw
    has_seconds = "timeout_seconds" in raw
    if has_minutes == has_seconds:
        issues.append(f"{path}: exactly one of timeout_minutes or timeout_seconds is required")
        return None

    key = "timeout_minutes" if has_minutes else "timeout_seconds"
    value = raw[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.append(f"{path}.{key}: expected number")
        return None
    seconds = float(value) * (60.0 if has_minutes else 1.0)
    if not math.isfinite(seconds) or seconds <= 0:
        issues.append(f"{path}.{key}: must be a finite number > 0")
        return None
    return seconds


def _parse_run_if(value: object, path: str, issues: list[str]) -> str | tuple[str, ...] | None:
    if value == RUN_IF_ALWAYS or value is True:
        return RUN_IF_ALWAYS
    if isinstance(value, str) and value.strip():
        return (value.strip(),)
    if isinstance(value, list) and value and all(isinstance(item, str) for item in value):
        kinds = tuple(dict.fromkeys(item.strip() for item in value if item.strip()))
        if kinds:
            return kinds
    issues.append(f"{path}: expected {RUN_IF_ALWAYS!r}, a trigger kind, or a list of kinds")
    return None


__all__ = ["expand", "load_matrix", "matrix_from_mapping"]
