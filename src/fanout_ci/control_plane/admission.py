"""Pure gating predicates evaluated before a run exists."""

from __future__ import annotations

from collections.abc import Collection, Mapping

from fanout_ci.constants import DEFAULT_LANE_TEMPLATE, DEFAULT_PIPELINE_NAME, PULL_REQUEST_TRIGGER
from fanout_ci.domain.models import TriggerMetadata


def should_admit(
    trigger: TriggerMetadata,
    admitted_triggers: Collection[str] = (PULL_REQUEST_TRIGGER,),
) -> bool:
    """Return ``True`` when the pipeline runs for ``trigger``."""

    return trigger.kind in admitted_triggers


def resolve_cancel_on_supersede(
    trigger: TriggerMetadata,
    cancel_triggers: Collection[str] = (PULL_REQUEST_TRIGGER,),
) -> bool:
    return trigger.kind in cancel_triggers


def resolve_lane(
    trigger: TriggerMetadata,
    *,
    pipeline_name: str = DEFAULT_PIPELINE_NAME,
    template: str = DEFAULT_LANE_TEMPLATE,
) -> str:
    """Render the lane key; runs sharing a lane supersede each other."""

    return template.format_map({"pipeline": pipeline_name, "ref": trigger.ref})


def trigger_from_environ(
    environ: Mapping[str, str],
    *,
    kind: str | None = None,
    ref: str | None = None,
    sha: str | None = None,
) -> TriggerMetadata:
    """Build trigger metadata from GitHub Actions variables; explicit values win.

    Raises ``ValueError`` when neither source provides an event kind or a ref.
    """

    resolved_kind = kind or environ.get("GITHUB_EVENT_NAME", "")
    resolved_ref = ref or environ.get("GITHUB_REF", "")
    if not resolved_kind.strip():
        raise ValueError("trigger kind is required (--event or GITHUB_EVENT_NAME)")
    if not resolved_ref.strip():
        raise ValueError("trigger ref is required (--ref or GITHUB_REF)")
    return TriggerMetadata(
        kind=resolved_kind,
        ref=resolved_ref,
        sha=sha or environ.get("GITHUB_SHA") or None,
        actor=environ.get("GITHUB_ACTOR") or None,
    )


__all__ = ["resolve_cancel_on_supersede", "resolve_lane", "should_admit", "trigger_from_environ"]
