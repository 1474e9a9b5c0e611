from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from src.common.models import BindingStatus, Condition, ProjectedTarget
from src.common.outcome import ProjectionOutcome

READY = "Ready"
REASON_PROJECTED = "Projected"
REASON_NO_TARGETS = "NoTargets"


def _timestamp(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ready_condition(outcomes: Sequence[ProjectionOutcome]) -> Condition:
    if not outcomes:
        return Condition(
            type=READY,
            status="False",
            reason=REASON_NO_TARGETS,
            message="no workloads matched the application reference",
        )
    failures = [outcome for outcome in outcomes if not outcome.success]
    if not failures:
        names = ", ".join(str(outcome.target) for outcome in outcomes if outcome.target)
        return Condition(type=READY, status="True", reason=REASON_PROJECTED, message=f"projected into {names}")
    details = []
    for outcome in failures:
        prefix = f"{outcome.target}: " if outcome.target else ""
        details.append(f"{prefix}{outcome.message or outcome.reason}")
    return Condition(type=READY, status="False", reason=failures[0].reason, message="; ".join(details))


def merge_condition(previous: Sequence[Condition], current: Condition, now: Optional[datetime] = None) -> List[Condition]:
    """Replace the condition of ``current.type``, keeping its transition time unless status changed."""

    merged = {condition.type: condition for condition in previous}
    before = merged.get(current.type)
    if before is not None and before.status == current.status and before.last_transition_time:
        transition = before.last_transition_time
    else:
        transition = _timestamp(now)
    merged[current.type] = current.model_copy(update={"last_transition_time": transition})
    return [merged[key] for key in sorted(merged)]


def summarize(
    outcomes: Sequence[ProjectionOutcome],
    observed_generation: Optional[int],
    previous: Optional[BindingStatus] = None,
    now: Optional[datetime] = None,
) -> BindingStatus:
    previous = previous or BindingStatus()
    condition = ready_condition(outcomes)
    projections = sorted(
        {
            (outcome.target.api_version, outcome.target.kind, outcome.target.name)
            for outcome in outcomes
            if outcome.success and outcome.target is not None
        }
    )
    return BindingStatus(
        observed_generation=observed_generation,
        conditions=merge_condition(previous.conditions, condition, now),
        projections=[
            ProjectedTarget(api_version=api_version, kind=kind, name=name)
            for api_version, kind, name in projections
        ],
    )


__all__ = ["READY", "REASON_NO_TARGETS", "REASON_PROJECTED", "merge_condition", "ready_condition", "summarize"]
