from __future__ import annotations

from typing import Dict, Optional

from src.common.errors import InvalidBinding
from src.common.models import LabelSelector, LabelSelectorRequirement


def _requirement_matches(labels: Dict[str, str], requirement: LabelSelectorRequirement) -> bool:
    operator = requirement.operator
    present = requirement.key in labels
    if operator == "In":
        return present and labels[requirement.key] in requirement.values
    if operator == "NotIn":
        return not present or labels[requirement.key] not in requirement.values
    if operator == "Exists":
        return present
    if operator == "DoesNotExist":
        return not present
    raise InvalidBinding(f"unsupported label selector operator {operator!r}")


def matches(labels: Optional[Dict[str, str]], selector: LabelSelector) -> bool:
    """Kubernetes label selector semantics: every term must hold."""

    labels = labels or {}
    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False
    return all(_requirement_matches(labels, requirement) for requirement in selector.match_expressions)


__all__ = ["matches"]
