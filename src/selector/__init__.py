"""Target selection package for resolving workloads and containers to bind."""

from .labels import matches
from .selector import SelectionResult, Slot, TargetContainer, TargetSelector, locate_slots

__all__ = [
    "SelectionResult",
    "Slot",
    "TargetContainer",
    "TargetSelector",
    "locate_slots",
    "matches",
]
