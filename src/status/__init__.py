"""Status package for the binding Ready condition."""

from .reporter import merge_condition, ready_condition, summarize

__all__ = ["merge_condition", "ready_condition", "summarize"]
