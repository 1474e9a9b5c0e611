from __future__ import annotations

from typing import Iterable


class BindingError(Exception):
    """Base class for failures that end up in a binding's Ready condition."""

    reason = "BindingFailed"
    # configuration errors cannot succeed on blind retry
    retryable = False


class TargetNotFound(BindingError):
    reason = "TargetNotFound"


class ContainerNotFound(BindingError):
    reason = "ContainerNotFound"


class UnsupportedShape(BindingError):
    reason = "UnsupportedShape"


class InvalidBinding(BindingError):
    reason = "InvalidBinding"


class UnresolvedReference(BindingError):
    reason = "UnresolvedReference"

    def __init__(self, key: str, referrer: str | None = None) -> None:
        self.key = key
        self.referrer = referrer
        if referrer:
            message = f"mapping {referrer!r} references unknown key {key!r}"
        else:
            message = f"secret key {key!r} not found"
        super().__init__(message)


class CyclicMapping(BindingError):
    reason = "CyclicMapping"

    def __init__(self, cycle: Iterable[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"mappings form a cycle: {' -> '.join(self.cycle)}")


class ConflictRetryExhausted(BindingError):
    reason = "ConflictRetryExhausted"
    retryable = True


class FetchFailed(BindingError):
    """The object store could not be reached or refused the request."""

    reason = "FetchFailed"
    retryable = True


class Conflict(Exception):
    """Raised by an object store when an update carries a stale resourceVersion."""


__all__ = [
    "BindingError",
    "Conflict",
    "ConflictRetryExhausted",
    "ContainerNotFound",
    "CyclicMapping",
    "FetchFailed",
    "InvalidBinding",
    "TargetNotFound",
    "UnresolvedReference",
    "UnsupportedShape",
]
