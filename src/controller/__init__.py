"""Controller package: object stores and the binding reconciler."""

from .kube import KubernetesStore
from .reconciler import ReconcileResult, Reconciler, binding_keys
from .store import InMemoryStore, ObjectStore

__all__ = [
    "InMemoryStore",
    "KubernetesStore",
    "ObjectStore",
    "ReconcileResult",
    "Reconciler",
    "binding_keys",
]
