"""Shared helpers for naming Kubernetes resource kinds and API versions."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple


_IRREGULAR_PLURALS = {
    "endpoints": "endpoints",
    "ingress": "ingresses",
    "networkpolicy": "networkpolicies",
    "podsecuritypolicy": "podsecuritypolicies",
    "storageclass": "storageclasses",
    "ingressclass": "ingressclasses",
    "priorityclass": "priorityclasses",
    "runtimeclass": "runtimeclasses",
}


def split_api_version(api_version: Optional[str]) -> Tuple[str, str]:
    """Split ``apps/v1`` into ``("apps", "v1")``; the core group is ``""``."""

    value = (api_version or "").strip()
    if "/" in value:
        group, _, version = value.rpartition("/")
        return (group, version)
    return ("", value)


@lru_cache(maxsize=None)
def plural_for_kind(kind: Optional[str]) -> str:
    key = (kind or "").strip().lower()
    if not key:
        return ""
    if key in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[key]
    if key.endswith("y") and key[-2:-1] not in ("a", "e", "i", "o", "u"):
        return key[:-1] + "ies"
    if key.endswith(("s", "x", "ch", "sh")):
        return key + "es"
    return key + "s"


def resource_name(api_version: Optional[str], kind: Optional[str]) -> str:
    """Return ``<plural>.<group>`` (or just ``<plural>`` for the core group)."""

    group, _ = split_api_version(api_version)
    plural = plural_for_kind(kind)
    return f"{plural}.{group}" if group else plural


def object_key(obj: dict) -> Tuple[str, str, str, str]:
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    return (
        str(obj.get("apiVersion") or ""),
        str(obj.get("kind") or ""),
        str(metadata.get("namespace") or ""),
        str(metadata.get("name") or ""),
    )


__all__ = ["object_key", "plural_for_kind", "resource_name", "split_api_version"]
