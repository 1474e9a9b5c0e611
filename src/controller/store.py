from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import yaml

from src.common.errors import Conflict
from src.common.kinds import object_key

logger = logging.getLogger(__name__)

Key = Tuple[str, str, str, str]


class ObjectStore(Protocol):
    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        ...

    def list(self, api_version: str, kind: str, namespace: Optional[str]) -> List[Dict[str, Any]]:
        ...

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def delete(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> None:
        ...


def _key(api_version: str, kind: str, namespace: Optional[str], name: str) -> Key:
    return (api_version, kind, namespace or "", name)


class InMemoryStore:
    """Thread-safe object store with resourceVersion checks and finalizer-aware deletes."""

    def __init__(self, objects: Iterable[Dict[str, Any]] = ()) -> None:
        self._lock = threading.Lock()
        self._objects: Dict[Key, Dict[str, Any]] = {}
        self._version = 0
        for obj in objects:
            self.create(obj)

    @classmethod
    def from_yaml(cls, text: str) -> "InMemoryStore":
        documents = [doc for doc in yaml.safe_load_all(text) if isinstance(doc, dict)]
        return cls(documents)

    def to_yaml(self) -> str:
        with self._lock:
            documents = [copy.deepcopy(self._objects[key]) for key in sorted(self._objects)]
        return yaml.safe_dump_all(documents, sort_keys=False)

    def objects(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(self._objects[key]) for key in sorted(self._objects)]

    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self._objects.get(_key(api_version, kind, namespace, name))
            return copy.deepcopy(obj) if obj is not None else None

    def list(self, api_version: str, kind: str, namespace: Optional[str]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(obj)
                for key, obj in sorted(self._objects.items())
                if key[0] == api_version and key[1] == kind and (namespace is None or key[2] == namespace)
            ]

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        key = object_key(obj)
        with self._lock:
            if key in self._objects:
                raise Conflict(f"{key[1]}/{key[3]} already exists")
            stored = copy.deepcopy(obj)
            metadata = stored.setdefault("metadata", {})
            metadata.setdefault("generation", 1)
            metadata["resourceVersion"] = self._next_version()
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace(obj, status_only=False)

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace(obj, status_only=True)

    def delete(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> None:
        key = _key(api_version, kind, namespace, name)
        with self._lock:
            obj = self._objects.get(key)
            if obj is None:
                return
            metadata = obj.setdefault("metadata", {})
            if metadata.get("finalizers"):
                if not metadata.get("deletionTimestamp"):
                    metadata["deletionTimestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
                    metadata["resourceVersion"] = self._next_version()
                return
            del self._objects[key]

    def _replace(self, obj: Dict[str, Any], *, status_only: bool) -> Dict[str, Any]:
        key = object_key(obj)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise Conflict(f"{key[1]}/{key[3]} no longer exists")
            expected = (obj.get("metadata") or {}).get("resourceVersion")
            if expected is not None and expected != current["metadata"].get("resourceVersion"):
                raise Conflict(f"{key[1]}/{key[3]} was modified (resourceVersion {expected})")

            if status_only:
                stored = copy.deepcopy(current)
                stored["status"] = copy.deepcopy(obj.get("status"))
            else:
                stored = copy.deepcopy(obj)
                if "status" in current:
                    stored["status"] = copy.deepcopy(current["status"])
                else:
                    stored.pop("status", None)
                metadata = stored.setdefault("metadata", {})
                metadata["generation"] = current["metadata"].get("generation", 1)
                if stored.get("spec") != current.get("spec"):
                    metadata["generation"] += 1
                if current["metadata"].get("deletionTimestamp"):
                    metadata["deletionTimestamp"] = current["metadata"]["deletionTimestamp"]
                if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
                    del self._objects[key]
                    logger.debug("%s/%s released by its last finalizer", key[1], key[3])
                    return copy.deepcopy(stored)

            stored["metadata"]["resourceVersion"] = self._next_version()
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)


__all__ = ["InMemoryStore", "ObjectStore"]
