from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from src.common.errors import UnsupportedShape
from src.common.kinds import resource_name, split_api_version
from src.common.models import BINDING_API_VERSION, WorkloadResourceMapping

from .paths import DEFAULT_PATHS, PathSet, find_values

logger = logging.getLogger(__name__)

CLUSTER_MAPPING_KINDS = ("ClusterWorkloadResourceMapping", "ClusterApplicationResourceMapping")
NAMESPACED_MAPPING_KIND = "WorkloadResourceMapping"


class MappingResolver:
    """Resolve where a workload keeps its containers, envs, volume mounts and volumes.

    Registered mappings are looked up by resource name (``<plural>.<group>``)
    and matched on the exact version string. A namespace-scoped mapping wins
    over a cluster-scoped one. Without a mapping the pod-template shape is
    assumed, and a resource that does not expose it is rejected.
    """

    def __init__(self, store: Any = None) -> None:
        self._store = store
        self._cluster: Dict[str, WorkloadResourceMapping] = {}
        self._namespaced: Dict[tuple, WorkloadResourceMapping] = {}

    def register(self, mapping: WorkloadResourceMapping, namespace: Optional[str] = None) -> None:
        name = mapping.metadata.name
        if namespace:
            self._namespaced[(namespace, name)] = mapping
        else:
            self._cluster[name] = mapping

    def register_objects(self, objects: Iterable[Dict[str, Any]]) -> None:
        for obj in objects:
            kind = obj.get("kind")
            if kind in CLUSTER_MAPPING_KINDS:
                self.register(WorkloadResourceMapping.from_object(obj))
            elif kind == NAMESPACED_MAPPING_KIND:
                mapping = WorkloadResourceMapping.from_object(obj)
                self.register(mapping, mapping.metadata.namespace or "default")

    def lookup(self, kind: str, api_version: str, namespace: Optional[str] = None) -> Optional[PathSet]:
        name = resource_name(api_version, kind)
        _, version = split_api_version(api_version)
        for mapping in self._candidates(name, namespace):
            entry = mapping.for_version(version)
            if entry is None:
                continue
            logger.debug("using mapping %s for %s %s", mapping.metadata.name, kind, api_version)
            return PathSet(
                containers=tuple(entry.containers),
                envs=tuple(entry.envs),
                volume_mounts=tuple(entry.volume_mounts),
                volumes=entry.volumes,
            )
        return None

    def resolve(
        self,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        resource: Optional[Dict[str, Any]] = None,
    ) -> PathSet:
        paths = self.lookup(kind, api_version, namespace)
        if paths is not None:
            return paths
        if resource is not None and not _has_default_shape(resource):
            raise UnsupportedShape(
                f"{kind} {api_version} has no pod template containers and no resource mapping"
            )
        return DEFAULT_PATHS

    def _candidates(self, name: str, namespace: Optional[str]) -> Iterable[WorkloadResourceMapping]:
        if namespace:
            if self._store is not None:
                obj = self._store.get(BINDING_API_VERSION, NAMESPACED_MAPPING_KIND, namespace, name)
                if obj is not None:
                    yield WorkloadResourceMapping.from_object(obj)
            if (namespace, name) in self._namespaced:
                yield self._namespaced[(namespace, name)]
        if self._store is not None:
            for kind in CLUSTER_MAPPING_KINDS:
                obj = self._store.get(BINDING_API_VERSION, kind, None, name)
                if obj is not None:
                    yield WorkloadResourceMapping.from_object(obj)
        if name in self._cluster:
            yield self._cluster[name]


def _has_default_shape(resource: Dict[str, Any]) -> bool:
    for path in DEFAULT_PATHS.containers:
        list_path = path[: -len("[*]")] if path.endswith("[*]") else path
        if find_values(resource, list_path):
            return True
    return False


__all__ = ["MappingResolver", "CLUSTER_MAPPING_KINDS", "NAMESPACED_MAPPING_KIND"]
