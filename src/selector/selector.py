from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from src.common.errors import BindingError, ContainerNotFound, TargetNotFound, UnsupportedShape
from src.common.models import ApplicationReference
from src.common.outcome import TargetRef
from src.mapping.paths import PathSet, find_objects
from src.mapping.resolver import MappingResolver

from .labels import matches

logger = logging.getLogger(__name__)


@dataclass
class Slot:
    """One place to bind: a located container, or a bare env / volume-mount list."""

    position: int
    name: Optional[str] = None
    container: Optional[Dict[str, Any]] = None
    env_path: Optional[str] = None
    mounts_path: Optional[str] = None

    @property
    def label(self) -> str:
        if self.container is not None:
            return self.name or f"#{self.position}"
        return self.env_path or self.mounts_path or f"#{self.position}"


@dataclass
class TargetContainer:
    resource: Dict[str, Any]
    paths: PathSet
    positions: Tuple[int, ...]
    containers: List[str] = field(default_factory=list)

    @property
    def ref(self) -> TargetRef:
        return TargetRef.of(self.resource)


@dataclass
class SelectionResult:
    targets: List[TargetContainer] = field(default_factory=list)
    failures: List[Tuple[TargetRef, BindingError]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.targets and not self.failures


def locate_slots(resource: Dict[str, Any], paths: PathSet) -> List[Slot]:
    """Enumerate bind locations in a stable order: containers, then envs, then volume mounts."""

    slots: List[Slot] = []
    for expression in paths.containers:
        for container in find_objects(resource, expression):
            name = container.get("name")
            slots.append(
                Slot(
                    position=len(slots),
                    name=name if isinstance(name, str) else None,
                    container=container,
                )
            )
    for expression in paths.envs:
        slots.append(Slot(position=len(slots), env_path=expression))
    for expression in paths.volume_mounts:
        slots.append(Slot(position=len(slots), mounts_path=expression))
    return slots


def filter_slots(
    slots: Sequence[Slot], filters: Sequence[Union[int, str]], target: TargetRef
) -> List[Slot]:
    if not filters:
        return list(slots)
    containers = [slot for slot in slots if slot.container is not None]
    chosen: Dict[int, Slot] = {}
    for entry in filters:
        if isinstance(entry, int):
            if entry < 0 or entry >= len(containers):
                raise ContainerNotFound(f"container index {entry} not found in {target}")
            slot = containers[entry]
            chosen[slot.position] = slot
            continue
        named = [slot for slot in containers if slot.name == entry]
        if not named:
            raise ContainerNotFound(f"container {entry!r} not found in {target}")
        for slot in named:
            chosen[slot.position] = slot
    return [chosen[position] for position in sorted(chosen)]


class TargetSelector:
    def __init__(self, store: Any, resolver: Optional[MappingResolver] = None) -> None:
        self._store = store
        self._resolver = resolver or MappingResolver(store)

    def select(self, namespace: str, ref: ApplicationReference) -> SelectionResult:
        resources = self._resources(namespace, ref)
        result = SelectionResult()
        for resource in sorted(resources, key=lambda obj: TargetRef.of(obj).name):
            target_ref = TargetRef.of(resource)
            try:
                result.targets.append(self.target_for(resource, ref.containers, namespace))
            except (ContainerNotFound, UnsupportedShape) as exc:
                logger.warning("skipping %s: %s", target_ref, exc)
                result.failures.append((target_ref, exc))
        if not resources:
            logger.info("no %s matched the application selector in %s", ref.kind, namespace)
        return result

    def target_for(
        self,
        resource: Dict[str, Any],
        filters: Sequence[Union[int, str]],
        namespace: Optional[str] = None,
    ) -> TargetContainer:
        target_ref = TargetRef.of(resource)
        paths = self._resolver.resolve(
            target_ref.kind, target_ref.api_version, namespace or target_ref.namespace, resource
        )
        slots = locate_slots(resource, paths)
        if not slots:
            raise UnsupportedShape(f"no containers located in {target_ref}")
        selected = filter_slots(slots, filters, target_ref)
        return TargetContainer(
            resource=resource,
            paths=paths,
            positions=tuple(slot.position for slot in selected),
            containers=[slot.label for slot in selected],
        )

    def _resources(self, namespace: str, ref: ApplicationReference) -> List[Dict[str, Any]]:
        if ref.name:
            resource = self._store.get(ref.api_version, ref.kind, namespace, ref.name)
            if resource is None:
                raise TargetNotFound(f"{ref.kind}/{ref.name} not found in {namespace}")
            return [resource]
        if ref.selector is None:
            raise TargetNotFound("application reference has neither a name nor a selector")
        found = []
        for resource in self._store.list(ref.api_version, ref.kind, namespace):
            metadata = resource.get("metadata") if isinstance(resource.get("metadata"), dict) else {}
            if matches(metadata.get("labels"), ref.selector):
                found.append(resource)
        return found


__all__ = [
    "SelectionResult",
    "Slot",
    "TargetContainer",
    "TargetSelector",
    "filter_slots",
    "locate_slots",
]
