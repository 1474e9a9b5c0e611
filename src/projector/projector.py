from __future__ import annotations

import copy
import hashlib
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import jsonpatch

from src.common.config import DEFAULT_MOUNT_ROOT
from src.common.errors import UnresolvedReference
from src.common.models import EnvVar, ServiceBinding
from src.common.outcome import ProjectionOutcome, TargetRef
from src.mapping.paths import PathSet, compile_path, ensure_field_list, ensure_list, find_values
from src.selector.selector import Slot, TargetContainer, locate_slots

logger = logging.getLogger(__name__)

VOLUME_PREFIX = "binding-"
ANNOTATION_PREFIX = "projections.service.binding/"
# list locations the projector created, shared by every binding on the workload
CREATED_KEY = ANNOTATION_PREFIX + "created"


def derived_name(binding_name: str) -> str:
    """Stable volume / mount name owned by one binding."""

    digest = hashlib.sha1(binding_name.encode("utf-8")).hexdigest()
    return f"{VOLUME_PREFIX}{digest[:10]}"


def ownership_key(binding_name: str) -> str:
    return ANNOTATION_PREFIX + derived_name(binding_name)


def validate_env(env_vars: Sequence[EnvVar], entries: Mapping[str, str]) -> None:
    for env_var in env_vars:
        if env_var.key not in entries:
            raise UnresolvedReference(env_var.key)


def _annotation(resource: Dict[str, Any], key: str) -> Optional[Any]:
    metadata = resource.get("metadata") if isinstance(resource.get("metadata"), dict) else {}
    annotations = metadata.get("annotations") if isinstance(metadata.get("annotations"), dict) else {}
    raw = annotations.get(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring malformed annotation %s on %s", key, TargetRef.of(resource))
        return None


def _set_annotation(resource: Dict[str, Any], key: str, value: Optional[Any]) -> None:
    """Store ``value`` as JSON under ``key``; ``None`` removes it and any emptied annotations map."""

    metadata = resource.get("metadata")
    if value is None:
        if not isinstance(metadata, dict) or not isinstance(metadata.get("annotations"), dict):
            return
        annotations = metadata["annotations"]
        annotations.pop(key, None)
        if not annotations:
            metadata.pop("annotations")
        return
    metadata = resource.setdefault("metadata", {})
    annotations = metadata.get("annotations")
    if not isinstance(annotations, dict):
        annotations = {}
        metadata["annotations"] = annotations
    annotations[key] = json.dumps(value, sort_keys=True, separators=(",", ":"))


def read_record(resource: Dict[str, Any], binding_name: str) -> Optional[Dict[str, Any]]:
    record = _annotation(resource, ownership_key(binding_name))
    return record if isinstance(record, dict) else None


def read_created(resource: Dict[str, Any]) -> Set[str]:
    created = _annotation(resource, CREATED_KEY)
    return {str(item) for item in created} if isinstance(created, list) else set()


def _write_created(resource: Dict[str, Any], created: Set[str]) -> None:
    _set_annotation(resource, CREATED_KEY, sorted(created) or None)


def _upsert(entries: List[Any], desired: Dict[str, Any]) -> None:
    """Keep exactly one entry named like ``desired`` and make it equal to ``desired``."""

    indices = [
        index
        for index, entry in enumerate(entries)
        if isinstance(entry, dict) and entry.get("name") == desired["name"]
    ]
    if not indices:
        entries.append(copy.deepcopy(desired))
        return
    if entries[indices[0]] != desired:
        entries[indices[0]] = copy.deepcopy(desired)
    for index in reversed(indices[1:]):
        del entries[index]


def _named(entries: List[Any], name: str) -> Optional[Dict[str, Any]]:
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry
    return None


def _remove_named(
    entries: List[Any],
    names: Iterable[str],
    secret_name: Optional[str] = None,
    restore: Optional[Mapping[str, Dict[str, Any]]] = None,
) -> bool:
    """Remove entries by name; with ``secret_name`` only env entries sourced from that secret.

    An entry listed in ``restore`` is swapped back in place instead of dropped.
    """

    wanted = set(names)
    restore = restore or {}
    kept = []
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") in wanted:
            if secret_name is None or _env_secret(entry) == secret_name:
                if entry["name"] in restore:
                    kept.append(copy.deepcopy(restore[entry["name"]]))
                continue
        kept.append(entry)
    changed = kept != entries
    entries[:] = kept
    return changed


def _env_secret(entry: Dict[str, Any]) -> Optional[str]:
    value_from = entry.get("valueFrom")
    if not isinstance(value_from, dict):
        return None
    ref = value_from.get("secretKeyRef")
    if not isinstance(ref, dict):
        return None
    return ref.get("name")


def _field_location(slot: Slot, field_name: str) -> str:
    return f"{slot.label}/{field_name}"


def _prune(body: Dict[str, Any], expression: str, created: Set[str]) -> None:
    if expression in created:
        compile_path(expression).filter(lambda value: value == [], body)
        created.discard(expression)


class BindingProjector:
    """Write a binding's volume, volume mounts and env vars into a workload body.

    Every entry is keyed by a name derived from the binding. The env var
    names it owns, and any same-named env entries it overwrote, are recorded
    in an annotation, so several bindings can share a container and cleanup
    restores exactly what was there before.
    """

    def __init__(self, mount_root: str = DEFAULT_MOUNT_ROOT) -> None:
        self.mount_root = mount_root.rstrip("/") or "/"

    def mount_path(self, binding: ServiceBinding) -> str:
        root = "" if self.mount_root == "/" else self.mount_root
        return f"{root}/{binding.service_name}"

    def apply(
        self,
        target: TargetContainer,
        binding: ServiceBinding,
        secret_name: str,
        entries: Mapping[str, str],
    ) -> ProjectionOutcome:
        validate_env(binding.spec.env, entries)
        binding_name = binding.metadata.name
        volume_name = derived_name(binding_name)
        body = copy.deepcopy(target.resource)

        previous = read_record(body, binding_name) or {}
        previous_secret = previous.get("secret")
        previous_env = previous.get("env") or []
        previous_displaced = previous.get("displaced") or {}
        created = read_created(body)
        env_names = [env_var.name for env_var in binding.spec.env]
        stale_env = [name for name in previous_env if name not in env_names]
        displaced: Dict[str, Dict[str, Any]] = {}

        if target.paths.volumes:
            if not find_values(body, target.paths.volumes):
                created.add(target.paths.volumes)
            volumes = ensure_list(body, target.paths.volumes)
            _upsert(volumes, {"name": volume_name, "secret": {"secretName": secret_name}})

        mount = {"name": volume_name, "mountPath": self.mount_path(binding), "readOnly": True}
        env_entries = [
            {
                "name": env_var.name,
                "valueFrom": {"secretKeyRef": {"name": secret_name, "key": env_var.key}},
            }
            for env_var in binding.spec.env
        ]

        for slot in locate_slots(body, target.paths):
            kept = previous_displaced.get(slot.label) or {}
            if slot.position not in target.positions:
                self._clear_slot(body, slot, volume_name, previous_env, previous_secret, kept, created)
                continue
            slot_displaced = {name: entry for name, entry in kept.items() if name in env_names}
            for env_list in self._env_lists(body, slot, created, create=bool(env_entries)):
                if stale_env and previous_secret:
                    _remove_named(env_list, stale_env, previous_secret, kept)
                for entry in env_entries:
                    existing = _named(env_list, entry["name"])
                    owned = entry["name"] in previous_env and _env_secret(existing or {}) == previous_secret
                    if existing is not None and not owned and entry["name"] not in slot_displaced:
                        slot_displaced[entry["name"]] = copy.deepcopy(existing)
                    _upsert(env_list, entry)
            if slot_displaced:
                displaced[slot.label] = slot_displaced
            if not target.paths.volumes:
                continue
            for mount_list in self._mount_lists(body, slot, created):
                _upsert(mount_list, mount)

        record: Dict[str, Any] = {"env": sorted(env_names), "secret": secret_name}
        if displaced:
            record["displaced"] = displaced
        _set_annotation(body, ownership_key(binding_name), record)
        _write_created(body, created)
        patch = jsonpatch.make_patch(target.resource, body).patch
        if patch:
            logger.info("projected %s onto %s (%d operation(s))", binding_name, target.ref, len(patch))
        else:
            logger.debug("%s already projected onto %s", binding_name, target.ref)
        return ProjectionOutcome(
            target=target.ref,
            secret_name=secret_name,
            containers=list(target.containers),
            patch=patch,
            patched=body,
        )

    def remove(self, resource: Dict[str, Any], paths: PathSet, binding_name: str) -> ProjectionOutcome:
        """Strip everything ``binding_name`` projected into ``resource``."""

        volume_name = derived_name(binding_name)
        body = copy.deepcopy(resource)
        record = read_record(body, binding_name) or {}
        owned_env = record.get("env") or []
        secret_name = record.get("secret")
        displaced = record.get("displaced") or {}
        created = read_created(body)

        for volumes in find_values(body, paths.volumes) if paths.volumes else []:
            if isinstance(volumes, list) and _remove_named(volumes, [volume_name]) and not volumes:
                _prune(body, paths.volumes, created)
        for slot in locate_slots(body, paths):
            restore = displaced.get(slot.label) or {}
            self._clear_slot(body, slot, volume_name, owned_env, secret_name, restore, created)
        _set_annotation(body, ownership_key(binding_name), None)
        _write_created(body, created)

        patch = jsonpatch.make_patch(resource, body).patch
        if patch:
            logger.info("removed %s from %s (%d operation(s))", binding_name, TargetRef.of(resource), len(patch))
        return ProjectionOutcome(
            target=TargetRef.of(resource),
            secret_name=secret_name,
            patch=patch,
            patched=body,
        )

    def _clear_slot(
        self,
        body: Dict[str, Any],
        slot: Slot,
        volume_name: str,
        env_names: Sequence[str],
        secret_name: Optional[str],
        restore: Mapping[str, Dict[str, Any]],
        created: Set[str],
    ) -> None:
        if slot.container is not None:
            for field_name, names, source in (
                ("volumeMounts", [volume_name], None),
                ("env", env_names, secret_name),
            ):
                entries = slot.container.get(field_name)
                if not isinstance(entries, list) or not names:
                    continue
                if field_name == "env" and not secret_name:
                    continue
                location = _field_location(slot, field_name)
                restored = restore if field_name == "env" else None
                if _remove_named(entries, names, source, restored) and not entries and location in created:
                    slot.container.pop(field_name)
                    created.discard(location)
            return
        if slot.env_path and env_names and secret_name:
            for entries in find_values(body, slot.env_path):
                if isinstance(entries, list) and _remove_named(entries, env_names, secret_name, restore) and not entries:
                    _prune(body, slot.env_path, created)
        if slot.mounts_path:
            for entries in find_values(body, slot.mounts_path):
                if isinstance(entries, list) and _remove_named(entries, [volume_name]) and not entries:
                    _prune(body, slot.mounts_path, created)

    @staticmethod
    def _env_lists(body: Dict[str, Any], slot: Slot, created: Set[str], *, create: bool) -> List[List[Any]]:
        if slot.container is not None:
            existing = slot.container.get("env")
            if not create and not isinstance(existing, list):
                return []
            if existing is None:
                created.add(_field_location(slot, "env"))
            return [ensure_field_list(slot.container, "env")]
        if slot.env_path:
            found = [value for value in find_values(body, slot.env_path) if isinstance(value, list)]
            if found or not create:
                return found
            created.add(slot.env_path)
            return [ensure_list(body, slot.env_path)]
        return []

    @staticmethod
    def _mount_lists(body: Dict[str, Any], slot: Slot, created: Set[str]) -> List[List[Any]]:
        if slot.container is not None:
            if slot.container.get("volumeMounts") is None:
                created.add(_field_location(slot, "volumeMounts"))
            return [ensure_field_list(slot.container, "volumeMounts")]
        if slot.mounts_path:
            found = [value for value in find_values(body, slot.mounts_path) if isinstance(value, list)]
            if found:
                return found
            created.add(slot.mounts_path)
            return [ensure_list(body, slot.mounts_path)]
        return []


__all__ = [
    "ANNOTATION_PREFIX",
    "BindingProjector",
    "CREATED_KEY",
    "derived_name",
    "ownership_key",
    "read_created",
    "read_record",
    "validate_env",
]
