from __future__ import annotations

import copy
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import jsonpatch
from pydantic import ValidationError

from src.common.config import ProjectorConfig
from src.common.errors import (
    BindingError,
    Conflict,
    ConflictRetryExhausted,
    InvalidBinding,
    TargetNotFound,
)
from src.common.models import (
    BINDING_API_VERSION,
    BINDING_FINALIZER,
    BINDING_KIND,
    BindingStatus,
    Condition,
    ProjectedTarget,
    ServiceBinding,
)
from src.common.outcome import ProjectionOutcome, TargetRef
from src.credentials.projector import project
from src.credentials.provisioned import encode_secret_data, read_service_secret
from src.mapping.resolver import MappingResolver
from src.projector.projector import BindingProjector, validate_env
from src.selector.selector import TargetContainer, TargetSelector
from src.status.reporter import merge_condition, summarize

logger = logging.getLogger(__name__)

DERIVED_SECRET_SUFFIX = "-projection"
BINDING_LABEL = "service.binding/binding"


@dataclass
class ReconcileResult:
    namespace: str
    name: str
    outcomes: List[ProjectionOutcome] = field(default_factory=list)
    cleanups: List[ProjectionOutcome] = field(default_factory=list)
    status: Optional[BindingStatus] = None
    requeue: bool = False
    deleted: bool = False
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "binding": f"{self.namespace}/{self.name}",
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "requeue": self.requeue,
        }
        if self.cleanups:
            data["cleanups"] = [outcome.to_dict() for outcome in self.cleanups]
        if self.status is not None:
            data["status"] = self.status.model_dump(by_alias=True, exclude_none=True)
        if self.deleted:
            data["deleted"] = True
        if self.cancelled:
            data["cancelled"] = True
        return data


def _diff(before: Dict[str, Any], after: Dict[str, Any]) -> ProjectionOutcome:
    return ProjectionOutcome(
        target=TargetRef.of(before),
        patch=jsonpatch.make_patch(before, after).patch,
        patched=after,
    )


class Reconciler:
    """Drive one binding from its spec to projected workloads and a Ready condition.

    Every pass re-reads the binding, the service secret and the workloads, so
    it is safe to run repeatedly. Writes are whole-object updates guarded by
    resourceVersion and retried on conflict.
    """

    def __init__(
        self,
        store: Any,
        config: Optional[ProjectorConfig] = None,
        *,
        resolver: Optional[MappingResolver] = None,
        stop: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.config = config or ProjectorConfig()
        self.resolver = resolver or MappingResolver(store)
        self.selector = TargetSelector(store, self.resolver)
        self.projector = BindingProjector(self.config.mount_root)
        self.stop = stop or threading.Event()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = random.Random(self.config.seed) if self.config.seed is not None else random.Random()

    def reconcile_all(self, keys: Sequence[Tuple[str, str]], jobs: Optional[int] = None) -> List[ReconcileResult]:
        jobs = jobs or self.config.jobs
        if jobs <= 1 or len(keys) <= 1:
            return [self.reconcile(namespace, name) for namespace, name in keys]
        with ThreadPoolExecutor(max_workers=min(jobs, len(keys))) as executor:
            futures = [executor.submit(self.reconcile, namespace, name) for namespace, name in keys]
            return [future.result() for future in futures]

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        result = ReconcileResult(namespace=namespace, name=name)
        try:
            self._reconcile(namespace, name, result)
        except BindingError as exc:
            # store unreachable, or a write that kept conflicting
            logger.warning("reconciliation of %s/%s failed: %s", namespace, name, exc)
            result.outcomes.append(ProjectionOutcome.failed(None, exc))
            result.requeue = result.requeue or exc.retryable
            if result.status is None:
                result.status = self._record_failure(namespace, name, exc)
        return result

    def _reconcile(self, namespace: str, name: str, result: ReconcileResult) -> None:
        obj = self.store.get(BINDING_API_VERSION, BINDING_KIND, namespace, name)
        if obj is None:
            logger.debug("binding %s/%s is gone; nothing recorded to clean up", namespace, name)
            result.deleted = True
            return

        try:
            binding = ServiceBinding.from_object(obj)
        except InvalidBinding as exc:
            logger.warning("binding %s/%s is invalid: %s", namespace, name, exc)
            result.outcomes = [ProjectionOutcome.failed(None, exc)]
            result.status = self._failure_status(obj, exc)
            self._write_status(namespace, name, result.status)
            return

        if binding.deleting:
            self._finalize(obj, binding, result)
            return

        if BINDING_FINALIZER not in binding.metadata.finalizers:
            self._set_finalizer(obj, present=True)

        outcomes, selected = self._project(binding, result)
        result.outcomes = outcomes
        if result.cancelled:
            result.requeue = True
            return

        status = summarize(outcomes, binding.metadata.generation, binding.status, self._clock())
        if selected is None:
            # targets unknown this pass: keep every recorded projection
            status.projections = list(binding.status.projections)
        else:
            result.cleanups = self._cleanup_retargeted(binding, selected)
            recorded = {(p.api_version, p.kind, p.name) for p in status.projections}
            binding_namespace = self._namespace(binding)
            for projection in binding.status.projections:
                key = (projection.api_version, projection.kind, projection.name)
                ref = TargetRef(projection.api_version, projection.kind, binding_namespace, projection.name)
                if key not in recorded and ref in selected:
                    status.projections.append(projection)
                    recorded.add(key)
            for cleanup in result.cleanups:
                if not cleanup.success and cleanup.target is not None:
                    # retried on the next pass
                    status.projections.append(ProjectedTarget(**cleanup.target.to_dict()))
            status.projections.sort(key=lambda p: (p.api_version, p.kind, p.name))
        result.requeue = any(outcome.retryable for outcome in outcomes + result.cleanups)
        result.status = status
        self._write_status(namespace, name, status)

    def _namespace(self, binding: ServiceBinding) -> str:
        return binding.metadata.namespace or self.config.namespace or "default"

    def _project(
        self, binding: ServiceBinding, result: ReconcileResult
    ) -> Tuple[List[ProjectionOutcome], Optional[Set[TargetRef]]]:
        namespace = self._namespace(binding)
        try:
            service_secret, raw = read_service_secret(self.store, namespace, binding.spec.service)
            entries = project(
                raw,
                binding.spec.mappings,
                overrides={"type": binding.spec.type, "provider": binding.spec.provider},
            )
            validate_env(binding.spec.env, entries)
            selection = self.selector.select(namespace, binding.spec.application)
        except BindingError as exc:
            logger.warning("binding %s/%s failed: %s", namespace, binding.metadata.name, exc)
            return [ProjectionOutcome.failed(None, exc)], None

        selected = {target.ref for target in selection.targets}
        selected.update(ref for ref, _ in selection.failures)
        outcomes = [ProjectionOutcome.failed(ref, error) for ref, error in selection.failures]
        if not selection.targets:
            return outcomes, selected

        try:
            secret_name = self._publish_secret(binding, service_secret, entries)
        except BindingError as exc:
            return outcomes + [ProjectionOutcome.failed(None, exc)], None

        for target in selection.targets:
            if self.stop.is_set():
                logger.info("reconciliation of %s/%s cancelled", namespace, binding.metadata.name)
                result.cancelled = True
                break
            outcomes.append(self._commit(binding, target, secret_name, entries))
        outcomes.sort(key=lambda outcome: outcome.target.name if outcome.target else "")
        return outcomes, selected

    def _commit(
        self, binding: ServiceBinding, target: TargetContainer, secret_name: str, entries: Dict[str, str]
    ) -> ProjectionOutcome:
        namespace = self._namespace(binding)
        filters = binding.spec.application.containers
        holder = {"target": target}

        def mutate(current: Dict[str, Any]) -> ProjectionOutcome:
            if current is not holder["target"].resource:
                holder["target"] = self.selector.target_for(current, filters, namespace)
            return self.projector.apply(holder["target"], binding, secret_name, entries)

        try:
            return self._update_with_retry(target.resource, mutate)
        except BindingError as exc:
            logger.warning("projection onto %s failed: %s", target.ref, exc)
            return ProjectionOutcome.failed(target.ref, exc, secret_name)

    def _update_with_retry(
        self,
        resource: Dict[str, Any],
        mutate: Callable[[Dict[str, Any]], ProjectionOutcome],
        *,
        status: bool = False,
    ) -> ProjectionOutcome:
        ref = TargetRef.of(resource)
        attempts = max(1, self.config.conflict_retries)
        current = resource
        for attempt in range(attempts):
            if attempt:
                self._sleep(self._backoff_seconds(attempt - 1))
                current = self.store.get(ref.api_version, ref.kind, ref.namespace or None, ref.name)
                if current is None:
                    raise TargetNotFound(f"{ref} disappeared while being updated")
            outcome = mutate(current)
            if not outcome.changed:
                return outcome
            try:
                if status:
                    self.store.update_status(outcome.patched)
                else:
                    self.store.update(outcome.patched)
                return outcome
            except Conflict as exc:
                logger.warning("conflict writing %s (attempt %d/%d): %s", ref, attempt + 1, attempts, exc)
        raise ConflictRetryExhausted(f"{ref}: gave up after {attempts} conflicting writes")

    def _backoff_seconds(self, attempt: int) -> float:
        base = self.config.backoff_seconds * (2 ** attempt)
        return base + self._rng.uniform(0, base)

    def _publish_secret(self, binding: ServiceBinding, service_secret: str, entries: Dict[str, str]) -> str:
        """Write the derived secret when entries differ from the service's own secret."""

        spec = binding.spec
        if not (spec.mappings or spec.type or spec.provider):
            return service_secret
        namespace = self._namespace(binding)
        name = f"{binding.metadata.name}{DERIVED_SECRET_SUFFIX}"
        data = encode_secret_data(entries)

        existing = self.store.get("v1", "Secret", namespace, name)
        if existing is None:
            desired = {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {
                    "name": name,
                    "namespace": namespace,
                    "labels": {BINDING_LABEL: binding.metadata.name},
                },
                "type": "Opaque",
                "data": data,
            }
            try:
                self.store.create(desired)
                logger.info("created secret %s/%s", namespace, name)
                return name
            except Conflict:
                existing = self.store.get("v1", "Secret", namespace, name)
                if existing is None:
                    raise ConflictRetryExhausted(f"secret {namespace}/{name} vanished during creation")

        def mutate(current: Dict[str, Any]) -> ProjectionOutcome:
            updated = copy.deepcopy(current)
            updated.setdefault("metadata", {}).setdefault("labels", {})[BINDING_LABEL] = binding.metadata.name
            updated["data"] = data
            updated.pop("stringData", None)
            return _diff(current, updated)

        outcome = self._update_with_retry(existing, mutate)
        if outcome.changed:
            logger.info("updated secret %s/%s", namespace, name)
        return name

    def _cleanup_retargeted(self, binding: ServiceBinding, selected: Set[TargetRef]) -> List[ProjectionOutcome]:
        namespace = self._namespace(binding)
        stale = [
            TargetRef(projection.api_version, projection.kind, namespace, projection.name)
            for projection in binding.status.projections
            if TargetRef(projection.api_version, projection.kind, namespace, projection.name) not in selected
        ]
        return [self._remove_from(ref, binding.metadata.name) for ref in stale]

    def _remove_from(self, ref: TargetRef, binding_name: str) -> ProjectionOutcome:
        resource = self.store.get(ref.api_version, ref.kind, ref.namespace, ref.name)
        if resource is None:
            return ProjectionOutcome(target=ref)

        def mutate(current: Dict[str, Any]) -> ProjectionOutcome:
            paths = self.resolver.resolve(ref.kind, ref.api_version, ref.namespace, current)
            return self.projector.remove(current, paths, binding_name)

        try:
            return self._update_with_retry(resource, mutate)
        except BindingError as exc:
            logger.warning("cleanup of %s from %s failed: %s", binding_name, ref, exc)
            return ProjectionOutcome.failed(ref, exc)

    def _finalize(self, obj: Dict[str, Any], binding: ServiceBinding, result: ReconcileResult) -> None:
        namespace = self._namespace(binding)
        name = binding.metadata.name
        result.deleted = True
        refs = {
            TargetRef(projection.api_version, projection.kind, namespace, projection.name)
            for projection in binding.status.projections
        }
        try:
            selection = self.selector.select(namespace, binding.spec.application)
            refs.update(target.ref for target in selection.targets)
        except (TargetNotFound, InvalidBinding) as exc:
            logger.debug("no current targets for deleted binding %s/%s: %s", namespace, name, exc)

        for ref in sorted(refs, key=lambda item: (item.kind, item.name)):
            if self.stop.is_set():
                result.cancelled = True
                result.requeue = True
                return
            result.cleanups.append(self._remove_from(ref, name))

        failed = [cleanup for cleanup in result.cleanups if not cleanup.success]
        if failed:
            # the finalizer stays until every workload is clean
            result.requeue = True
            result.status = BindingStatus(
                observed_generation=binding.metadata.generation,
                conditions=merge_condition(
                    binding.status.conditions,
                    Condition(
                        type="Ready",
                        status="False",
                        reason=failed[0].reason,
                        message="; ".join(f"{c.target}: {c.message}" for c in failed),
                    ),
                    self._clock(),
                ),
                projections=binding.status.projections,
            )
            self._write_status(namespace, name, result.status)
            return

        derived = self.store.get("v1", "Secret", namespace, f"{name}{DERIVED_SECRET_SUFFIX}")
        labels = ((derived or {}).get("metadata") or {}).get("labels") or {}
        if derived is not None and labels.get(BINDING_LABEL) == name:
            self.store.delete("v1", "Secret", namespace, f"{name}{DERIVED_SECRET_SUFFIX}")
            logger.info("deleted secret %s/%s%s", namespace, name, DERIVED_SECRET_SUFFIX)

        self._set_finalizer(obj, present=False)
        logger.info("binding %s/%s cleaned up from %d workload(s)", namespace, name, len(result.cleanups))

    def _set_finalizer(self, obj: Dict[str, Any], *, present: bool) -> None:
        def mutate(current: Dict[str, Any]) -> ProjectionOutcome:
            updated = copy.deepcopy(current)
            finalizers = [item for item in updated.setdefault("metadata", {}).get("finalizers") or [] if item != BINDING_FINALIZER]
            if present:
                finalizers.append(BINDING_FINALIZER)
            updated["metadata"]["finalizers"] = finalizers
            return _diff(current, updated)

        self._update_with_retry(obj, mutate)

    def _write_status(self, namespace: str, name: str, status: BindingStatus) -> None:
        """Write ``status`` to the binding; store failures propagate to the caller."""

        current = self.store.get(BINDING_API_VERSION, BINDING_KIND, namespace, name)
        if current is None:
            return
        rendered = status.model_dump(by_alias=True, exclude_none=True)

        def mutate(obj: Dict[str, Any]) -> ProjectionOutcome:
            updated = copy.deepcopy(obj)
            updated["status"] = rendered
            return _diff(obj, updated)

        self._update_with_retry(current, mutate, status=True)

    def _failure_status(self, obj: Dict[str, Any], error: BindingError) -> BindingStatus:
        metadata = obj.get("metadata") or {}
        try:
            previous = BindingStatus.model_validate(obj.get("status") or {})
        except ValidationError:
            previous = BindingStatus()
        condition = Condition(type="Ready", status="False", reason=error.reason, message=str(error))
        return BindingStatus(
            observed_generation=metadata.get("generation"),
            conditions=merge_condition(previous.conditions, condition, self._clock()),
            projections=previous.projections,
        )

    def _record_failure(self, namespace: str, name: str, error: BindingError) -> Optional[BindingStatus]:
        try:
            obj = self.store.get(BINDING_API_VERSION, BINDING_KIND, namespace, name)
            if obj is None:
                return None
            status = self._failure_status(obj, error)
            self._write_status(namespace, name, status)
        except BindingError as exc:
            logger.warning("could not record status of %s/%s: %s", namespace, name, exc)
            return None
        return status


def binding_keys(objects: Iterable[Dict[str, Any]]) -> List[Tuple[str, str]]:
    keys = []
    for obj in objects:
        if obj.get("kind") != BINDING_KIND or obj.get("apiVersion") != BINDING_API_VERSION:
            continue
        metadata = obj.get("metadata") or {}
        keys.append((metadata.get("namespace") or "default", metadata.get("name") or ""))
    return sorted(keys)


__all__ = ["ReconcileResult", "Reconciler", "binding_keys"]
