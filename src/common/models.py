from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidBinding

BINDING_API_VERSION = "service.binding/v1alpha2"
BINDING_KIND = "ServiceBinding"
BINDING_FINALIZER = "service.binding/finalizer"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LabelSelectorRequirement(_Model):
    key: str
    operator: str
    values: List[str] = Field(default_factory=list)


class LabelSelector(_Model):
    match_labels: Dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: List[LabelSelectorRequirement] = Field(
        default_factory=list, alias="matchExpressions"
    )

    @property
    def empty(self) -> bool:
        return not self.match_labels and not self.match_expressions


class ApplicationReference(_Model):
    api_version: str = Field(..., alias="apiVersion")
    kind: str
    name: Optional[str] = None
    selector: Optional[LabelSelector] = None
    containers: List[Union[int, str]] = Field(
        default_factory=list,
        description="Container names or positions to bind; empty binds every container",
    )


class ServiceReference(_Model):
    api_version: str = Field("v1", alias="apiVersion")
    kind: str = "Secret"
    name: str
    namespace: Optional[str] = None


class EnvVar(_Model):
    name: str
    key: str


class Mapping(_Model):
    name: str
    value: str = ""


class BindingSpec(_Model):
    name: Optional[str] = None
    type: Optional[str] = None
    provider: Optional[str] = None
    application: ApplicationReference
    service: ServiceReference
    env: List[EnvVar] = Field(default_factory=list)
    mappings: List[Mapping] = Field(default_factory=list)

    @field_validator("mappings")
    @classmethod
    def _unique_mapping_names(cls, value: List[Mapping]) -> List[Mapping]:
        seen = set()
        for mapping in value:
            if mapping.name in seen:
                raise ValueError(f"duplicate mapping name {mapping.name!r}")
            seen.add(mapping.name)
        return value


class Condition(_Model):
    type: str = "Ready"
    status: str = "Unknown"
    last_transition_time: Optional[str] = Field(None, alias="lastTransitionTime")
    reason: Optional[str] = None
    message: Optional[str] = None


class ProjectedTarget(_Model):
    api_version: str = Field(..., alias="apiVersion")
    kind: str
    name: str


class BindingStatus(_Model):
    observed_generation: Optional[int] = Field(None, alias="observedGeneration")
    conditions: List[Condition] = Field(default_factory=list)
    projections: List[ProjectedTarget] = Field(default_factory=list)

    def condition(self, condition_type: str = "Ready") -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class ObjectMeta(_Model):
    name: str
    namespace: Optional[str] = None
    generation: Optional[int] = None
    deletion_timestamp: Optional[str] = Field(None, alias="deletionTimestamp")
    finalizers: List[str] = Field(default_factory=list)


class ServiceBinding(_Model):
    api_version: str = Field(BINDING_API_VERSION, alias="apiVersion")
    kind: str = BINDING_KIND
    metadata: ObjectMeta
    spec: BindingSpec
    status: BindingStatus = Field(default_factory=BindingStatus)

    @property
    def service_name(self) -> str:
        return self.spec.name or self.metadata.name

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ServiceBinding":
        try:
            return cls.model_validate(obj)
        except ValidationError as exc:
            raise InvalidBinding(f"invalid binding: {exc.errors()[0].get('msg')}") from exc


class MappingVersion(_Model):
    version: str
    containers: List[str] = Field(default_factory=list)
    envs: List[str] = Field(default_factory=list)
    volume_mounts: List[str] = Field(default_factory=list, alias="volumeMounts")
    volumes: str = ""


class WorkloadResourceMapping(_Model):
    metadata: ObjectMeta
    versions: List[MappingVersion] = Field(default_factory=list)

    @field_validator("versions")
    @classmethod
    def _unique_versions(cls, value: List[MappingVersion]) -> List[MappingVersion]:
        seen = set()
        for entry in value:
            if entry.version in seen:
                raise ValueError(f"duplicate mapping version {entry.version!r}")
            seen.add(entry.version)
        return value

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "WorkloadResourceMapping":
        spec = obj.get("spec") if isinstance(obj.get("spec"), dict) else {}
        try:
            return cls.model_validate(
                {"metadata": obj.get("metadata") or {}, "versions": spec.get("versions") or []}
            )
        except ValidationError as exc:
            raise InvalidBinding(f"invalid resource mapping: {exc.errors()[0].get('msg')}") from exc

    def for_version(self, version: str) -> Optional[MappingVersion]:
        for entry in self.versions:
            if entry.version == version:
                return entry
        return None


__all__ = [
    "ApplicationReference",
    "BINDING_API_VERSION",
    "BINDING_FINALIZER",
    "BINDING_KIND",
    "BindingSpec",
    "BindingStatus",
    "Condition",
    "EnvVar",
    "LabelSelector",
    "LabelSelectorRequirement",
    "Mapping",
    "MappingVersion",
    "ObjectMeta",
    "ProjectedTarget",
    "ServiceBinding",
    "ServiceReference",
    "WorkloadResourceMapping",
]
