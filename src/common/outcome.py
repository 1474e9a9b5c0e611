from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .kinds import object_key


@dataclass(frozen=True)
class TargetRef:
    api_version: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def of(cls, obj: Dict[str, Any]) -> "TargetRef":
        return cls(*object_key(obj))

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"

    def to_dict(self) -> Dict[str, str]:
        return {"apiVersion": self.api_version, "kind": self.kind, "name": self.name}


@dataclass
class ProjectionOutcome:
    target: Optional[TargetRef]
    secret_name: Optional[str] = None
    containers: List[str] = field(default_factory=list)
    success: bool = True
    reason: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    patch: List[Dict[str, Any]] = field(default_factory=list)
    patched: Optional[Dict[str, Any]] = None

    @classmethod
    def failed(
        cls, target: Optional[TargetRef], error: Exception, secret_name: Optional[str] = None
    ) -> "ProjectionOutcome":
        return cls(
            target=target,
            secret_name=secret_name,
            success=False,
            reason=getattr(error, "reason", type(error).__name__),
            message=str(error),
            retryable=bool(getattr(error, "retryable", False)),
        )

    @property
    def changed(self) -> bool:
        return bool(self.patch)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "target": self.target.to_dict() if self.target else None,
            "secret": self.secret_name,
            "containers": list(self.containers),
            "success": self.success,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        if self.message is not None:
            data["message"] = self.message
        if self.patch:
            data["patch"] = self.patch
        return data


__all__ = ["ProjectionOutcome", "TargetRef"]
