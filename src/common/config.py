from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

ENV_PREFIX = "BINDING_"
DEFAULT_MOUNT_ROOT = "/bindings"


@dataclass(frozen=True)
class ProjectorConfig:
    mount_root: str = DEFAULT_MOUNT_ROOT
    conflict_retries: int = 5
    backoff_seconds: float = 0.1
    fetch_retries: int = 3
    timeout_seconds: float = 10.0
    api_server: str = "https://kubernetes.default.svc"
    token_env: Optional[str] = "BINDING_TOKEN"
    namespace: Optional[str] = None
    jobs: int = 1
    seed: Optional[int] = None

    def with_overrides(self, **overrides: Any) -> "ProjectorConfig":
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


def _coerce(name: str, raw: Any) -> Any:
    field_types = {field.name: field.type for field in fields(ProjectorConfig)}
    annotation = str(field_types[name])
    if raw is None:
        return None
    if "int" in annotation:
        return int(raw)
    if "float" in annotation:
        return float(raw)
    return str(raw)


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> ProjectorConfig:
    """Build a config from defaults, an optional YAML file, then ``BINDING_*`` env vars."""

    known = {field.name for field in fields(ProjectorConfig)}
    values: Dict[str, Any] = {}

    if path is not None:
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ValueError(f"config file not found: {path}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a mapping")
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown config key(s): {', '.join(unknown)}")
        values.update({key: _coerce(key, value) for key, value in data.items()})

    env = os.environ if environ is None else environ
    for name in known:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = _coerce(name, raw)

    return ProjectorConfig(**values)


__all__ = ["DEFAULT_MOUNT_ROOT", "ProjectorConfig", "load_config"]
