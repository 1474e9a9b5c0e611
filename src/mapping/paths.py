from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Tuple

from jsonpath_ng import JSONPath
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError
from jsonpath_ng.ext import parse as jsonpath_parse

from src.common.errors import UnsupportedShape

DEFAULT_CONTAINERS_PATHS: Tuple[str, ...] = (
    ".spec.template.spec.initContainers[*]",
    ".spec.template.spec.containers[*]",
)
DEFAULT_VOLUMES_PATH = ".spec.template.spec.volumes"


@dataclass(frozen=True)
class PathSet:
    """Locations of containers, env lists, volume-mount lists and volumes in a resource."""

    containers: Tuple[str, ...] = ()
    envs: Tuple[str, ...] = ()
    volume_mounts: Tuple[str, ...] = ()
    volumes: str = ""
    default: bool = field(default=False, compare=False)


DEFAULT_PATHS = PathSet(
    containers=DEFAULT_CONTAINERS_PATHS,
    volumes=DEFAULT_VOLUMES_PATH,
    default=True,
)


@lru_cache(maxsize=256)
def compile_path(expression: str) -> JSONPath:
    text = (expression or "").strip()
    if not text:
        raise UnsupportedShape("empty path expression")
    if text.startswith("."):
        text = "$" + text
    try:
        return jsonpath_parse(text)
    except (JsonPathLexerError, JsonPathParserError) as exc:
        raise UnsupportedShape(f"invalid path expression {expression!r}: {exc}") from exc


def find_values(document: Dict[str, Any], expression: str) -> List[Any]:
    return [match.value for match in compile_path(expression).find(document)]


def find_objects(document: Dict[str, Any], expression: str) -> List[Dict[str, Any]]:
    return [value for value in find_values(document, expression) if isinstance(value, dict)]


def ensure_list(document: Dict[str, Any], expression: str) -> List[Any]:
    """Return the list at ``expression``, creating it (and missing parents) when absent."""

    path = compile_path(expression)
    matches = path.find(document)
    if not matches:
        path.update_or_create(document, [])
        matches = path.find(document)
    if not matches:
        raise UnsupportedShape(f"cannot create list at {expression!r}")
    value = matches[0].value
    if value is None:
        path.update(document, [])
        value = path.find(document)[0].value
    if not isinstance(value, list):
        raise UnsupportedShape(f"{expression!r} does not point to a list")
    return value


def ensure_field_list(container: Dict[str, Any], field_name: str) -> List[Any]:
    value = container.get(field_name)
    if value is None:
        value = []
        container[field_name] = value
    if not isinstance(value, list):
        raise UnsupportedShape(f"container field {field_name!r} is not a list")
    return value


__all__ = [
    "DEFAULT_PATHS",
    "PathSet",
    "compile_path",
    "ensure_field_list",
    "ensure_list",
    "find_objects",
    "find_values",
]
