"""Path mapping package for locating containers and volumes in workloads."""

from .paths import DEFAULT_PATHS, PathSet
from .resolver import MappingResolver

__all__ = ["DEFAULT_PATHS", "MappingResolver", "PathSet"]
