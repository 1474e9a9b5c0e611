from __future__ import annotations

import logging
import re
from graphlib import CycleError, TopologicalSorter
from typing import Dict, List, Mapping as MappingType, Optional, Sequence

from src.common.errors import CyclicMapping, UnresolvedReference
from src.common.models import Mapping

logger = logging.getLogger(__name__)

_REFERENCE_RE = re.compile(r"\{([-._a-zA-Z0-9]+)\}")


def template_references(template: str) -> List[str]:
    """Return the secret keys a template refers to, in order of first use."""

    seen: List[str] = []
    for match in _REFERENCE_RE.finditer(template or ""):
        key = match.group(1)
        if key not in seen:
            seen.append(key)
    return seen


def render_template(template: str, lookup: MappingType[str, str]) -> str:
    return _REFERENCE_RE.sub(lambda match: lookup[match.group(1)], template or "")


def project(
    raw: MappingType[str, str],
    mappings: Sequence[Mapping],
    *,
    overrides: Optional[MappingType[str, str]] = None,
) -> Dict[str, str]:
    """Derive the final secret entries from raw service credentials and mappings.

    A reference to a raw key always reads the raw value, so only references to
    other mappings order the evaluation. ``overrides`` are written last.
    """

    raw_values = {str(key): str(value) for key, value in raw.items()}
    by_name = {mapping.name: mapping for mapping in mappings}

    graph: Dict[str, List[str]] = {}
    for mapping in mappings:
        dependencies: List[str] = []
        for key in template_references(mapping.value):
            if key in raw_values:
                continue
            if key not in by_name:
                raise UnresolvedReference(key, referrer=mapping.name)
            dependencies.append(key)
        graph[mapping.name] = dependencies

    try:
        order = list(TopologicalSorter(graph).static_order())
    except CycleError as exc:
        cycle = exc.args[1] if len(exc.args) > 1 else sorted(graph)
        raise CyclicMapping(cycle) from exc

    derived: Dict[str, str] = {}
    for name in order:
        lookup = {**derived, **raw_values}
        derived[name] = render_template(by_name[name].value, lookup)

    final = dict(raw_values)
    final.update(derived)
    if overrides:
        final.update({key: str(value) for key, value in overrides.items() if value is not None})
    logger.debug("projected %d secret entries (%d derived)", len(final), len(derived))
    return final


__all__ = ["project", "render_template", "template_references"]
