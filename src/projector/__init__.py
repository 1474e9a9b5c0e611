"""Projector package for writing binding entries into workload resources."""

from .projector import BindingProjector, derived_name, ownership_key, read_created, read_record

__all__ = ["BindingProjector", "derived_name", "ownership_key", "read_created", "read_record"]
