"""Credential package: provisioned service lookup and secret entry derivation."""

from .projector import project, render_template, template_references
from .provisioned import decode_secret, encode_secret_data, read_service_secret

__all__ = [
    "decode_secret",
    "encode_secret_data",
    "project",
    "read_service_secret",
    "render_template",
    "template_references",
]
