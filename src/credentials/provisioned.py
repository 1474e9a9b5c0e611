from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, Tuple

from src.common.errors import InvalidBinding, TargetNotFound
from src.common.models import ServiceReference

logger = logging.getLogger(__name__)


def decode_secret(secret: Dict[str, Any]) -> Dict[str, str]:
    """Return a secret's entries as plain strings; ``stringData`` wins over ``data``."""

    entries: Dict[str, str] = {}
    data = secret.get("data") or {}
    if not isinstance(data, dict):
        raise InvalidBinding("secret data must be a mapping")
    for key, value in data.items():
        try:
            entries[str(key)] = base64.b64decode(str(value or ""), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise InvalidBinding(f"secret entry {key!r} is not valid base64 text") from exc
    string_data = secret.get("stringData") or {}
    if isinstance(string_data, dict):
        entries.update({str(key): str(value) for key, value in string_data.items()})
    return entries


def encode_secret_data(entries: Dict[str, str]) -> Dict[str, str]:
    return {
        key: base64.b64encode(value.encode("utf-8")).decode("ascii")
        for key, value in sorted(entries.items())
    }


def read_service_secret(store: Any, namespace: str, ref: ServiceReference) -> Tuple[str, Dict[str, str]]:
    """Resolve a provisioned service to ``(secret name, entries)``.

    A ``Secret`` reference is read directly; any other kind must publish the
    secret name at ``status.binding.name``.
    """

    ref_namespace = ref.namespace or namespace
    if ref.kind == "Secret" and ref.api_version == "v1":
        secret_name = ref.name
    else:
        service = store.get(ref.api_version, ref.kind, ref_namespace, ref.name)
        if service is None:
            raise TargetNotFound(f"service {ref.kind}/{ref.name} not found in {ref_namespace}")
        status = service.get("status") if isinstance(service.get("status"), dict) else {}
        binding = status.get("binding") if isinstance(status.get("binding"), dict) else {}
        secret_name = binding.get("name")
        if not isinstance(secret_name, str) or not secret_name:
            raise TargetNotFound(f"service {ref.kind}/{ref.name} does not expose status.binding.name")

    secret = store.get("v1", "Secret", ref_namespace, secret_name)
    if secret is None:
        raise TargetNotFound(f"secret {secret_name} not found in {ref_namespace}")
    entries = decode_secret(secret)
    logger.debug("read %d entries from secret %s/%s", len(entries), ref_namespace, secret_name)
    return secret_name, entries


__all__ = ["decode_secret", "encode_secret_data", "read_service_secret"]
