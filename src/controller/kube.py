from __future__ import annotations

import logging
import os
import random
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from src.common.config import ProjectorConfig
from src.common.errors import Conflict, FetchFailed
from src.common.kinds import object_key, plural_for_kind, split_api_version

logger = logging.getLogger(__name__)

_RETRY_STATUS = {429, 500, 502, 503, 504}


def _ok(response: httpx.Response) -> httpx.Response:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        request = exc.request
        raise FetchFailed(f"{request.method} {request.url.path} returned {response.status_code}") from exc
    return response


class KubernetesStore:
    """Object store backed by the Kubernetes REST API with bounded retries and backoff."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout_seconds: float = 10.0,
        retries: int = 3,
        backoff_seconds: float = 0.1,
        seed: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
        verify: Any = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url or not base_url.startswith("http"):
            raise ValueError("API server URL must start with http or https")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.retries = max(0, int(retries))
        self.backoff_seconds = backoff_seconds
        self._rng = random.Random(seed) if seed is not None else random.Random()
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
            verify=verify,
        )

    @classmethod
    def from_config(cls, config: ProjectorConfig, **kwargs: Any) -> "KubernetesStore":
        token = None
        if config.token_env:
            token = os.getenv(config.token_env)
            if not token:
                raise RuntimeError(f"Environment variable {config.token_env} not set")
        return cls(
            config.api_server,
            token,
            timeout_seconds=config.timeout_seconds,
            retries=config.fetch_retries,
            backoff_seconds=config.backoff_seconds,
            seed=config.seed,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "KubernetesStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", self._path(api_version, kind, namespace, name))
        if response.status_code == 404:
            return None
        return _ok(response).json()

    def list(self, api_version: str, kind: str, namespace: Optional[str]) -> List[Dict[str, Any]]:
        response = self._request("GET", self._path(api_version, kind, namespace))
        if response.status_code == 404:
            return []
        items = _ok(response).json().get("items") or []
        for item in items:
            # list responses omit per-item type metadata
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind, namespace, _ = object_key(obj)
        response = self._request("POST", self._path(api_version, kind, namespace or None), json=obj)
        return self._checked(response, obj)

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind, namespace, name = object_key(obj)
        response = self._request("PUT", self._path(api_version, kind, namespace or None, name), json=obj)
        return self._checked(response, obj)

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind, namespace, name = object_key(obj)
        path = self._path(api_version, kind, namespace or None, name) + "/status"
        response = self._request("PUT", path, json=obj)
        return self._checked(response, obj)

    def delete(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> None:
        response = self._request("DELETE", self._path(api_version, kind, namespace, name))
        if response.status_code == 404:
            return
        _ok(response)

    @staticmethod
    def _path(api_version: str, kind: str, namespace: Optional[str], name: Optional[str] = None) -> str:
        group, version = split_api_version(api_version)
        parts = [f"/apis/{group}/{version}" if group else f"/api/{version}"]
        if namespace:
            parts.append(f"namespaces/{namespace}")
        parts.append(plural_for_kind(kind))
        if name:
            parts.append(name)
        return "/".join(parts)

    @staticmethod
    def _checked(response: httpx.Response, obj: Dict[str, Any]) -> Dict[str, Any]:
        if response.status_code == 409:
            _, kind, _, name = object_key(obj)
            raise Conflict(f"{kind}/{name}: {response.text}")
        return _ok(response).json()

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = self._client.request(method, path, json=json)
            except httpx.TransportError as exc:
                if attempt >= self.retries:
                    raise FetchFailed(f"{method} {path} failed after {attempt + 1} attempt(s): {exc}") from exc
                logger.warning("%s %s failed (%s); retrying", method, path, exc)
            else:
                if response.status_code not in _RETRY_STATUS or attempt >= self.retries:
                    return response
                logger.warning("%s %s returned %d; retrying", method, path, response.status_code)
            self._sleep(self._backoff_seconds(attempt))
            attempt += 1

    def _backoff_seconds(self, attempt: int) -> float:
        base = self.backoff_seconds * (2 ** attempt)
        jitter = self._rng.uniform(0, base)
        return base + jitter


__all__ = ["KubernetesStore"]
