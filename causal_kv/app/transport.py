from __future__ import annotations

import logging
from typing import Any, FrozenSet, Protocol
from urllib.parse import quote

import httpx

from .errors import ObsoleteVersionError, ReplicaUnavailableError
from .store import ReplicaStore
from .version import VersionVector
from .versioned import VersionedValue

logger = logging.getLogger(__name__)


class ReplicaClient(Protocol):
    """The three replica operations, callable in-process or across nodes."""

    node_id: str

    async def put_as_primary(
        self, key: str, value: str, known_version: VersionVector
    ) -> VersionedValue: ...

    async def put(self, key: str, versioned: VersionedValue) -> VersionedValue: ...

    async def get(self, key: str) -> FrozenSet[VersionedValue]: ...


class LocalReplica:
    """In-process access to a ReplicaStore; ``available`` simulates reachability."""

    def __init__(self, store: ReplicaStore, available: bool = True) -> None:
        self.store = store
        self.available = available

    @property
    def node_id(self) -> str:
        return self.store.node_id

    def _check(self) -> None:
        if not self.available:
            raise ReplicaUnavailableError(self.node_id, "node is unreachable")

    async def put_as_primary(
        self, key: str, value: str, known_version: VersionVector
    ) -> VersionedValue:
        self._check()
        return await self.store.put_as_primary(key, value, known_version)

    async def put(self, key: str, versioned: VersionedValue) -> VersionedValue:
        self._check()
        return await self.store.put(key, versioned)

    async def get(self, key: str) -> FrozenSet[VersionedValue]:
        self._check()
        return await self.store.get(key)


class HttpReplica:
    """Calls a peer's node-internal endpoints over HTTP."""

    def __init__(
        self,
        node_id: str,
        base_url: str,
        client: httpx.AsyncClient,
        timeout_ms: int = 3000,
    ) -> None:
        self.node_id = node_id
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout_ms / 1000

    def _url(self, key: str, suffix: str = "") -> str:
        return f"{self._base_url}/internal/kv/{quote(key, safe='')}{suffix}"

    async def _request(self, method: str, url: str, key: str, payload: Any = None) -> Any:
        try:
            response = await self._client.request(
                method, url, json=payload, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            logger.warning("Request to %s (%s) failed: %s", self.node_id, url, exc)
            raise ReplicaUnavailableError(self.node_id, str(exc) or type(exc).__name__) from exc

        if response.status_code == httpx.codes.CONFLICT:
            raise ObsoleteVersionError(key, payload.get("version") if payload else None)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ReplicaUnavailableError(
                self.node_id, f"unexpected status {response.status_code}"
            ) from exc
        try:
            return response.json()
        except ValueError as exc:
            logger.warning("Malformed response from %s (%s): %s", self.node_id, url, exc)
            raise ReplicaUnavailableError(self.node_id, "malformed response") from exc

    def _parse(self, data: Any) -> VersionedValue:
        try:
            if not isinstance(data.get("value"), str):
                raise TypeError("value must be a string")
            return VersionedValue.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Malformed payload from %s: %r", self.node_id, data)
            raise ReplicaUnavailableError(self.node_id, "malformed response") from exc

    async def put_as_primary(
        self, key: str, value: str, known_version: VersionVector
    ) -> VersionedValue:
        payload = {"value": value, "version": known_version.to_dict()}
        data = await self._request("POST", self._url(key, "/primary"), key, payload)
        return self._parse(data)

    async def put(self, key: str, versioned: VersionedValue) -> VersionedValue:
        data = await self._request("POST", self._url(key), key, versioned.to_dict())
        return self._parse(data)

    async def get(self, key: str) -> FrozenSet[VersionedValue]:
        data = await self._request("GET", self._url(key), key)
        items = data.get("values") if isinstance(data, dict) else None
        if not isinstance(items, list):
            logger.warning("Malformed payload from %s: %r", self.node_id, data)
            raise ReplicaUnavailableError(self.node_id, "malformed response")
        return frozenset(self._parse(item) for item in items)
