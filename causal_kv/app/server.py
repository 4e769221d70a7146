from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, NonNegativeInt

from .config import Settings
from .coordinator import Coordinator
from .errors import ObsoleteVersionError
from .partitioner import ConsistentHashRing, Partitioner, StaticPartitioner
from .store import ReplicaStore
from .transport import HttpReplica, LocalReplica, ReplicaClient
from .version import VersionVector
from .versioned import VersionedValue, ordered

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


class VersionedPayload(BaseModel):
    """A value already carrying the vector it is stored or stamped with."""

    value: str
    version: Dict[str, NonNegativeInt]


class WriteRequest(BaseModel):
    """Client write; ``version`` is the context of the last read, omitted for a blind write."""

    value: str
    version: Optional[Dict[str, NonNegativeInt]] = None


def build_partitioner(settings: Settings) -> Partitioner:
    if settings.partitioner == "static":
        return StaticPartitioner(settings.placement_order[: settings.effective_replication_factor])
    return ConsistentHashRing(
        settings.cluster,
        replication_factor=settings.effective_replication_factor,
        virtual_nodes=settings.virtual_nodes,
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ReplicaStore:
    return request.app.state.store


def get_coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator


def _values_payload(values) -> List[dict]:
    return [v.to_dict() for v in ordered(values)]


def create_app(
    settings: Settings,
    store: Optional[ReplicaStore] = None,
    replicas: Optional[Mapping[str, ReplicaClient]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Wire one node: its local store, the peer transports and the coordinator.

    ``replicas`` replaces the HTTP peer clients entirely; otherwise peers are
    reached through ``client`` (created here and closed on shutdown if omitted).
    """
    store = store or ReplicaStore(settings.node_id)
    owned_client: Optional[httpx.AsyncClient] = None
    if replicas is None:
        if client is None:
            client = owned_client = httpx.AsyncClient()
        peers: Dict[str, ReplicaClient] = {settings.node_id: LocalReplica(store)}
        for peer_id, url in settings.peers.items():
            peers[peer_id] = HttpReplica(peer_id, url, client, settings.request_timeout_ms)
        replicas = peers

    app = FastAPI(title=f"Causal KV node {settings.node_id}")
    app.state.settings = settings
    app.state.store = store
    app.state.coordinator = Coordinator(
        build_partitioner(settings), replicas, read_repair=settings.read_repair
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info(
            "Node %s online with %s peers (partitioner=%s, replication_factor=%s, read_repair=%s)",
            settings.node_id,
            len(settings.peers),
            settings.partitioner,
            settings.effective_replication_factor,
            settings.read_repair,
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        if owned_client is not None:
            await owned_client.aclose()

    @app.get("/health")
    async def health(settings: Settings = Depends(get_settings)) -> dict:
        return {"status": "ok", "node": settings.node_id}

    @app.get("/internal/kv/{key}")
    async def local_read(key: str, store: ReplicaStore = Depends(get_store)) -> dict:
        return {"key": key, "values": _values_payload(await store.get(key))}

    @app.post("/internal/kv/{key}/primary")
    async def primary_write(
        key: str,
        payload: VersionedPayload,
        store: ReplicaStore = Depends(get_store),
    ) -> dict:
        try:
            stored = await store.put_as_primary(
                key, payload.value, VersionVector(payload.version)
            )
        except ObsoleteVersionError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return stored.to_dict()

    @app.post("/internal/kv/{key}")
    async def replica_write(
        key: str,
        payload: VersionedPayload,
        store: ReplicaStore = Depends(get_store),
    ) -> dict:
        versioned = VersionedValue(payload.value, VersionVector(payload.version))
        try:
            stored = await store.put(key, versioned)
        except ObsoleteVersionError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return stored.to_dict()

    @app.put("/kv/{key}")
    async def write_key(
        key: str,
        payload: WriteRequest,
        coordinator: Coordinator = Depends(get_coordinator),
    ) -> dict:
        known = VersionVector(payload.version) if payload.version is not None else None
        result = await coordinator.put(key, payload.value, known)
        if not result.ok:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "message": "No replica accepted the write",
                    "failures": [f.to_dict() for f in result.failures],
                },
            )
        return {
            "key": key,
            **result.unwrap().to_dict(),
            "primary": result.primary,
            "replicated_to": result.replicated_to,
            "replication_failures": [f.to_dict() for f in result.replication_failures],
        }

    @app.get("/kv/{key}")
    async def read_key(
        key: str, coordinator: Coordinator = Depends(get_coordinator)
    ) -> dict:
        result = await coordinator.get(key)
        if not result.values:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Key not found")
        return {
            "key": key,
            "values": _values_payload(result.values),
            "conflict": result.conflict,
            "responded": result.responded,
            "failures": [f.to_dict() for f in result.failures],
        }

    @app.get("/kv")
    async def dump(store: ReplicaStore = Depends(get_store)) -> dict:
        return await store.dump()

    @app.post("/reset")
    async def reset(store: ReplicaStore = Depends(get_store)) -> dict:
        await store.reset()
        return {"status": "cleared"}

    return app


def app_from_env() -> FastAPI:
    """Factory for ``uvicorn --factory causal_kv.app.server:app_from_env``."""
    return create_app(Settings.from_env())
