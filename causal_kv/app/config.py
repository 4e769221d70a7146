from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

PARTITIONERS = ("ring", "static")


def _parse_peers(raw: str) -> Dict[str, str]:
    peers: Dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        node_id, sep, url = entry.partition("=")
        node_id, url = node_id.strip(), url.strip()
        if not sep or not node_id or not url:
            raise ValueError(f"PEERS entries must look like id=url, got {entry!r}")
        if node_id in peers:
            raise ValueError(f"Peer {node_id!r} listed more than once")
        peers[node_id] = url
    return peers


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:

    node_id: str
    host: str = "0.0.0.0"
    port: int = 8000
    peers: Dict[str, str] = field(default_factory=dict)
    partitioner: str = "ring"
    replication_factor: Optional[int] = None
    virtual_nodes: int = 32
    request_timeout_ms: int = 3000
    read_repair: bool = False
    static_order: List[str] = field(default_factory=list)

    @property
    def cluster(self) -> List[str]:
        """Every node id, this node first, peers in configured order."""
        return [self.node_id, *self.peers]

    @property
    def placement_order(self) -> List[str]:
        """Node order shared by the whole cluster for static placement."""
        return list(self.static_order) or sorted(self.cluster)

    @property
    def effective_replication_factor(self) -> int:
        if self.replication_factor is None:
            return len(self.cluster)
        return self.replication_factor

    def validate(self) -> None:
        if not self.node_id:
            raise ValueError("NODE_ID is required")
        if self.node_id in self.peers:
            raise ValueError(f"Node {self.node_id!r} cannot be its own peer")
        if self.partitioner not in PARTITIONERS:
            raise ValueError(
                f"PARTITIONER must be one of {', '.join(PARTITIONERS)}, got {self.partitioner!r}"
            )
        factor = self.effective_replication_factor
        if factor < 1 or factor > len(self.cluster):
            raise ValueError(
                f"REPLICATION_FACTOR must be between 1 and {len(self.cluster)}, got {factor}"
            )
        if self.static_order and sorted(self.static_order) != sorted(self.cluster):
            raise ValueError("STATIC_ORDER must list every cluster node exactly once")
        if self.virtual_nodes < 1:
            raise ValueError("VIRTUAL_NODES must be positive")
        if self.request_timeout_ms <= 0:
            raise ValueError("REQUEST_TIMEOUT_MS must be positive")

    @classmethod
    def from_env(cls) -> "Settings":
        node_id = os.getenv("NODE_ID", "").strip()
        host = os.getenv("HOST", "0.0.0.0").strip()
        port = int(os.getenv("PORT", "8000"))
        peers = _parse_peers(os.getenv("PEERS", ""))
        partitioner = os.getenv("PARTITIONER", "ring").strip().lower()
        factor_raw = os.getenv("REPLICATION_FACTOR", "").strip()
        replication_factor = int(factor_raw) if factor_raw else None
        virtual_nodes = int(os.getenv("VIRTUAL_NODES", "32"))
        timeout = int(os.getenv("REQUEST_TIMEOUT_MS", "3000"))
        read_repair = _parse_bool(os.getenv("READ_REPAIR", "false"))
        static_order = [
            node.strip() for node in os.getenv("STATIC_ORDER", "").split(",") if node.strip()
        ]

        settings = cls(
            node_id=node_id,
            host=host,
            port=port,
            peers=peers,
            partitioner=partitioner,
            replication_factor=replication_factor,
            virtual_nodes=virtual_nodes,
            request_timeout_ms=timeout,
            read_repair=read_repair,
            static_order=static_order,
        )
        settings.validate()
        return settings
