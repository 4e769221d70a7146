from __future__ import annotations

import bisect
import hashlib
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple


class Partitioner(Protocol):
    def find_replicas(self, key: str) -> List[str]:
        """Ordered candidate replicas for ``key``; the first one is tried as primary."""
        ...


class StaticPartitioner:
    """Same node order for every key, unless a key has an explicit ordering."""

    def __init__(
        self,
        nodes: Sequence[str],
        overrides: Optional[Dict[str, Sequence[str]]] = None,
    ) -> None:
        if not nodes:
            raise ValueError("StaticPartitioner requires at least one node")
        self._nodes: List[str] = list(nodes)
        self._overrides: Dict[str, List[str]] = {
            key: list(order) for key, order in (overrides or {}).items()
        }

    def find_replicas(self, key: str) -> List[str]:
        return list(self._overrides.get(key, self._nodes))


class ConsistentHashRing:
    """Hash ring with virtual nodes; a key's replicas are the next distinct nodes clockwise."""

    def __init__(
        self,
        nodes: Iterable[str] = (),
        replication_factor: int = 3,
        virtual_nodes: int = 32,
    ) -> None:
        if replication_factor < 1:
            raise ValueError(f"replication_factor must be at least 1, got {replication_factor}")
        if virtual_nodes < 1:
            raise ValueError(f"virtual_nodes must be at least 1, got {virtual_nodes}")
        self.replication_factor = replication_factor
        self.virtual_nodes = virtual_nodes
        self._ring: List[Tuple[int, str]] = []
        self._nodes: List[str] = []
        for node_id in nodes:
            self.add_node(node_id)

    @staticmethod
    def _hash(value: str) -> int:
        return int(hashlib.md5(value.encode("utf-8")).hexdigest(), 16)

    @property
    def nodes(self) -> List[str]:
        return list(self._nodes)

    def add_node(self, node_id: str) -> None:
        if node_id in self._nodes:
            return
        self._nodes.append(node_id)
        for i in range(self.virtual_nodes):
            bisect.insort(self._ring, (self._hash(f"{node_id}#{i}"), node_id))

    def remove_node(self, node_id: str) -> None:
        if node_id not in self._nodes:
            return
        self._nodes.remove(node_id)
        self._ring = [(h, n) for (h, n) in self._ring if n != node_id]

    def find_replicas(self, key: str) -> List[str]:
        if not self._ring:
            return []
        wanted = min(self.replication_factor, len(self._nodes))
        start = bisect.bisect(self._ring, (self._hash(key), chr(0x10FFFF)))
        replicas: List[str] = []
        for offset in range(len(self._ring)):
            node_id = self._ring[(start + offset) % len(self._ring)][1]
            if node_id not in replicas:
                replicas.append(node_id)
                if len(replicas) == wanted:
                    break
        return replicas
