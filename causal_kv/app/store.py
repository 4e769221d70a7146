from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, FrozenSet, List

from .errors import ObsoleteVersionError
from .version import VersionVector
from .versioned import VersionedValue, ordered

logger = logging.getLogger(__name__)


class ReplicaStore:
    """Per-node map from key to the antichain of its concurrent versions."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        self._data: Dict[str, FrozenSet[VersionedValue]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_guard = asyncio.Lock()

    async def _lock_for(self, key: str) -> asyncio.Lock:
        async with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def put_as_primary(
        self, key: str, value: str, known_version: VersionVector
    ) -> VersionedValue:
        """Stamp a write with this node's next counter and store it."""
        versioned = VersionedValue(value, known_version.increment(self.node_id))
        return await self.put(key, versioned)

    async def put(self, key: str, versioned: VersionedValue) -> VersionedValue:
        """Store an already stamped value, pruning whatever it supersedes."""
        lock = await self._lock_for(key)
        async with lock:
            existing = self._data.get(key, frozenset())
            for current in existing:
                if current.descends(versioned):
                    logger.info(
                        "[%s] rejected %r for %s: stored %r is at least as new",
                        self.node_id,
                        versioned.version,
                        key,
                        current.version,
                    )
                    raise ObsoleteVersionError(key, versioned.version, current.version)
            kept = [current for current in existing if not versioned.descends(current)]
            kept.append(versioned)
            self._data[key] = frozenset(kept)
            logger.debug(
                "[%s] stored %r for %s (%d pruned, %d siblings)",
                self.node_id,
                versioned.version,
                key,
                len(existing) - (len(kept) - 1),
                len(kept),
            )
            return versioned

    async def get(self, key: str) -> FrozenSet[VersionedValue]:
        return self._data.get(key, frozenset())

    async def keys(self) -> List[str]:
        return sorted(self._data)

    async def dump(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            key: [v.to_dict() for v in ordered(values)]
            for key, values in self._data.items()
        }

    async def reset(self) -> None:
        async with self._locks_guard:
            self._data.clear()
            self._locks.clear()
