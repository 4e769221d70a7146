from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import (
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
)

from .errors import (
    NoAvailableReplicaError,
    ObsoleteVersionError,
    ReplicaFailure,
    ReplicaUnavailableError,
)
from .partitioner import Partitioner
from .transport import ReplicaClient
from .version import VersionVector
from .versioned import TimestampedValue, VersionedValue, ordered

logger = logging.getLogger(__name__)

ConflictResolver = Callable[[FrozenSet[VersionedValue]], VersionedValue]


@dataclass
class WriteResult:
    key: str
    value: Optional[VersionedValue] = None
    primary: Optional[str] = None
    replicated_to: List[str] = field(default_factory=list)
    failures: List[ReplicaFailure] = field(default_factory=list)
    replication_failures: List[ReplicaFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None

    def unwrap(self) -> VersionedValue:
        if self.value is None:
            raise NoAvailableReplicaError(self.key, self.failures)
        return self.value


@dataclass
class ReadResult:
    key: str
    values: FrozenSet[VersionedValue] = frozenset()
    responded: List[str] = field(default_factory=list)
    failures: List[ReplicaFailure] = field(default_factory=list)
    repaired: List[str] = field(default_factory=list)

    @property
    def conflict(self) -> bool:
        return len(self.values) > 1


def maximal_versions(values: Iterable[VersionedValue]) -> FrozenSet[VersionedValue]:
    """Drop duplicates and every value some other distinct value supersedes.

    Two different values stamped with the same vector are both kept and
    show up as a conflict.
    """
    unique = set(values)
    return frozenset(
        candidate
        for candidate in unique
        if not any(
            other.version != candidate.version and other.descends(candidate)
            for other in unique
        )
    )


def select_last_write(values: Iterable[TimestampedValue]) -> Optional[TimestampedValue]:
    """Pick the value with the greatest timestamp, ignoring version vectors.

    Relies on reasonably synchronised clocks and silently discards concurrent
    writes. Ties go to the first value seen.
    """
    winner: Optional[TimestampedValue] = None
    for value in values:
        if winner is None or value.timestamp > winner.timestamp:
            winner = value
    return winner


def merge_versions(combine: Callable[[List[str]], str]) -> ConflictResolver:
    """Resolver that folds all siblings into one value covering every vector.

    Writing the result back with its version as the known version supersedes
    all of the siblings it was built from.
    """

    def resolve(values: FrozenSet[VersionedValue]) -> VersionedValue:
        siblings = ordered(values)
        version = reduce(
            lambda acc, v: acc.merged(v.version), siblings, VersionVector()
        )
        return VersionedValue(combine([v.value for v in siblings]), version)

    return resolve


class Coordinator:
    """Client-facing entry point; routes writes to a primary and fans reads out."""

    def __init__(
        self,
        partitioner: Partitioner,
        replicas: Mapping[str, ReplicaClient],
        read_repair: bool = False,
    ) -> None:
        self._partitioner = partitioner
        self._replicas: Dict[str, ReplicaClient] = dict(replicas)
        self._read_repair = read_repair

    def _client(self, node_id: str) -> ReplicaClient:
        replica = self._replicas.get(node_id)
        if replica is None:
            raise ReplicaUnavailableError(node_id, "no client configured")
        return replica

    async def put(
        self, key: str, value: str, known_version: Optional[VersionVector] = None
    ) -> WriteResult:
        known_version = known_version if known_version is not None else VersionVector()
        candidates = self._partitioner.find_replicas(key)
        result = WriteResult(key=key)

        for index, node_id in enumerate(candidates):
            try:
                stored = await self._client(node_id).put_as_primary(key, value, known_version)
            except (ObsoleteVersionError, ReplicaUnavailableError) as exc:
                logger.warning("Primary write of %s on %s failed: %s", key, node_id, exc)
                result.failures.append(ReplicaFailure(node_id, exc))
                continue
            result.value = stored
            result.primary = node_id
            await self._replicate(key, stored, candidates[index + 1 :], result)
            return result

        logger.error(
            "No replica accepted %s (%d candidates, %d failures)",
            key,
            len(candidates),
            len(result.failures),
        )
        return result

    async def _replicate(
        self,
        key: str,
        versioned: VersionedValue,
        nodes: Sequence[str],
        result: WriteResult,
    ) -> None:
        """Send the stamped value to the secondaries once; failures are only recorded."""

        async def _send(node_id: str) -> VersionedValue:
            return await self._client(node_id).put(key, versioned)

        outcomes = await asyncio.gather(*(_send(n) for n in nodes), return_exceptions=True)
        for node_id, outcome in zip(nodes, outcomes):
            if isinstance(outcome, (ObsoleteVersionError, ReplicaUnavailableError)):
                logger.warning("Replication of %s to %s failed: %s", key, node_id, outcome)
                result.replication_failures.append(ReplicaFailure(node_id, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.replicated_to.append(node_id)

    async def get(self, key: str) -> ReadResult:
        candidates = self._partitioner.find_replicas(key)
        result = ReadResult(key=key)

        async def _fetch(node_id: str) -> FrozenSet[VersionedValue]:
            return await self._client(node_id).get(key)

        outcomes = await asyncio.gather(*(_fetch(n) for n in candidates), return_exceptions=True)
        responses: Dict[str, FrozenSet[VersionedValue]] = {}
        for node_id, outcome in zip(candidates, outcomes):
            if isinstance(outcome, ReplicaUnavailableError):
                logger.warning("Read of %s from %s failed: %s", key, node_id, outcome)
                result.failures.append(ReplicaFailure(node_id, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                responses[node_id] = outcome
                result.responded.append(node_id)

        result.values = maximal_versions(v for values in responses.values() for v in values)
        if self._read_repair and result.values:
            result.repaired = await self._repair(key, result.values, responses)
        return result

    async def _repair(
        self,
        key: str,
        values: FrozenSet[VersionedValue],
        responses: Mapping[str, FrozenSet[VersionedValue]],
    ) -> List[str]:
        """Push the merged versions to replicas that answered without them."""
        stale = {
            node_id: [v for v in values if v not in seen]
            for node_id, seen in responses.items()
        }
        stale = {node_id: missing for node_id, missing in stale.items() if missing}

        async def _push(node_id: str, missing: List[VersionedValue]) -> None:
            for versioned in missing:
                await self._client(node_id).put(key, versioned)

        repairs: List[Awaitable[None]] = [_push(n, m) for n, m in stale.items()]
        outcomes = await asyncio.gather(*repairs, return_exceptions=True)
        repaired: List[str] = []
        for node_id, outcome in zip(stale, outcomes):
            if isinstance(outcome, (ObsoleteVersionError, ReplicaUnavailableError)):
                logger.info("Read repair of %s on %s skipped: %s", key, node_id, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                repaired.append(node_id)
        if repaired:
            logger.info("Read repair of %s updated %s", key, ", ".join(repaired))
        return repaired

    async def get_values(self, key: str) -> FrozenSet[VersionedValue]:
        return (await self.get(key)).values

    async def get_resolved_value(
        self, key: str, resolver: ConflictResolver
    ) -> Optional[VersionedValue]:
        """Read ``key`` and let ``resolver`` choose or synthesise a single value.

        Exceptions raised by the resolver reach the caller unchanged.
        """
        values = await self.get_values(key)
        if not values:
            return None
        return resolver(values)

    @staticmethod
    def get_with_last_write_wins(
        values: Iterable[TimestampedValue],
    ) -> Optional[TimestampedValue]:
        return select_last_write(values)
