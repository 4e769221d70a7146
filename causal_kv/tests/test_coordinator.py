import asyncio
from typing import Dict, List, Optional

import pytest

from causal_kv.app.coordinator import (
    Coordinator,
    maximal_versions,
    merge_versions,
    select_last_write,
)
from causal_kv.app.errors import (
    NoAvailableReplicaError,
    ObsoleteVersionError,
    ReplicaUnavailableError,
)
from causal_kv.app.partitioner import StaticPartitioner
from causal_kv.app.store import ReplicaStore
from causal_kv.app.transport import LocalReplica
from causal_kv.app.version import VersionVector
from causal_kv.app.versioned import TimestampedValue, VersionedValue

NODES = ["blue", "green", "black"]


def _vv(value: str, **counters: int) -> VersionedValue:
    return VersionedValue(value, VersionVector(counters))


def _cluster(
    order: Optional[List[str]] = None, read_repair: bool = False
) -> tuple:
    replicas: Dict[str, LocalReplica] = {n: LocalReplica(ReplicaStore(n)) for n in NODES}
    partitioner = StaticPartitioner(order or NODES)
    return Coordinator(partitioner, replicas, read_repair=read_repair), replicas


def test_put_stamps_on_primary_and_replicates_verbatim() -> None:
    coordinator, replicas = _cluster(["green", "blue", "black"])

    async def scenario():
        result = await coordinator.put("name", "Alice")
        stored = {n: await r.store.get("name") for n, r in replicas.items()}
        return result, stored

    result, stored = asyncio.run(scenario())
    assert result.ok
    assert result.primary == "green"
    assert result.value == _vv("Alice", green=1)
    assert sorted(result.replicated_to) == ["black", "blue"]
    for node in NODES:
        assert stored[node] == frozenset({_vv("Alice", green=1)})


def test_end_to_end_conflict_is_exposed() -> None:
    coordinator, replicas = _cluster(["green", "blue", "black"])

    async def scenario():
        alice = await coordinator.put("name", "Alice", VersionVector())
        replicas["green"].available = False
        bob = await coordinator.put("name", "Bob", VersionVector())
        replicas["green"].available = True
        read = await coordinator.get("name")
        return alice, bob, read

    alice, bob, read = asyncio.run(scenario())
    assert alice.value == _vv("Alice", green=1)
    assert bob.primary == "blue"
    assert bob.value == _vv("Bob", blue=1)
    assert [f.node_id for f in bob.failures] == ["green"]
    assert bob.replicated_to == ["black"]
    assert read.values == frozenset({_vv("Alice", green=1), _vv("Bob", blue=1)})
    assert read.conflict


def test_put_fails_when_every_candidate_fails() -> None:
    coordinator, replicas = _cluster()
    for replica in replicas.values():
        replica.available = False

    result = asyncio.run(coordinator.put("k", "v"))
    assert not result.ok
    assert [f.node_id for f in result.failures] == NODES
    assert all(isinstance(f.error, ReplicaUnavailableError) for f in result.failures)
    with pytest.raises(NoAvailableReplicaError) as excinfo:
        result.unwrap()
    assert len(excinfo.value.failures) == 3


def test_obsolete_rejection_falls_through_to_next_candidate() -> None:
    coordinator, replicas = _cluster(["blue", "green"])

    async def scenario():
        await replicas["blue"].store.put("k", _vv("newer", blue=5))
        result = await coordinator.put("k", "stale", VersionVector({"blue": 4}))
        return result

    result = asyncio.run(scenario())
    assert result.primary == "green"
    assert isinstance(result.failures[0].error, ObsoleteVersionError)
    assert result.value == _vv("stale", blue=4, green=1)


def test_replication_failure_does_not_fail_write() -> None:
    coordinator, replicas = _cluster()
    replicas["black"].available = False

    async def scenario():
        result = await coordinator.put("k", "v")
        return result, await replicas["green"].store.get("k")

    result, on_green = asyncio.run(scenario())
    assert result.ok
    assert result.replicated_to == ["green"]
    assert [f.node_id for f in result.replication_failures] == ["black"]
    assert on_green == frozenset({result.value})


def test_unknown_candidate_counts_as_unavailable() -> None:
    replicas = {"blue": LocalReplica(ReplicaStore("blue"))}
    coordinator = Coordinator(StaticPartitioner(["ghost", "blue"]), replicas)
    result = asyncio.run(coordinator.put("k", "v"))
    assert result.primary == "blue"
    assert result.failures[0].node_id == "ghost"


def test_empty_candidate_list_fails() -> None:
    class Nowhere:
        def find_replicas(self, key: str) -> List[str]:
            return []

    result = asyncio.run(Coordinator(Nowhere(), {}).put("k", "v"))
    assert not result.ok
    with pytest.raises(NoAvailableReplicaError):
        result.unwrap()


def test_read_excludes_unreachable_replicas() -> None:
    coordinator, replicas = _cluster()

    async def scenario():
        await coordinator.put("k", "v1")
        replicas["blue"].available = False
        return await coordinator.get("k")

    read = asyncio.run(scenario())
    assert read.values == frozenset({_vv("v1", blue=1)})
    assert read.responded == ["green", "black"]
    assert [f.node_id for f in read.failures] == ["blue"]


def test_read_of_missing_key_is_empty() -> None:
    coordinator, _ = _cluster()
    read = asyncio.run(coordinator.get("nothing"))
    assert read.values == frozenset()
    assert not read.conflict


def test_read_merges_to_maximal_versions() -> None:
    coordinator, replicas = _cluster()

    async def scenario():
        await replicas["blue"].store.put("k", _vv("old", blue=1))
        await replicas["green"].store.put("k", _vv("new", blue=2))
        await replicas["black"].store.put("k", _vv("side", black=1))
        return await coordinator.get_values("k")

    assert asyncio.run(scenario()) == frozenset({_vv("new", blue=2), _vv("side", black=1)})


def test_read_repair_pushes_missing_versions() -> None:
    coordinator, replicas = _cluster(read_repair=True)

    async def scenario():
        await replicas["blue"].store.put("k", _vv("new", blue=2))
        await replicas["green"].store.put("k", _vv("old", blue=1))
        read = await coordinator.get("k")
        return read, {n: await r.store.get("k") for n, r in replicas.items()}

    read, stored = asyncio.run(scenario())
    assert sorted(read.repaired) == ["black", "green"]
    for node in NODES:
        assert stored[node] == frozenset({_vv("new", blue=2)})


def test_maximal_versions_rules() -> None:
    a = _vv("a", blue=1)
    b = _vv("b", blue=2)
    c = _vv("c", green=1)
    assert maximal_versions([a, a, b, c, c]) == frozenset({b, c})
    twin = _vv("twin", blue=2)
    assert maximal_versions([b, twin]) == frozenset({b, twin})
    assert maximal_versions([]) == frozenset()


def test_get_resolved_value_uses_resolver() -> None:
    coordinator, replicas = _cluster()
    seen = []

    def pick_longest(values):
        seen.append(values)
        return max(values, key=lambda v: len(v.value))

    async def scenario():
        await replicas["blue"].store.put("k", _vv("short", blue=1))
        await replicas["green"].store.put("k", _vv("much longer", green=1))
        return await coordinator.get_resolved_value("k", pick_longest)

    assert asyncio.run(scenario()) == _vv("much longer", green=1)
    assert len(seen[0]) == 2


def test_get_resolved_value_missing_key_skips_resolver() -> None:
    coordinator, _ = _cluster()

    def explode(values):
        raise AssertionError("resolver should not run")

    assert asyncio.run(coordinator.get_resolved_value("k", explode)) is None


def test_resolver_errors_propagate() -> None:
    coordinator, _ = _cluster()

    class ResolverFailed(Exception):
        pass

    def failing(values):
        raise ResolverFailed("cannot choose")

    async def scenario():
        await coordinator.put("k", "v")
        await coordinator.get_resolved_value("k", failing)

    with pytest.raises(ResolverFailed):
        asyncio.run(scenario())


def test_merged_resolution_written_back_supersedes_siblings() -> None:
    coordinator, replicas = _cluster(["green", "blue", "black"])
    resolver = merge_versions(lambda values: "|".join(values))

    async def scenario():
        await coordinator.put("name", "Alice")
        replicas["green"].available = False
        await coordinator.put("name", "Bob")
        replicas["green"].available = True
        resolved = await coordinator.get_resolved_value("name", resolver)
        await coordinator.put("name", resolved.value, resolved.version)
        return resolved, await coordinator.get_values("name")

    resolved, after = asyncio.run(scenario())
    assert resolved == _vv("Alice|Bob", blue=1, green=1)
    assert after == frozenset({_vv("Alice|Bob", blue=1, green=2)})


def test_last_write_wins_ignores_vectors() -> None:
    values = [
        TimestampedValue("ten", VersionVector({"blue": 9}), 10),
        TimestampedValue("thirty", VersionVector({"blue": 1}), 30),
        TimestampedValue("twenty", VersionVector({"green": 5}), 20),
    ]
    winner = Coordinator.get_with_last_write_wins(values)
    assert winner is not None
    assert winner.value == "thirty"
    assert Coordinator.get_with_last_write_wins([]) is None


def test_last_write_wins_tie_keeps_first() -> None:
    first = TimestampedValue("first", VersionVector(), 5)
    second = TimestampedValue("second", VersionVector(), 5)
    assert select_last_write(iter([first, second])) is first
