from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional


class Occurred(str, Enum):
    """Outcome of comparing two version vectors."""

    BEFORE = "before"
    AFTER = "after"
    CONCURRENT = "concurrent"


class VersionVector:
    """Immutable per-key causal history: one counter per node that wrote the key.

    A node id that is absent has counter 0, so zero entries are never stored.
    """

    __slots__ = ("_counters",)

    def __init__(self, counters: Optional[Mapping[str, int]] = None) -> None:
        cleaned: Dict[str, int] = {}
        for node_id, counter in (counters or {}).items():
            counter = int(counter)
            if counter < 0:
                raise ValueError(f"Counter for {node_id!r} must be non-negative, got {counter}")
            if counter:
                cleaned[str(node_id)] = counter
        self._counters = MappingProxyType(cleaned)

    def counter(self, node_id: str) -> int:
        return self._counters.get(node_id, 0)

    def increment(self, node_id: str) -> "VersionVector":
        """Return a copy with the counter for ``node_id`` advanced by one."""
        counters = dict(self._counters)
        counters[node_id] = counters.get(node_id, 0) + 1
        return VersionVector(counters)

    def merged(self, other: "VersionVector") -> "VersionVector":
        """Pointwise maximum of both vectors."""
        counters = dict(self._counters)
        for node_id, counter in other._counters.items():
            counters[node_id] = max(counters.get(node_id, 0), counter)
        return VersionVector(counters)

    def compare(self, other: "VersionVector") -> Occurred:
        return compare(self, other)

    def to_dict(self) -> Dict[str, int]:
        return dict(self._counters)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, int]]) -> "VersionVector":
        return cls(data or {})

    def __iter__(self) -> Iterator[str]:
        return iter(self._counters)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._counters

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionVector):
            return NotImplemented
        return dict(self._counters) == dict(other._counters)

    def __hash__(self) -> int:
        return hash(frozenset(self._counters.items()))

    def __repr__(self) -> str:
        inner = ", ".join(f"{node}:{count}" for node, count in sorted(self._counters.items()))
        return f"VersionVector({{{inner}}})"


def compare(a: VersionVector, b: VersionVector) -> Occurred:
    """Three-way partial-order comparison of two vectors.

    Equal vectors compare as ``BEFORE``: a write carrying a vector identical
    to a stored one is not strictly newer and the store relies on that to
    reject it.
    """
    a_bigger = any(node_id not in b for node_id in a)
    b_bigger = any(node_id not in a for node_id in b)

    for node_id in a:
        if node_id not in b:
            continue
        mine, theirs = a.counter(node_id), b.counter(node_id)
        if mine > theirs:
            a_bigger = True
        elif theirs > mine:
            b_bigger = True
        if a_bigger and b_bigger:
            break

    if a_bigger and b_bigger:
        return Occurred.CONCURRENT
    if a_bigger:
        return Occurred.AFTER
    return Occurred.BEFORE


def descends(x: VersionVector, y: VersionVector) -> bool:
    """True when ``x`` is causally at least as new as ``y`` (equal included)."""
    return compare(y, x) is Occurred.BEFORE
