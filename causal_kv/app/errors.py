from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence


class ObsoleteVersionError(Exception):
    """A write whose vector is not newer than one already stored for the key."""

    def __init__(self, key: str, version: object, stored: object = None) -> None:
        self.key = key
        self.version = version
        self.stored = stored
        message = f"Obsolete version {version!r} for key {key!r}"
        if stored is not None:
            message += f" (stored {stored!r})"
        super().__init__(message)


class ReplicaUnavailableError(Exception):
    """A replica could not be reached or answered with a transport-level failure."""

    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Replica {node_id} unavailable: {reason}")


@dataclass(frozen=True)
class ReplicaFailure:
    node_id: str
    error: Exception

    def to_dict(self) -> Dict[str, str]:
        return {
            "node": self.node_id,
            "kind": type(self.error).__name__,
            "message": str(self.error),
        }


class NoAvailableReplicaError(Exception):
    """Every candidate replica failed the primary write; nothing was stored."""

    def __init__(self, key: str, failures: Sequence[ReplicaFailure]) -> None:
        self.key = key
        self.failures: List[ReplicaFailure] = list(failures)
        if self.failures:
            causes = "; ".join(f"{f.node_id}: {f.error}" for f in self.failures)
        else:
            causes = "no candidate replicas"
        super().__init__(f"No replica accepted the write for key {key!r} ({causes})")
