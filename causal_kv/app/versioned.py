from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from .version import VersionVector, descends


@dataclass(frozen=True)
class VersionedValue:
    """A value together with the version vector current when it was written.

    Equality is structural over both fields, which is not the same thing as
    one version dominating another.
    """

    value: str
    version: VersionVector

    def descends(self, other: "VersionedValue") -> bool:
        return descends(self.version, other.version)

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "version": self.version.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionedValue":
        return cls(value=data["value"], version=VersionVector.from_dict(data.get("version")))


@dataclass(frozen=True)
class TimestampedValue:
    """Versioned value carrying the wall-clock time of its write."""

    value: str
    version: VersionVector
    timestamp: float


def ordered(values: Iterable[VersionedValue]) -> List[VersionedValue]:
    """Deterministic ordering for responses and dumps."""
    return sorted(values, key=lambda v: (v.value, sorted(v.version.to_dict().items())))
