"""
Registry sources and snapshots.

RegistrySource: one package of entry definitions (the base registry or an
extension), identified by source_id.

RegistrySnapshot: the immutable result of composition. The composer owns
snapshot creation; the resolver and scheduler only ever hold read-only
references. A new composition produces a new snapshot that replaces the
old one atomically (see rendition.registry.RegistryStore).
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from .registry_entry import RegistryEntry


@dataclass(frozen=True)
class RegistrySource:
    source_id: str
    entries: tuple[RegistryEntry, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.source_id,
            "entries": [e.to_dict(include_owner=False) for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_id: Optional[str] = None) -> "RegistrySource":
        source_id = data.get("id", default_id)
        if not source_id:
            raise ValueError("Registry source requires an 'id'")
        return cls(
            source_id=source_id,
            entries=tuple(RegistryEntry.from_dict(e) for e in data.get("entries") or ()),
        )


@dataclass(frozen=True)
class SnapshotSources:
    """Identifiers of everything that went into a snapshot."""
    base: str
    extensions: tuple[str, ...] = field(default_factory=tuple)
    overrides: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "base": self.base,
            "extensions": list(self.extensions),
            "overrides": list(self.overrides),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SnapshotSources":
        return cls(
            base=data["base"],
            extensions=tuple(data.get("extensions") or ()),
            overrides=tuple(data.get("overrides") or ()),
        )


@dataclass(frozen=True)
class RegistrySnapshot:
    """
    A composed, validated, immutable registry.

    Attributes:
        version: "<generation>-<digest prefix>"
        generation: Monotonic composition counter
        digest: sha256 over the canonical entries and sources
        sources: Base, extension and override identifiers
        entries: Composed entries sorted by kind_id
    """
    version: str
    generation: int
    digest: str
    sources: SnapshotSources
    entries: tuple[RegistryEntry, ...] = field(default_factory=tuple)
    _index: dict[str, RegistryEntry] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self):
        object.__setattr__(self, "_index", {e.kind_id: e for e in self.entries})

    def get(self, kind_id: str) -> Optional[RegistryEntry]:
        return self._index.get(kind_id)

    def __contains__(self, kind_id: str) -> bool:
        return kind_id in self._index

    def __len__(self) -> int:
        return len(self.entries)

    def kind_ids(self) -> list[str]:
        return [e.kind_id for e in self.entries]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generation": self.generation,
            "digest": self.digest,
            "sources": self.sources.to_dict(),
            "entries": [e.to_dict() for e in self.entries],
        }

    def to_json(self) -> str:
        """Serialize to the snapshot artifact (stable byte-for-byte for equal snapshots)."""
        return json.dumps(self.to_dict(), sort_keys=True, indent=2, ensure_ascii=False) + "\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegistrySnapshot":
        return cls(
            version=data["version"],
            generation=data["generation"],
            digest=data["digest"],
            sources=SnapshotSources.from_dict(data["sources"]),
            entries=tuple(RegistryEntry.from_dict(e) for e in data.get("entries") or ()),
        )
