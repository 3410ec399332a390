"""
RegistryStore - owns the current registry snapshot.

The store provides:
- Loading registry sources from YAML or JSON files or directories
- Loading compose documents and snapshot artifacts
- Composition with a monotonic generation counter
- Atomic publication: readers always see a complete snapshot, and a failed
  recomposition leaves the previous snapshot in effect

Registry source layouts:

    core.yaml                 # single file: {id: core, entries: [...]}

    core/                     # directory: one entry document per file
        registry.yaml         # optional: {id: core}
        markdown.yaml
        image/png-image.json
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Collection, Iterable, Mapping, Optional, Sequence

import yaml

from rendition.composer import ComposeDocument, SchemaResolver, compose
from rendition.errors import CompositionError, RenditionError, UnknownKindError
from rendition.schemas import RegistryEntry, RegistrySnapshot, RegistrySource

logger = logging.getLogger(__name__)


SOURCE_MANIFEST_NAMES = ("registry.yaml", "registry.yml", "registry.json")
DOCUMENT_SUFFIXES = (".yaml", ".yml", ".json")


class RegistryLoadError(RenditionError):
    """Raised when a registry document cannot be read or parsed."""
    pass


def load_document(path: Path | str) -> dict[str, Any]:
    """
    Load a YAML or JSON document.

    Args:
        path: Path to the file

    Returns:
        Parsed dictionary

    Raises:
        RegistryLoadError: If the file is missing, unsupported or malformed
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in DOCUMENT_SUFFIXES:
        raise RegistryLoadError(f"Unsupported file format: {path}")
    if not path.exists():
        raise RegistryLoadError(f"Document not found: {path}")

    try:
        with open(path) as f:
            if suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise RegistryLoadError(f"Failed to parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise RegistryLoadError(f"Document must be a mapping: {path}")
    return data


def load_registry_source(path: Path | str) -> RegistrySource:
    """
    Load a registry source from a file or directory.

    Args:
        path: Source file ({id, entries}) or directory of entry documents

    Returns:
        RegistrySource (entries in file order, or sorted by relative path)

    Raises:
        RegistryLoadError: If any document is unreadable or invalid
    """
    path = Path(path)
    if path.is_dir():
        return _load_source_dir(path)

    data = load_document(path)
    try:
        return RegistrySource.from_dict(data, default_id=path.stem)
    except (KeyError, TypeError, ValueError) as e:
        raise RegistryLoadError(f"Invalid registry source {path}: {e}") from e


def _load_source_dir(directory: Path) -> RegistrySource:
    source_id = directory.name
    for name in SOURCE_MANIFEST_NAMES:
        manifest = directory / name
        if manifest.exists():
            source_id = load_document(manifest).get("id", source_id)
            break

    entries = []
    files = sorted(
        f for f in directory.rglob("*")
        if f.is_file()
        and f.suffix.lower() in DOCUMENT_SUFFIXES
        and f.name not in SOURCE_MANIFEST_NAMES
    )
    for def_path in files:
        data = load_document(def_path)
        try:
            entries.append(RegistryEntry.from_dict(data))
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryLoadError(f"Invalid registry entry in {def_path}: {e}") from e

    return RegistrySource(source_id=source_id, entries=tuple(entries))


def load_compose_document(path: Path | str) -> ComposeDocument:
    """Load a compose document {base, extensions[], enable[], disable[], overrides{}}."""
    data = load_document(path)
    try:
        return ComposeDocument.from_dict(data)
    except (TypeError, ValueError) as e:
        raise RegistryLoadError(f"Invalid compose document {path}: {e}") from e


def load_snapshot(path: Path | str) -> RegistrySnapshot:
    """Load a snapshot artifact written by write_snapshot()."""
    data = load_document(path)
    try:
        return RegistrySnapshot.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise RegistryLoadError(f"Invalid registry snapshot {path}: {e}") from e


def write_snapshot(snapshot: RegistrySnapshot, path: Path | str) -> Path:
    """Write the snapshot artifact as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(snapshot.to_json())
    return path


class RegistryStore:
    """
    Holder of the current RegistrySnapshot.

    Snapshots are never mutated; recomposition builds a new snapshot and
    swaps the pointer under a lock. Readers take `current` once per
    operation and keep using that snapshot for its duration.

    Usage:
        store = RegistryStore(schemas=StaticSchemaResolver(["md.json"]),
                              operations=runners.known_operations())
        store.register_source(core_source)
        store.recompose(ComposeDocument(base="core"))

        entry = store.get_entry("core:markdown")
    """

    def __init__(
        self,
        snapshot: Optional[RegistrySnapshot] = None,
        schemas: Optional[SchemaResolver] = None,
        operations: Optional[Collection[str]] = None,
    ):
        self._snapshot = snapshot
        self._schemas = schemas
        self._operations = operations
        self._sources: dict[str, RegistrySource] = {}
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[RegistrySnapshot]:
        """The published snapshot, or None before the first composition."""
        return self._snapshot

    @property
    def generation(self) -> int:
        snapshot = self._snapshot
        return snapshot.generation if snapshot is not None else 0

    def require(self) -> RegistrySnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise RenditionError("No registry snapshot has been published")
        return snapshot

    def get_entry(self, kind_id: str) -> RegistryEntry:
        """
        Get a kind's entry from the current snapshot.

        Raises:
            UnknownKindError: If the kind is not registered
        """
        entry = self.require().get(kind_id)
        if entry is None:
            raise UnknownKindError(kind_id)
        return entry

    def register_source(self, source: RegistrySource) -> None:
        """Make a source addressable by its id in compose documents."""
        self._sources[source.source_id] = source

    def publish(self, snapshot: RegistrySnapshot) -> RegistrySnapshot:
        """
        Publish a snapshot, replacing the current one atomically.

        Raises:
            ValueError: If the snapshot's generation does not advance
        """
        with self._lock:
            current = self._snapshot
            if current is not None and snapshot.generation <= current.generation:
                raise ValueError(
                    f"Snapshot generation {snapshot.generation} does not advance "
                    f"past {current.generation}"
                )
            self._snapshot = snapshot
        logger.info(f"Published registry snapshot {snapshot.version}")
        return snapshot

    def compose(
        self,
        base: RegistrySource,
        extensions: Sequence[RegistrySource] = (),
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        enable: Optional[Iterable[str]] = None,
        disable: Iterable[str] = (),
    ) -> RegistrySnapshot:
        """
        Compose and publish a new snapshot.

        On CompositionError the previous snapshot remains in effect and the
        error propagates.
        """
        with self._lock:
            generation = self.generation + 1
            try:
                snapshot = compose(
                    base,
                    extensions,
                    overrides,
                    enable=enable,
                    disable=disable,
                    schemas=self._schemas,
                    operations=self._operations,
                    generation=generation,
                )
            except CompositionError as e:
                kept = self._snapshot.version if self._snapshot else "none"
                logger.error(f"Registry composition rejected ({e}); keeping snapshot {kept}")
                raise
            self._snapshot = snapshot
        logger.info(f"Published registry snapshot {snapshot.version}")
        return snapshot

    def recompose(
        self,
        document: ComposeDocument,
        base_dir: Optional[Path | str] = None,
    ) -> RegistrySnapshot:
        """
        Compose from a compose document.

        base and extensions are looked up among registered sources first,
        then loaded as paths relative to base_dir.
        """
        base = self._lookup_source(document.base, base_dir)
        extensions = [self._lookup_source(e, base_dir) for e in document.extensions]
        return self.compose(
            base,
            extensions,
            document.overrides,
            enable=document.enable,
            disable=document.disable,
        )

    def recompose_file(self, path: Path | str) -> RegistrySnapshot:
        """Load a compose document and recompose relative to its directory."""
        path = Path(path)
        return self.recompose(load_compose_document(path), base_dir=path.parent)

    def _lookup_source(self, ref: str, base_dir: Optional[Path | str]) -> RegistrySource:
        if ref in self._sources:
            return self._sources[ref]
        path = Path(ref)
        if not path.is_absolute() and base_dir is not None:
            path = Path(base_dir) / path
        if not path.exists():
            raise RegistryLoadError(f"Registry source not found: {ref}")
        return load_registry_source(path)
