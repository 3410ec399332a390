"""
Registry composition - base + extensions + overrides -> RegistrySnapshot.

Composition steps:
1. Pre-filter: entries not in `enable` (when given) or listed in `disable`
   are dropped from every source before merging
2. Start from the base source's entries (the base owns them)
3. Apply each extension in listed order:
   - a new kindId is added and owned by that extension
   - for a kind it does not own, an extension may only append
     allowedRepresentations and transformRules (rules are identified by
     "from->to"); any other differing field is ignored with a warning
4. Apply overrides: {kindId: {"dotted.field.path": value}} may replace any
   single field of any entry
5. Validate, then build the snapshot

Validation (all-or-nothing, CompositionError on the first failure):
- DuplicateKind: a kindId defined twice within one source
- UnresolvedSchema: schemaRef unknown to the schema resolver
- InvalidMediaType: malformed pattern, or a non-concrete rule output
- UnresolvedTransform: rule operation unknown to the runner registry
- InvalidOverride: override targets an unknown kind or field, or yields an
  invalid entry

Composition is deterministic: equal inputs (including generation) produce
byte-identical snapshot artifacts.
"""

import copy
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Collection, Iterable, Mapping, Optional, Protocol, Sequence, runtime_checkable

from rendition.errors import CompositionError, CompositionErrorKind, InvalidMediaTypeError
from rendition.mediatypes import parse_media_type, parse_pattern
from rendition.schemas import (
    ENTRY_FIELDS,
    RegistryEntry,
    RegistrySnapshot,
    RegistrySource,
    SnapshotSources,
)
from rendition.utils import canonical_json, sha256_prefixed

logger = logging.getLogger(__name__)


@runtime_checkable
class SchemaResolver(Protocol):
    """Decides whether a schemaRef can be resolved."""

    def resolve(self, schema_ref: str) -> bool:
        ...


class StaticSchemaResolver:
    """Resolves a fixed set of schema references."""

    def __init__(self, refs: Iterable[str]):
        self._refs = frozenset(refs)

    def resolve(self, schema_ref: str) -> bool:
        return schema_ref in self._refs


class DirectorySchemaResolver:
    """
    Resolves schema references to files under a root directory.

    A ref may be a relative path ("vendor/kind.json") or use the
    "schema://" prefix ("schema://vendor/kind.json").
    """

    PREFIX = "schema://"

    def __init__(self, root: Path | str):
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, schema_ref: str) -> bool:
        ref = schema_ref[len(self.PREFIX):] if schema_ref.startswith(self.PREFIX) else schema_ref
        if not ref or ref.startswith("/"):
            return False
        candidate = (self._root / ref).resolve()
        # Refs must not escape the schema root
        if self._root not in candidate.parents:
            return False
        return candidate.is_file()


@dataclass(frozen=True)
class ComposeDocument:
    """
    Parsed compose document.

    {base, extensions[], enable[], disable[], overrides{}}

    base and extensions name registry sources (paths or source ids,
    interpreted by the loader).
    """
    base: str
    extensions: tuple[str, ...] = field(default_factory=tuple)
    enable: Optional[tuple[str, ...]] = None
    disable: tuple[str, ...] = field(default_factory=tuple)
    overrides: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComposeDocument":
        if "base" not in data:
            raise ValueError("Compose document requires 'base'")
        enable = data.get("enable")
        return cls(
            base=data["base"],
            extensions=tuple(data.get("extensions") or ()),
            enable=tuple(enable) if enable is not None else None,
            disable=tuple(data.get("disable") or ()),
            overrides={k: dict(v) for k, v in (data.get("overrides") or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "base": self.base,
            "extensions": list(self.extensions),
            "disable": list(self.disable),
            "overrides": copy.deepcopy(self.overrides),
        }
        if self.enable is not None:
            result["enable"] = list(self.enable)
        return result


def _prefilter(
    source: RegistrySource,
    enable: Optional[frozenset[str]],
    disable: frozenset[str],
) -> tuple[RegistryEntry, ...]:
    kept = []
    for entry in source.entries:
        if enable is not None and entry.kind_id not in enable:
            continue
        if entry.kind_id in disable:
            continue
        kept.append(entry)
    return tuple(kept)


def _check_duplicates(source_id: str, entries: Sequence[RegistryEntry]) -> None:
    seen: set[str] = set()
    for entry in entries:
        if entry.kind_id in seen:
            raise CompositionError(
                CompositionErrorKind.DUPLICATE_KIND,
                entry.kind_id,
                f"defined more than once in '{source_id}'",
            )
        seen.add(entry.kind_id)


def _extend(owned: RegistryEntry, extension: RegistryEntry, extension_id: str) -> RegistryEntry:
    """Apply a non-owning extension to an existing entry."""
    allowed = list(owned.allowed_representations)
    for pattern in extension.allowed_representations:
        if pattern not in allowed:
            allowed.append(pattern)

    rules = list(owned.transform_rules)
    rule_ids = {r.rule_id for r in rules}
    for rule in extension.transform_rules:
        if rule.rule_id not in rule_ids:
            rules.append(rule)
            rule_ids.add(rule.rule_id)

    ignored = [
        name for name, mine, theirs in (
            ("schemaRef", owned.schema_ref, extension.schema_ref),
            ("sanitizationPolicyRef", owned.sanitization_policy_ref, extension.sanitization_policy_ref),
            ("fallbackPolicy", owned.fallback_policy, extension.fallback_policy),
            ("cachePolicy", owned.cache_policy, extension.cache_policy),
        )
        if mine != theirs
    ]
    if ignored:
        logger.warning(
            f"Extension '{extension_id}' does not own '{owned.kind_id}' "
            f"(owner: '{owned.owner}'); ignoring fields: {', '.join(ignored)}"
        )

    return replace(
        owned,
        allowed_representations=tuple(allowed),
        transform_rules=tuple(rules),
    )


def _set_path(document: dict[str, Any], path: str, value: Any, kind_id: str) -> None:
    parts = path.split(".")
    head = parts[0]
    if head not in ENTRY_FIELDS or head == "kindId":
        raise CompositionError(
            CompositionErrorKind.INVALID_OVERRIDE,
            f"{kind_id}#{path}",
            f"'{head}' is not an overridable field",
        )

    target: Any = document
    for part in parts[:-1]:
        target = _step(target, part, kind_id, path)
    last = parts[-1]
    if isinstance(target, list):
        index = _index(target, last, kind_id, path)
        target[index] = copy.deepcopy(value)
    elif isinstance(target, dict):
        target[last] = copy.deepcopy(value)
    else:
        raise CompositionError(
            CompositionErrorKind.INVALID_OVERRIDE,
            f"{kind_id}#{path}",
            "path does not lead to a field",
        )


def _step(target: Any, part: str, kind_id: str, path: str) -> Any:
    if isinstance(target, dict):
        if part not in target or target[part] is None:
            target[part] = {}
        return target[part]
    if isinstance(target, list):
        return target[_index(target, part, kind_id, path)]
    raise CompositionError(
        CompositionErrorKind.INVALID_OVERRIDE,
        f"{kind_id}#{path}",
        f"cannot descend into '{part}'",
    )


def _index(target: list, part: str, kind_id: str, path: str) -> int:
    try:
        index = int(part)
    except ValueError:
        index = -1
    if not 0 <= index < len(target):
        raise CompositionError(
            CompositionErrorKind.INVALID_OVERRIDE,
            f"{kind_id}#{path}",
            f"list index '{part}' out of range",
        )
    return index


def _apply_overrides(
    merged: dict[str, RegistryEntry],
    overrides: Mapping[str, Mapping[str, Any]],
    filtered_out: set[str],
) -> list[str]:
    applied: list[str] = []
    for kind_id in sorted(overrides):
        fields = overrides[kind_id]
        if kind_id not in merged:
            if kind_id in filtered_out:
                logger.warning(f"Skipping overrides for disabled kind '{kind_id}'")
                continue
            raise CompositionError(
                CompositionErrorKind.INVALID_OVERRIDE,
                kind_id,
                "override targets an unknown kind",
            )

        entry = merged[kind_id]
        document = entry.to_dict()
        for path in sorted(fields):
            _set_path(document, path, fields[path], kind_id)
            applied.append(f"{kind_id}#{path}")

        try:
            updated = RegistryEntry.from_dict(document)
        except (KeyError, TypeError, ValueError) as e:
            raise CompositionError(
                CompositionErrorKind.INVALID_OVERRIDE,
                kind_id,
                f"override produced an invalid entry: {e}",
            ) from e
        merged[kind_id] = replace(updated, owner=entry.owner)
    return applied


def _validate_entry(
    entry: RegistryEntry,
    schemas: Optional[SchemaResolver],
    operations: Optional[Collection[str]],
) -> None:
    for pattern in entry.patterns():
        try:
            parse_pattern(pattern, strict=True)
        except InvalidMediaTypeError as e:
            raise CompositionError(
                CompositionErrorKind.INVALID_MEDIA_TYPE, pattern, f"{entry.kind_id}: {e}"
            ) from e

    for rule in entry.transform_rules:
        try:
            parse_media_type(rule.output, strict=True)
        except InvalidMediaTypeError as e:
            raise CompositionError(
                CompositionErrorKind.INVALID_MEDIA_TYPE,
                rule.output,
                f"{entry.kind_id}: transform output must be a concrete media type",
            ) from e

    if schemas is not None and not schemas.resolve(entry.schema_ref):
        raise CompositionError(
            CompositionErrorKind.UNRESOLVED_SCHEMA, entry.schema_ref, entry.kind_id
        )

    if operations is not None:
        for rule in entry.transform_rules:
            if rule.operation not in operations:
                raise CompositionError(
                    CompositionErrorKind.UNRESOLVED_TRANSFORM,
                    rule.operation,
                    f"{entry.kind_id}: {rule.rule_id}",
                )


def compose(
    base: RegistrySource,
    extensions: Sequence[RegistrySource] = (),
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    *,
    enable: Optional[Iterable[str]] = None,
    disable: Iterable[str] = (),
    schemas: Optional[SchemaResolver] = None,
    operations: Optional[Collection[str]] = None,
    generation: int = 1,
) -> RegistrySnapshot:
    """
    Compose a registry snapshot.

    Args:
        base: The base registry source
        extensions: Extension sources, applied in order
        overrides: {kindId: {"dotted.field.path": value}}
        enable: When given, only these kindIds survive the pre-filter
        disable: kindIds dropped by the pre-filter
        schemas: Resolver for schemaRef (None skips schema resolution)
        operations: Known runner operations (None skips operation resolution)
        generation: Monotonic composition counter recorded in the version

    Returns:
        The validated RegistrySnapshot

    Raises:
        CompositionError: If any validation fails; nothing is produced
    """
    overrides = overrides or {}
    enable_set = frozenset(enable) if enable is not None else None
    disable_set = frozenset(disable)

    if schemas is None:
        logger.debug("No schema resolver configured; schemaRef resolution skipped")
    if operations is None:
        logger.debug("No operation catalog configured; transform resolution skipped")

    all_sources = [base, *extensions]
    filtered_out: set[str] = set()
    filtered: list[tuple[RegistrySource, tuple[RegistryEntry, ...]]] = []
    for source in all_sources:
        kept = _prefilter(source, enable_set, disable_set)
        _check_duplicates(source.source_id, kept)
        kept_ids = {e.kind_id for e in kept}
        filtered_out.update(e.kind_id for e in source.entries if e.kind_id not in kept_ids)
        filtered.append((source, kept))

    merged: dict[str, RegistryEntry] = {}
    for source, entries in filtered:
        for entry in entries:
            existing = merged.get(entry.kind_id)
            if existing is None:
                merged[entry.kind_id] = replace(entry, owner=source.source_id)
            else:
                merged[entry.kind_id] = _extend(existing, entry, source.source_id)

    applied = _apply_overrides(merged, overrides, filtered_out)

    entries = tuple(merged[k] for k in sorted(merged))
    for entry in entries:
        _validate_entry(entry, schemas, operations)

    sources = SnapshotSources(
        base=base.source_id,
        extensions=tuple(e.source_id for e in extensions),
        overrides=tuple(applied),
    )
    digest = sha256_prefixed(canonical_json({
        "sources": sources.to_dict(),
        "entries": [e.to_dict() for e in entries],
    }))
    version = f"{generation}-{digest.split(':', 1)[1][:12]}"

    logger.info(
        f"Composed registry {version}: {len(entries)} kinds "
        f"(base={base.source_id}, extensions={len(extensions)}, overrides={len(applied)})"
    )
    return RegistrySnapshot(
        version=version,
        generation=generation,
        digest=digest,
        sources=sources,
        entries=entries,
    )
