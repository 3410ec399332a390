"""
RegistryEntry schema - the rules for one block kind.

Kinds are data, not behavior: an entry describes which representations a
kind may have, how missing ones are produced, and which policies apply.
Nothing in an entry is executable.

Entry document (JSON or YAML):

    kindId: vendor:kind
    schemaRef: schemas/vendor/kind.json
    allowedRepresentations: [text/markdown, text/html]
    transformRules:
      - from: text/markdown
        to: text/html
        operation: markdown.render
        options: {safe: true}
        timeoutSeconds: 30          # optional
        runner: sidecar             # optional
        tool: md-render@2.1.0       # optional, part of the transform key
    sanitizationPolicyRef: policies/html-strict
    fallbackPolicy: [text/plain]
    cachePolicy:
      ttlSeconds: 86400
      invalidateOn: [payload-hash, tool-version]
      timeoutSeconds: 60            # optional per-kind attempt timeout

Media-type patterns are kept as strings here; the composer validates them
so a malformed pattern is reported with its identifier.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Optional

from rendition.mediatypes import MediaType, parse_pattern, parse_media_type


INVALIDATION_TRIGGERS = ("payload-hash", "tool-version")

# Top-level document fields of an entry, in serialization order
ENTRY_FIELDS = (
    "kindId",
    "schemaRef",
    "allowedRepresentations",
    "transformRules",
    "sanitizationPolicyRef",
    "fallbackPolicy",
    "cachePolicy",
)


@dataclass(frozen=True)
class TransformRule:
    """
    Maps (input pattern, output media type) to a transform operation.

    Attributes:
        input: Pattern a source representation must match
        output: Concrete media type the operation produces
        operation: Name resolvable to a Runner capability
        options: Default options merged under request options
        runner: Optional runner name overriding operation routing
        timeout_seconds: Optional attempt timeout for this rule
        tool: Tool image identifier/version, part of the transform key
    """
    input: str
    output: str
    operation: str
    options: dict[str, Any] = field(default_factory=dict)
    runner: Optional[str] = None
    timeout_seconds: Optional[float] = None
    tool: str = ""

    @property
    def rule_id(self) -> str:
        return f"{self.input}->{self.output}"

    def input_pattern(self) -> MediaType:
        return parse_pattern(self.input, strict=False)

    def output_type(self) -> MediaType:
        return parse_media_type(self.output)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "from": self.input,
            "to": self.output,
            "operation": self.operation,
            "options": copy.deepcopy(self.options),
        }
        if self.runner is not None:
            result["runner"] = self.runner
        if self.timeout_seconds is not None:
            result["timeoutSeconds"] = self.timeout_seconds
        if self.tool:
            result["tool"] = self.tool
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransformRule":
        return cls(
            input=data["from"],
            output=data["to"],
            operation=data["operation"],
            options=dict(data.get("options") or {}),
            runner=data.get("runner"),
            timeout_seconds=data.get("timeoutSeconds"),
            tool=data.get("tool", ""),
        )


@dataclass(frozen=True)
class CachePolicy:
    ttl_seconds: Optional[int] = None
    invalidate_on: tuple[str, ...] = field(default_factory=tuple)
    timeout_seconds: Optional[float] = None

    def __post_init__(self):
        unknown = [t for t in self.invalidate_on if t not in INVALIDATION_TRIGGERS]
        if unknown:
            raise ValueError(
                f"Unknown invalidation trigger(s) {unknown}. "
                f"Allowed: {list(INVALIDATION_TRIGGERS)}"
            )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"invalidateOn": list(self.invalidate_on)}
        if self.ttl_seconds is not None:
            result["ttlSeconds"] = self.ttl_seconds
        if self.timeout_seconds is not None:
            result["timeoutSeconds"] = self.timeout_seconds
        return result

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "CachePolicy":
        data = data or {}
        return cls(
            ttl_seconds=data.get("ttlSeconds"),
            invalidate_on=tuple(data.get("invalidateOn") or ()),
            timeout_seconds=data.get("timeoutSeconds"),
        )


@dataclass(frozen=True)
class RegistryEntry:
    """
    One block kind's rules after (or before) composition.

    Attributes:
        kind_id: Namespaced identifier, e.g. "vendor:kind"
        schema_ref: Reference to the block payload schema
        allowed_representations: Ordered media-type patterns
        transform_rules: Ordered transform rules
        sanitization_policy_ref: Reference to a sanitization policy
        fallback_policy: Ordered media-type patterns tried when nothing matches
        cache_policy: TTL, invalidation triggers and attempt timeout
        owner: Registry source that first defined this kind (set by the composer)
    """
    kind_id: str
    schema_ref: str
    allowed_representations: tuple[str, ...] = field(default_factory=tuple)
    transform_rules: tuple[TransformRule, ...] = field(default_factory=tuple)
    sanitization_policy_ref: Optional[str] = None
    fallback_policy: tuple[str, ...] = field(default_factory=tuple)
    cache_policy: CachePolicy = field(default_factory=CachePolicy)
    owner: Optional[str] = None

    def __post_init__(self):
        if ":" not in self.kind_id:
            raise ValueError(f"kindId must be namespaced (vendor:kind): {self.kind_id!r}")

    def patterns(self) -> list[str]:
        """Every media-type string this entry declares, in document order."""
        result = list(self.allowed_representations)
        for rule in self.transform_rules:
            result.extend([rule.input, rule.output])
        result.extend(self.fallback_policy)
        return result

    def get_rule(self, rule_id: str) -> Optional[TransformRule]:
        for rule in self.transform_rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def to_dict(self, include_owner: bool = True) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        result: dict[str, Any] = {
            "kindId": self.kind_id,
            "schemaRef": self.schema_ref,
            "allowedRepresentations": list(self.allowed_representations),
            "transformRules": [r.to_dict() for r in self.transform_rules],
            "sanitizationPolicyRef": self.sanitization_policy_ref,
            "fallbackPolicy": list(self.fallback_policy),
            "cachePolicy": self.cache_policy.to_dict(),
        }
        if include_owner and self.owner is not None:
            result["owner"] = self.owner
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegistryEntry":
        """Deserialize from dictionary."""
        return cls(
            kind_id=data["kindId"],
            schema_ref=data["schemaRef"],
            allowed_representations=tuple(data.get("allowedRepresentations") or ()),
            transform_rules=tuple(
                TransformRule.from_dict(r) for r in data.get("transformRules") or ()
            ),
            sanitization_policy_ref=data.get("sanitizationPolicyRef"),
            fallback_policy=tuple(data.get("fallbackPolicy") or ()),
            cache_policy=CachePolicy.from_dict(data.get("cachePolicy")),
            owner=data.get("owner"),
        )
