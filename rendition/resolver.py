"""
Variant resolution - pick the best representation for a client.

resolve(kind_id, available, capabilities) returns one of:

    Selected(representation)   an available representation satisfies the client
    NeedsTransform(request)    none does, but a transform rule can produce one
    Unsatisfiable(reason)      nothing matches, no rule applies, no fallback fits

Matching and ranking:
1. Keep representations whose media type matches at least one accept
   pattern (weight q=0 means "not acceptable" and never matches)
2. Rank by
   a. accept preference: position in the accept list, or, when any entry
      declares a weight, weight descending then position
   b. fit to hints, as scored by the configured FitPolicy
   c. created_at descending (representations without one rank last)
   then input order, so equal inputs always give the same answer
3. No match: the first transform rule (accept preference order, then rule
   order) whose output satisfies an accept pattern and whose input matches
   an available representation yields NeedsTransform from the best-ranked
   such source
4. Otherwise the kind's fallbackPolicy patterns are tried in order; the
   best-ranked representation matching the first satisfiable pattern is
   Selected. A fallback never schedules a transform.

resolve() is a pure function of (snapshot, available, capabilities): it
never mutates its inputs and returns equal Resolutions for equal inputs.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional, Protocol, Sequence, Union

from rendition.errors import UnknownKindError
from rendition.mediatypes import MediaType, parse_pattern
from rendition.schemas import (
    AcceptEntry,
    BlockRef,
    CapabilityStatement,
    Hints,
    RegistryEntry,
    RegistrySnapshot,
    Representation,
    TransformRequest,
    TransformRule,
)

logger = logging.getLogger(__name__)


# Width caps (pixels) applied on top of targetWidth for named network classes
DEFAULT_NETWORK_WIDTH_CAPS: dict[str, int] = {
    "slow-2g": 320,
    "2g": 480,
    "3g": 960,
    "slow": 640,
}

BASE_DPI = 96


@dataclass(frozen=True)
class Selected:
    representation: Representation
    via_fallback: bool = False
    outcome: Literal["selected"] = field(default="selected", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "viaFallback": self.via_fallback,
            "representation": self.representation.to_dict(),
        }


@dataclass(frozen=True)
class NeedsTransform:
    request: TransformRequest
    rule: TransformRule
    outcome: Literal["needs_transform"] = field(default="needs_transform", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "rule": self.rule.to_dict(),
            "transformKey": self.request.key,
            "request": self.request.to_dict(),
        }


@dataclass(frozen=True)
class Unsatisfiable:
    """No representation can be delivered. Callers must treat this as a delivery failure."""
    kind_id: str
    reason: str
    outcome: Literal["unsatisfiable"] = field(default="unsatisfiable", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"outcome": self.outcome, "kindId": self.kind_id, "reason": self.reason}


Resolution = Union[Selected, NeedsTransform, Unsatisfiable]


class FitPolicy(Protocol):
    """
    Scores how well a representation fits the client's hints.

    Lower keys are better. Keys from one policy must be mutually comparable.
    """

    def fit_key(self, representation: Representation, hints: Hints) -> tuple:
        ...


class ClosestWidthFit:
    """
    Closest-without-exceeding fit on width, then on dpi.

    Width budget = targetWidth x pixelDensity, capped by the network class
    (when the class has a cap). Representations that fit within the budget
    rank first (largest first), then those exceeding it (smallest excess
    first), then those with unknown width. DPI is scored the same way
    against BASE_DPI x pixelDensity.

    Without hints every representation scores equally.
    """

    def __init__(
        self,
        network_caps: Optional[Mapping[str, int]] = None,
        base_dpi: int = BASE_DPI,
    ):
        self._network_caps = dict(DEFAULT_NETWORK_WIDTH_CAPS if network_caps is None else network_caps)
        self._base_dpi = base_dpi

    def width_budget(self, hints: Hints) -> Optional[float]:
        budget: Optional[float] = None
        if hints.target_width is not None:
            budget = hints.target_width * (hints.pixel_density or 1.0)
        cap = self._network_caps.get(hints.network_class) if hints.network_class else None
        if cap is not None:
            budget = cap if budget is None else min(budget, cap)
        return budget

    def dpi_target(self, hints: Hints) -> Optional[float]:
        if hints.pixel_density is None:
            return None
        return self._base_dpi * hints.pixel_density

    @staticmethod
    def _score(value: Optional[int], target: Optional[float]) -> tuple[int, float]:
        if target is None:
            return (0, 0.0)
        if value is None:
            return (2, 0.0)
        if value <= target:
            return (0, target - value)
        return (1, value - target)

    def fit_key(self, representation: Representation, hints: Hints) -> tuple:
        return (
            *self._score(representation.effective_width, self.width_budget(hints)),
            *self._score(representation.dpi, self.dpi_target(hints)),
        )


class VariantResolver:
    """
    Capability negotiation over a registry snapshot.

    Usage:
        resolver = VariantResolver(store)          # RegistryStore or RegistrySnapshot
        resolution = resolver.resolve("core:image", block.representations(), caps)

        if isinstance(resolution, Selected): ...
        elif isinstance(resolution, NeedsTransform): scheduler.submit(resolution.request)
        else: ...                                  # Unsatisfiable: delivery failure
    """

    def __init__(self, registry: Any, fit_policy: Optional[FitPolicy] = None):
        """
        Args:
            registry: A RegistrySnapshot, or a store exposing require() -> RegistrySnapshot
            fit_policy: Hint fit scoring (default ClosestWidthFit)
        """
        self._registry = registry
        self._fit_policy = fit_policy or ClosestWidthFit()

    def _snapshot(self) -> RegistrySnapshot:
        if isinstance(self._registry, RegistrySnapshot):
            return self._registry
        return self._registry.require()

    def resolve(
        self,
        kind_id: str,
        available: Sequence[Representation],
        capabilities: CapabilityStatement,
        block: Optional[BlockRef] = None,
    ) -> Resolution:
        """
        Select a representation or determine the transform that would produce one.

        Args:
            kind_id: Block kind
            available: The block's available representations (not modified)
            capabilities: Client capability statement
            block: Block reference carried into a TransformRequest

        Returns:
            Selected, NeedsTransform or Unsatisfiable

        Raises:
            UnknownKindError: If kind_id is not in the registry snapshot
        """
        snapshot = self._snapshot()
        entry = snapshot.get(kind_id)
        if entry is None:
            raise UnknownKindError(kind_id)

        candidates = tuple(available)
        accept = self._accept_order(capabilities)

        ranked = self._rank_matches(candidates, accept, capabilities.hints)
        if ranked:
            logger.debug(f"{kind_id}: selected {ranked[0].media_type} from {len(ranked)} match(es)")
            return Selected(ranked[0])

        transform = self._find_transform(entry, candidates, accept, capabilities.hints, block)
        if transform is not None:
            logger.debug(f"{kind_id}: needs transform {transform.rule.rule_id}")
            return transform

        fallback = self._find_fallback(entry, candidates, capabilities.hints)
        if fallback is not None:
            logger.debug(f"{kind_id}: fallback to {fallback.media_type}")
            return Selected(fallback, via_fallback=True)

        accepted = ", ".join(str(a) for a in capabilities.accept) or "(nothing)"
        logger.debug(f"{kind_id}: unsatisfiable for accept [{accepted}]")
        return Unsatisfiable(
            kind_id=kind_id,
            reason=(
                f"No available representation, transform rule or fallback "
                f"satisfies accept [{accepted}]"
            ),
        )

    @staticmethod
    def _accept_order(capabilities: CapabilityStatement) -> list[tuple[tuple, AcceptEntry]]:
        """Accept entries in preference order, each with its rank key; q=0 entries removed."""
        weighted = capabilities.has_weights
        ordered = []
        for position, entry in enumerate(capabilities.accept):
            if entry.weight == 0:
                continue
            if weighted:
                weight = entry.weight if entry.weight is not None else 1.0
                rank = (-weight, position)
            else:
                rank = (0.0, position)
            ordered.append((rank, entry))
        ordered.sort(key=lambda item: item[0])
        return ordered

    def _tiebreak_key(self, index: int, representation: Representation, hints: Hints) -> tuple:
        created = representation.created_at
        recency = (0, -created.timestamp()) if created is not None else (1, 0.0)
        return (self._fit_policy.fit_key(representation, hints), recency, index)

    def _rank_matches(
        self,
        candidates: Sequence[Representation],
        accept: list[tuple[tuple, AcceptEntry]],
        hints: Hints,
    ) -> list[Representation]:
        keyed = []
        for index, representation in enumerate(candidates):
            best_rank = None
            for rank, entry in accept:
                if entry.pattern.matches(representation.media_type):
                    best_rank = rank
                    break
            if best_rank is None:
                continue
            keyed.append(((best_rank, *self._tiebreak_key(index, representation, hints)), representation))
        keyed.sort(key=lambda item: item[0])
        return [representation for _, representation in keyed]

    def _best_source(
        self,
        pattern: MediaType,
        candidates: Sequence[Representation],
        hints: Hints,
    ) -> Optional[Representation]:
        matching = [
            (self._tiebreak_key(i, r, hints), r)
            for i, r in enumerate(candidates)
            if pattern.matches(r.media_type)
        ]
        if not matching:
            return None
        return min(matching, key=lambda item: item[0])[1]

    def _find_transform(
        self,
        entry: RegistryEntry,
        candidates: Sequence[Representation],
        accept: list[tuple[tuple, AcceptEntry]],
        hints: Hints,
        block: Optional[BlockRef],
    ) -> Optional[NeedsTransform]:
        for _, accept_entry in accept:
            for rule in entry.transform_rules:
                output = rule.output_type()
                if not accept_entry.pattern.matches(output):
                    continue
                source = self._best_source(rule.input_pattern(), candidates, hints)
                if source is None:
                    continue
                timeout = rule.timeout_seconds
                if timeout is None:
                    timeout = entry.cache_policy.timeout_seconds
                request = TransformRequest(
                    kind_id=entry.kind_id,
                    sources=(source,),
                    operation=rule.operation,
                    target=output,
                    options=dict(rule.options),
                    tool=rule.tool,
                    runner=rule.runner,
                    timeout_seconds=timeout,
                    block=block,
                )
                return NeedsTransform(request=request, rule=rule)
        return None

    def _find_fallback(
        self,
        entry: RegistryEntry,
        candidates: Sequence[Representation],
        hints: Hints,
    ) -> Optional[Representation]:
        for raw in entry.fallback_policy:
            source = self._best_source(parse_pattern(raw, strict=False), candidates, hints)
            if source is not None:
                return source
        return None


def resolve(
    snapshot: RegistrySnapshot,
    kind_id: str,
    available: Sequence[Representation],
    capabilities: CapabilityStatement,
    fit_policy: Optional[FitPolicy] = None,
) -> Resolution:
    """Functional form of VariantResolver.resolve for a fixed snapshot."""
    return VariantResolver(snapshot, fit_policy).resolve(kind_id, available, capabilities)
