"""
CapabilityStatement - what a client can accept for one delivery request.

accept: ordered media-type patterns, optionally weighted (q=0..1)
hints:  target width, pixel density and network class (all optional)

Transient: one statement per delivery request.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from rendition.mediatypes import MediaType, parse_accept_item


@dataclass(frozen=True)
class AcceptEntry:
    """One accept pattern and its optional weight."""
    pattern: MediaType
    weight: Optional[float] = None

    def __str__(self) -> str:
        if self.weight is None:
            return str(self.pattern)
        return f"{self.pattern};q={self.weight:g}"


@dataclass(frozen=True)
class Hints:
    """
    Sizing and network hints.

    Attributes:
        target_width: CSS pixel width the client will render at
        pixel_density: Device pixel ratio (1.0, 2.0, ...)
        network_class: Deployment-defined class name (e.g. "slow", "fast")
    """
    target_width: Optional[int] = None
    pixel_density: Optional[float] = None
    network_class: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.target_width is None and self.pixel_density is None and self.network_class is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.target_width is not None:
            result["targetWidth"] = self.target_width
        if self.pixel_density is not None:
            result["pixelDensity"] = self.pixel_density
        if self.network_class is not None:
            result["networkClass"] = self.network_class
        return result

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Hints":
        data = data or {}
        return cls(
            target_width=data.get("targetWidth"),
            pixel_density=data.get("pixelDensity"),
            network_class=data.get("networkClass"),
        )


@dataclass(frozen=True)
class CapabilityStatement:
    accept: tuple[AcceptEntry, ...]
    hints: Hints = field(default_factory=Hints)

    @property
    def has_weights(self) -> bool:
        """True when any accept entry declares an explicit weight."""
        return any(entry.weight is not None for entry in self.accept)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accept": [str(entry) for entry in self.accept],
            "hints": self.hints.to_dict(),
        }

    @classmethod
    def from_accept(
        cls,
        accept: Iterable[str],
        hints: Optional[Hints] = None,
    ) -> "CapabilityStatement":
        """
        Build a statement from accept strings.

        Example:
            >>> CapabilityStatement.from_accept(["image/svg+xml", "image/png;q=0.5"])
        """
        entries = []
        for item in accept:
            pattern, weight = parse_accept_item(item)
            entries.append(AcceptEntry(pattern=pattern, weight=weight))
        return cls(accept=tuple(entries), hints=hints or Hints())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CapabilityStatement":
        return cls.from_accept(data.get("accept", []), Hints.from_dict(data.get("hints")))
