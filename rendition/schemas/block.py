"""
Block schema - one typed content unit within a manifest.

A block's content carries a primary representation, optionally the source
it was authored in, and any number of alternatives. Together these are the
block's available representations for negotiation.
"""

from dataclasses import dataclass, field
from typing import Optional

from .representation import Representation


@dataclass(frozen=True)
class BlockContent:
    primary: Representation
    source: Optional[Representation] = None
    alternatives: tuple[Representation, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Block:
    """
    Attributes:
        block_id: Identifier unique within its manifest
        kind: Registry kindId, e.g. "core:markdown"
        content: Primary, source and alternative representations
    """
    block_id: str
    kind: str
    content: BlockContent

    def representations(self) -> tuple[Representation, ...]:
        """Available representations: primary, source, then alternatives."""
        result = [self.content.primary]
        if self.content.source is not None:
            result.append(self.content.source)
        result.extend(self.content.alternatives)
        return tuple(result)
