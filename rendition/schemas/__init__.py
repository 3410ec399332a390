"""
rendition.schemas - Data model for registry, negotiation and transforms.

RegistrySource -> RegistrySnapshot -> (resolve) -> TransformRequest -> TransformJob

Lifecycle:
1. RegistrySource: base or extension package of RegistryEntry definitions
2. RegistrySnapshot: composed, validated, immutable registry
3. Representation / CapabilityStatement: inputs to negotiation
4. TransformRequest: work needed when no representation satisfies a client
5. TransformJob: one job per content-addressed TransformKey
"""

from .representation import (
    Representation,
    InlinePayload,
    ExternalPayload,
    Payload,
    payload_from_dict,
)
from .capability import (
    AcceptEntry,
    CapabilityStatement,
    Hints,
)
from .registry_entry import (
    CachePolicy,
    RegistryEntry,
    TransformRule,
    ENTRY_FIELDS,
)
from .snapshot import (
    RegistrySnapshot,
    RegistrySource,
    SnapshotSources,
)
from .transform import (
    BlockRef,
    JobState,
    TransformJob,
    TransformRequest,
    compute_transform_key,
)
from .block import (
    Block,
    BlockContent,
)

__all__ = [
    # Representation
    "Representation",
    "InlinePayload",
    "ExternalPayload",
    "Payload",
    "payload_from_dict",
    # Capabilities
    "AcceptEntry",
    "CapabilityStatement",
    "Hints",
    # Registry
    "CachePolicy",
    "RegistryEntry",
    "TransformRule",
    "ENTRY_FIELDS",
    "RegistrySnapshot",
    "RegistrySource",
    "SnapshotSources",
    # Transforms
    "BlockRef",
    "JobState",
    "TransformJob",
    "TransformRequest",
    "compute_transform_key",
    # Blocks
    "Block",
    "BlockContent",
]
