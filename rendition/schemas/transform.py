"""
Transform schemas - requests, content-addressed keys, and job records.

TransformKey is a deterministic content address:

    sha256( canonical_json({
        "sources":   [source content hash, ...],   # in request order
        "operation": operation name,
        "options":   merged options (canonicalized by sorted keys),
        "output":    canonical output media type,
        "tool":      tool image identifier/version,
    }) )

Equal inputs always produce an equal key, and equal keys are the same
logical job. Request timestamps, the block the request came from and the
runner chosen to execute it do not participate: they describe the request,
not the work.

Job lifecycle:

    queued -> running -> succeeded
                      -> failed  (requeued while under the attempt budget,
                                  terminal once the budget is exhausted)
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Sequence

from rendition.mediatypes import MediaType, coerce
from rendition.utils import canonical_json, sha256_prefixed, utcnow

from .representation import Representation, parse_datetime


class JobState(str, Enum):
    """State of a transform job."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_done(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


def compute_transform_key(
    source_hashes: Sequence[str],
    operation: str,
    options: dict[str, Any],
    output: "MediaType | str",
    tool: str = "",
) -> str:
    """
    Compute the TransformKey for a unit of transform work.

    Args:
        source_hashes: Content hashes of the source representations, in order
        operation: Transform operation name
        options: Fully merged options
        output: Output media type
        tool: Tool image identifier/version

    Returns:
        "sha256:<hex>" key

    Example:
        >>> compute_transform_key(["sha256:ab"], "markdown.render", {}, "text/html")
        'sha256:...'
    """
    material = {
        "sources": list(source_hashes),
        "operation": operation,
        "options": options,
        "output": str(coerce(output)),
        "tool": tool,
    }
    return sha256_prefixed(canonical_json(material))


@dataclass(frozen=True)
class BlockRef:
    """Which block a request was made for; used to feed results back."""
    manifest_id: str
    block_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"manifestId": self.manifest_id, "blockId": self.block_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlockRef":
        return cls(manifest_id=data["manifestId"], block_id=data["blockId"])


@dataclass(frozen=True)
class TransformRequest:
    """
    A request to produce one target representation from source representations.

    Attributes:
        kind_id: Block kind the request is made for
        sources: Source representations, in operation order
        operation: Transform operation name
        target: Output media type
        options: Rule defaults merged with request options
        tool: Tool image identifier/version (part of the key)
        runner: Runner name override (deployment policy, not part of the key)
        timeout_seconds: Per-attempt timeout override
        block: Block the request is for, if known
        requested_at: Request time (not part of the key)
    """
    kind_id: str
    sources: tuple[Representation, ...]
    operation: str
    target: MediaType
    options: dict[str, Any] = field(default_factory=dict)
    tool: str = ""
    runner: Optional[str] = None
    timeout_seconds: Optional[float] = None
    block: Optional[BlockRef] = None
    requested_at: datetime = field(default_factory=utcnow, compare=False)

    def __post_init__(self):
        if not self.sources:
            raise ValueError("TransformRequest requires at least one source")
        if not self.target.is_concrete:
            raise ValueError(f"Transform target must be concrete: {self.target}")

    @property
    def key(self) -> str:
        return compute_transform_key(
            [s.identity_hash() for s in self.sources],
            self.operation,
            self.options,
            self.target,
            self.tool,
        )

    def source_locators(self) -> list[str]:
        return [s.locator() for s in self.sources]

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "kindId": self.kind_id,
            "sources": [s.to_dict() for s in self.sources],
            "operation": self.operation,
            "target": str(self.target),
            "options": self.options,
            "tool": self.tool,
            "requestedAt": self.requested_at.isoformat(),
        }
        if self.runner is not None:
            result["runner"] = self.runner
        if self.timeout_seconds is not None:
            result["timeoutSeconds"] = self.timeout_seconds
        if self.block is not None:
            result["block"] = self.block.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransformRequest":
        requested_at = parse_datetime(data.get("requestedAt"))
        return cls(
            kind_id=data["kindId"],
            sources=tuple(Representation.from_dict(s) for s in data["sources"]),
            operation=data["operation"],
            target=coerce(data["target"]),
            options=dict(data.get("options") or {}),
            tool=data.get("tool", ""),
            runner=data.get("runner"),
            timeout_seconds=data.get("timeoutSeconds"),
            block=BlockRef.from_dict(data["block"]) if data.get("block") else None,
            requested_at=requested_at or utcnow(),
        )


@dataclass(frozen=True)
class TransformJob:
    """
    Record of one logical transform job (one per TransformKey).

    Attributes:
        key: TransformKey
        state: queued, running, succeeded or failed
        attempts: Runner invocations so far (survives requeues)
        created_at: When the job was first created
        updated_at: Last state transition
        kind_id: Block kind of the originating request
        operation: Transform operation name
        result: Output representation (only when succeeded)
        last_error: Serialized TransformError (only when failed)
        terminal: True once failed with the attempt budget exhausted
    """
    key: str
    state: JobState
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    kind_id: Optional[str] = None
    operation: Optional[str] = None
    result: Optional[Representation] = None
    last_error: Optional[dict[str, Any]] = None
    terminal: bool = False

    def __post_init__(self):
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")
        if self.state == JobState.SUCCEEDED:
            if self.result is None:
                raise ValueError("Succeeded jobs must have a result")
            if self.last_error is not None:
                raise ValueError("Succeeded jobs must not have last_error")
        elif self.result is not None:
            raise ValueError(f"{self.state.value} jobs must not have a result")
        if self.state == JobState.FAILED:
            if self.last_error is None:
                raise ValueError("Failed jobs must have last_error")
        elif self.last_error is not None:
            raise ValueError(f"{self.state.value} jobs must not have last_error")
        if self.terminal and self.state != JobState.FAILED:
            raise ValueError("Only failed jobs can be terminal")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "key": self.key,
            "state": self.state.value,
            "attempts": self.attempts,
            "createdAt": self.created_at.isoformat(),
            "terminal": self.terminal,
        }
        if self.updated_at is not None:
            result["updatedAt"] = self.updated_at.isoformat()
        if self.kind_id is not None:
            result["kindId"] = self.kind_id
        if self.operation is not None:
            result["operation"] = self.operation
        if self.result is not None:
            result["result"] = self.result.to_dict()
        if self.last_error is not None:
            result["lastError"] = self.last_error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransformJob":
        """Deserialize from dictionary."""
        return cls(
            key=data["key"],
            state=JobState(data["state"]),
            attempts=data.get("attempts", 0),
            created_at=parse_datetime(data["createdAt"]),
            updated_at=parse_datetime(data.get("updatedAt")),
            kind_id=data.get("kindId"),
            operation=data.get("operation"),
            result=Representation.from_dict(data["result"]) if data.get("result") else None,
            last_error=data.get("lastError"),
            terminal=data.get("terminal", False),
        )
