"""
Error classes for rendition.

Errors are exceptions, not values. The one exception to that rule
is the resolver's Unsatisfiable outcome, which is a normal result the caller
must handle (see rendition.resolver).

Classification happens at the boundary that knows the cause:
- Composer: CompositionError (fatal to the attempted recomposition only)
- Runners: RunnerError (recovered by the scheduler via bounded retry)
- Scheduler: TransformError (surfaced once the retry budget is exhausted,
  or when a waiter gives up / a job is cancelled)
"""

from enum import Enum
from typing import Any, Optional


class RenditionError(Exception):
    """Base exception for rendition."""
    pass


class ConfigError(RenditionError):
    """Configuration validation error."""
    pass


class InvalidMediaTypeError(RenditionError, ValueError):
    """Raised when a media type or media-type pattern cannot be parsed."""
    pass


class UnknownKindError(RenditionError, LookupError):
    """Raised when a kindId is not present in the registry snapshot."""

    def __init__(self, kind_id: str):
        self.kind_id = kind_id
        super().__init__(f"Unknown block kind: {kind_id}")


class CompositionErrorKind(str, Enum):
    DUPLICATE_KIND = "DuplicateKind"
    UNRESOLVED_SCHEMA = "UnresolvedSchema"
    INVALID_MEDIA_TYPE = "InvalidMediaType"
    UNRESOLVED_TRANSFORM = "UnresolvedTransform"
    INVALID_OVERRIDE = "InvalidOverride"


class CompositionError(RenditionError):
    """
    Registry composition failed validation.

    The candidate snapshot is discarded; the previously published snapshot
    (if any) stays authoritative.

    Attributes:
        kind: Which validation rule failed
        identifier: The offending identifier (kindId, schemaRef, pattern, operation)
    """

    def __init__(self, kind: CompositionErrorKind, identifier: str, detail: str = ""):
        self.kind = kind
        self.identifier = identifier
        self.detail = detail
        message = f"{kind.value}: {identifier}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RunnerErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    TOO_LARGE = "TooLarge"
    TOOL_FAILURE = "ToolFailure"
    INPUT_REJECTED = "InputRejected"


class RunnerError(RenditionError):
    """
    Typed failure reported by a Runner.

    Runners never report partial success: every failure, including a limit
    being exceeded, is one of the RunnerErrorKind values.
    """

    def __init__(self, kind: RunnerErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunnerError":
        try:
            kind = RunnerErrorKind(data.get("kind"))
        except ValueError:
            kind = RunnerErrorKind.TOOL_FAILURE
        return cls(kind, str(data.get("message", "")))


class TransformErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    TOO_LARGE = "TooLarge"
    TOOL_FAILURE = "ToolFailure"
    INPUT_REJECTED = "InputRejected"
    WAIT_TIMEOUT = "WaitTimeout"
    CANCELLED = "Cancelled"

    @classmethod
    def from_runner_kind(cls, kind: RunnerErrorKind) -> "TransformErrorKind":
        return cls(kind.value)


class TransformError(RenditionError):
    """
    Terminal error delivered to callers waiting on a transform.

    Attributes:
        key: TransformKey of the job
        kind: Failure classification
        attempts: Attempts made when the error was produced
        terminal: True when the retry budget is exhausted
    """

    def __init__(
        self,
        key: str,
        kind: TransformErrorKind,
        message: str,
        attempts: int = 0,
        terminal: bool = True,
    ):
        self.key = key
        self.kind = kind
        self.message = message
        self.attempts = attempts
        self.terminal = terminal
        super().__init__(f"Transform {key} failed ({kind.value}) after {attempts} attempt(s): {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "attempts": self.attempts,
            "terminal": self.terminal,
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> "TransformError":
        return cls(
            key=key,
            kind=TransformErrorKind(data["kind"]),
            message=data.get("message", ""),
            attempts=data.get("attempts", 0),
            terminal=data.get("terminal", True),
        )


class DeliveryError(RenditionError):
    """
    Raised by the delivery facade when no representation can be delivered.

    Wraps either an Unsatisfiable resolution or a terminal TransformError.
    Callers must treat it as a hard delivery failure.
    """

    def __init__(self, kind_id: str, reason: str, cause: Optional[Exception] = None):
        self.kind_id = kind_id
        self.reason = reason
        self.cause = cause
        super().__init__(f"Cannot deliver '{kind_id}': {reason}")


class ContentResolutionErrorType(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_CONTENT = "INVALID_CONTENT"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    TIMEOUT = "TIMEOUT"


class ContentResolutionError(RenditionError):
    """Raised when a representation's payload cannot be loaded."""

    def __init__(
        self,
        type: ContentResolutionErrorType,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.type = type
        self.original_error = original_error
        super().__init__(message)
