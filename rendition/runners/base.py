"""
Base runner protocol and the runner job interface.

Runners execute one transform attempt in isolation. Each runner is handed
source locators (URIs, or data: URIs for inline sources), an operation
name, options, a target media type and resource limits, and returns a
RunnerOutput or raises a RunnerError. There is no partial success.

Job interface (process, container and sidecar runners):

    input:   {"sourceLocators": [...], "operation": ..., "options": {...},
              "outMediaType": ..., "limits": {...}}
    output:  {"mediaType": ..., "locator": ... | "inline": ..., "encoding"?,
              "width"?, "height"?, "bytes"?, "contentHash", "generatedBy",
              "toolVersion", "createdAt"}
    failure: {"error": {"kind": "Timeout|TooLarge|ToolFailure|InputRejected",
                        "message": ...}}
"""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence
from urllib.parse import unquote, urlparse

from rendition.errors import RunnerError, RunnerErrorKind
from rendition.mediatypes import MediaType, coerce
from rendition.schemas import ExternalPayload, InlinePayload, Payload, Representation
from rendition.schemas.representation import parse_datetime


@dataclass(frozen=True)
class RunnerLimits:
    """
    Resource limits for one runner invocation.

    Attributes:
        max_wall_time: Seconds before the attempt is a Timeout
        max_output_bytes: Output size above which the attempt is TooLarge
        max_memory_mb: Memory ceiling (enforced by isolating runners)
        max_cpus: CPU ceiling (enforced by isolating runners)
    """
    max_wall_time: float = 30.0
    max_output_bytes: Optional[int] = None
    max_memory_mb: Optional[int] = None
    max_cpus: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"maxWallTime": self.max_wall_time}
        if self.max_output_bytes is not None:
            result["maxOutputBytes"] = self.max_output_bytes
        if self.max_memory_mb is not None:
            result["maxMemoryMb"] = self.max_memory_mb
        if self.max_cpus is not None:
            result["maxCpus"] = self.max_cpus
        return result


@dataclass(frozen=True)
class RunnerOutput:
    """
    Successful result of a runner invocation.

    content_hash and tool_version are mandatory provenance; they are
    Optional here so that the scheduler can detect and reject outputs
    that omit them.
    """
    media_type: MediaType
    payload: Payload
    content_hash: Optional[str] = None
    tool_version: Optional[str] = None
    generated_by: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    bytes: Optional[int] = None
    created_at: Optional[datetime] = None

    def size(self) -> Optional[int]:
        """Output size in bytes: declared, or measured for inline payloads."""
        if self.bytes is not None:
            return self.bytes
        if self.payload.type == "inline":
            return len(self.payload.raw_bytes())
        return None

    def to_representation(self, transform_key: Optional[str] = None) -> Representation:
        return Representation(
            media_type=self.media_type,
            payload=self.payload,
            width=self.width,
            height=self.height,
            bytes=self.size(),
            content_hash=self.content_hash,
            generated_by=self.generated_by,
            tool_version=self.tool_version,
            created_at=self.created_at,
            transform_key=transform_key,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"mediaType": str(self.media_type)}
        if self.payload.type == "inline":
            result["inline"] = self.payload.data
            result["encoding"] = self.payload.encoding
        else:
            result["locator"] = self.payload.uri
        optional = {
            "width": self.width,
            "height": self.height,
            "bytes": self.bytes,
            "contentHash": self.content_hash,
            "generatedBy": self.generated_by,
            "toolVersion": self.tool_version,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunnerOutput":
        """
        Parse the job interface output document.

        Raises:
            RunnerError: ToolFailure if the document is malformed
        """
        try:
            if data.get("inline") is not None:
                payload: Payload = InlinePayload(
                    data=data["inline"],
                    encoding=data.get("encoding", "utf-8"),
                )
            elif data.get("locator"):
                payload = ExternalPayload(uri=data["locator"])
            else:
                raise ValueError("output has neither 'locator' nor 'inline'")
            return cls(
                media_type=coerce(data["mediaType"]),
                payload=payload,
                content_hash=data.get("contentHash"),
                tool_version=data.get("toolVersion"),
                generated_by=data.get("generatedBy"),
                width=data.get("width"),
                height=data.get("height"),
                bytes=data.get("bytes"),
                created_at=parse_datetime(data.get("createdAt")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"Malformed runner output: {e}") from e

    @classmethod
    def inline_bytes(cls, media_type: "MediaType | str", content: bytes, **kwargs: Any) -> "RunnerOutput":
        """Build an inline output from raw bytes (UTF-8 text stays text)."""
        try:
            payload = InlinePayload(data=content.decode("utf-8"))
        except UnicodeDecodeError:
            payload = InlinePayload(data=base64.b64encode(content).decode("ascii"), encoding="base64")
        return cls(media_type=coerce(media_type), payload=payload, bytes=len(content), **kwargs)


def job_input(
    source_locators: Sequence[str],
    operation: str,
    options: dict[str, Any],
    target: MediaType,
    limits: RunnerLimits,
) -> dict[str, Any]:
    """Build the job interface input document."""
    return {
        "sourceLocators": list(source_locators),
        "operation": operation,
        "options": options,
        "outMediaType": str(target),
        "limits": limits.to_dict(),
    }


def parse_job_output(data: Any, limits: RunnerLimits) -> RunnerOutput:
    """
    Interpret a job interface response document.

    Raises:
        RunnerError: The reported failure, ToolFailure for malformed output,
            or TooLarge when the output exceeds limits.max_output_bytes
    """
    if not isinstance(data, dict):
        raise RunnerError(RunnerErrorKind.TOOL_FAILURE, "Runner output must be a JSON object")
    if "error" in data:
        error = data["error"]
        if not isinstance(error, dict):
            error = {"kind": RunnerErrorKind.TOOL_FAILURE.value, "message": str(error)}
        raise RunnerError.from_dict(error)
    output = RunnerOutput.from_dict(data)
    check_output_size(output, limits)
    return output


def check_output_size(output: RunnerOutput, limits: RunnerLimits) -> None:
    size = output.size()
    if limits.max_output_bytes is not None and size is not None and size > limits.max_output_bytes:
        raise RunnerError(
            RunnerErrorKind.TOO_LARGE,
            f"Output of {size} bytes exceeds limit of {limits.max_output_bytes}",
        )


def read_locator(locator: str) -> bytes:
    """
    Read a source locator available to in-process operations.

    Supports data: URIs, file: URIs and plain filesystem paths.

    Raises:
        RunnerError: InputRejected for unreadable or unsupported locators
    """
    if locator.startswith("data:"):
        header, sep, body = locator[5:].partition(",")
        if not sep:
            raise RunnerError(RunnerErrorKind.INPUT_REJECTED, "Malformed data: URI")
        if header.endswith(";base64"):
            try:
                return base64.b64decode(body, validate=True)
            except ValueError as e:
                raise RunnerError(RunnerErrorKind.INPUT_REJECTED, f"Invalid base64 data: URI: {e}") from e
        return unquote(body).encode("utf-8")

    parsed = urlparse(locator)
    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    elif parsed.scheme == "":
        path = Path(locator)
    else:
        raise RunnerError(
            RunnerErrorKind.INPUT_REJECTED,
            f"Unsupported locator scheme for in-process operations: {parsed.scheme}",
        )
    try:
        return path.read_bytes()
    except OSError as e:
        raise RunnerError(RunnerErrorKind.INPUT_REJECTED, f"Cannot read source {locator}: {e}") from e


class Runner(ABC):
    """
    Abstract base class for transform runners.

    Runners execute a single attempt and classify every failure as a
    RunnerError. Retrying is the scheduler's job.
    """

    name: str = "runner"

    @abstractmethod
    def run(
        self,
        source_locators: Sequence[str],
        operation: str,
        options: dict[str, Any],
        target: MediaType,
        limits: RunnerLimits,
        *,
        key: Optional[str] = None,
    ) -> RunnerOutput:
        """
        Execute one transform attempt.

        Args:
            source_locators: Source URIs (data: URIs for inline sources)
            operation: Operation name
            options: Merged operation options
            target: Output media type
            limits: Resource limits for this attempt
            key: TransformKey of the job, used for cancellation

        Returns:
            RunnerOutput

        Raises:
            RunnerError: On any failure
        """
        pass

    def cancel(self, key: str) -> None:
        """Advisory cancellation of the attempt running for key. Default: no-op."""
        return None

    def supported_operations(self) -> Optional[set[str]]:
        """Operations this runner knows, or None when it accepts any name."""
        return None

    def close(self) -> None:
        """Release connections or other resources. Default: no-op."""
        return None
