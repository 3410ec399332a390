"""
In-process runner - native Python transform operations.

Operations are plain functions registered by name:

    def render_plain(sources: list[bytes], options: dict, target: MediaType) -> RunnerOutput | dict

Return a RunnerOutput, or a dict in the job interface output form.

Error handling contract:
- Operations raise RunnerError for classified failures (propagated unchanged)
- ValueError means the input was rejected (InputRejected)
- Any other exception is a ToolFailure
- An operation that exceeds max_wall_time is reported as Timeout; its
  thread cannot be killed and is left to finish in the background
"""

import hashlib
import logging
import threading
from typing import Any, Callable, Optional, Sequence

from rendition.errors import RunnerError, RunnerErrorKind
from rendition.mediatypes import MediaType
from rendition.runners.base import (
    Runner,
    RunnerLimits,
    RunnerOutput,
    check_output_size,
    read_locator,
)
from rendition.utils import utcnow

logger = logging.getLogger(__name__)


OperationFn = Callable[[list[bytes], dict, MediaType], "RunnerOutput | dict"]

BUILTIN_TOOL_VERSION = "rendition-inprocess/1"


def identity_operation(sources: list[bytes], options: dict, target: MediaType) -> RunnerOutput:
    """Relabel the first source as the target media type without changing its bytes."""
    content = sources[0]
    return RunnerOutput.inline_bytes(
        target,
        content,
        content_hash=f"sha256:{hashlib.sha256(content).hexdigest()}",
        tool_version=BUILTIN_TOOL_VERSION,
        generated_by="identity",
        created_at=utcnow(),
    )


def text_concat_operation(sources: list[bytes], options: dict, target: MediaType) -> RunnerOutput:
    """Join UTF-8 text sources with options["separator"] (default newline)."""
    separator = options.get("separator", "\n")
    try:
        texts = [s.decode("utf-8") for s in sources]
    except UnicodeDecodeError as e:
        raise ValueError(f"Source is not UTF-8 text: {e}") from e
    content = separator.join(texts).encode("utf-8")
    return RunnerOutput.inline_bytes(
        target,
        content,
        content_hash=f"sha256:{hashlib.sha256(content).hexdigest()}",
        tool_version=BUILTIN_TOOL_VERSION,
        generated_by="text.concat",
        created_at=utcnow(),
    )


BUILTIN_OPERATIONS: dict[str, OperationFn] = {
    "identity": identity_operation,
    "text.concat": text_concat_operation,
}


class InProcessRunner(Runner):
    """
    Runner for Python functions executed in the scheduler's process.

    Usage:
        runner = InProcessRunner()
        runner.register("markdown.render", render_markdown)
    """

    name = "inprocess"

    def __init__(self, operations: Optional[dict[str, OperationFn]] = None, include_builtins: bool = True):
        self._operations: dict[str, OperationFn] = dict(BUILTIN_OPERATIONS) if include_builtins else {}
        if operations:
            self._operations.update(operations)

    def register(self, operation: str, fn: OperationFn) -> None:
        """
        Register an operation function by name.

        Args:
            operation: Operation name (e.g. "markdown.render")
            fn: Function taking (sources, options, target)
        """
        self._operations[operation] = fn

    def supported_operations(self) -> set[str]:
        return set(self._operations)

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
        fn = self._operations.get(operation)
        if fn is None:
            raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"Unknown in-process operation: {operation}")

        sources = [read_locator(locator) for locator in source_locators]
        outcome: dict[str, Any] = {}

        def target_fn() -> None:
            try:
                outcome["result"] = fn(sources, dict(options), target)
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(target=target_fn, name=f"rendition-{operation}", daemon=True)
        thread.start()
        thread.join(limits.max_wall_time)
        if thread.is_alive():
            raise RunnerError(
                RunnerErrorKind.TIMEOUT,
                f"{operation} exceeded {limits.max_wall_time}s",
            )

        if "error" in outcome:
            error = outcome["error"]
            if isinstance(error, RunnerError):
                raise error
            if isinstance(error, ValueError):
                raise RunnerError(RunnerErrorKind.INPUT_REJECTED, str(error)) from error
            logger.error(f"In-process operation {operation} failed: {error}", exc_info=error)
            raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"{type(error).__name__}: {error}") from error

        result = outcome.get("result")
        if isinstance(result, dict):
            result = RunnerOutput.from_dict(result)
        if not isinstance(result, RunnerOutput):
            raise RunnerError(
                RunnerErrorKind.TOOL_FAILURE,
                f"{operation} returned {type(result).__name__}, expected RunnerOutput",
            )
        check_output_size(result, limits)
        return result
