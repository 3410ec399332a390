"""
Process and container runners - the job interface over stdin/stdout.

The tool receives the job input document as JSON on stdin and writes the
output document (or {"error": {...}}) as JSON on stdout.

Exit status classification (when stdout carries no error document):
- 0: success, stdout parsed as the output document
- 2: InputRejected
- anything else: ToolFailure (stderr tail included in the message)

Wall-time overrun kills the process and reports Timeout.
"""

import json
import logging
import os
import subprocess
import threading
import uuid
from typing import Any, Iterable, Optional, Sequence

from rendition.errors import RunnerError, RunnerErrorKind
from rendition.mediatypes import MediaType
from rendition.runners.base import (
    Runner,
    RunnerLimits,
    RunnerOutput,
    job_input,
    parse_job_output,
)

logger = logging.getLogger(__name__)


EXIT_INPUT_REJECTED = 2
STDERR_TAIL_CHARS = 2000


def _memory_limiter(max_memory_mb: int):
    def apply() -> None:
        import resource
        limit = max_memory_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    return apply


class ProcessRunner(Runner):
    """
    Runs a native tool process per attempt.

    Usage:
        runner = ProcessRunner(["rendition-tool-pandoc"], operations=["markdown.render"])
    """

    name = "process"

    def __init__(
        self,
        command: Sequence[str],
        operations: Optional[Iterable[str]] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        """
        Args:
            command: argv of the tool
            operations: Operations the tool implements (None accepts any)
            env: Extra environment variables for the tool
            cwd: Working directory for the tool
        """
        if not command:
            raise ValueError("ProcessRunner requires a command")
        self._command = list(command)
        self._operations = set(operations) if operations is not None else None
        self._env = env
        self._cwd = cwd
        self._running: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def supported_operations(self) -> Optional[set[str]]:
        return set(self._operations) if self._operations is not None else None

    def build_command(self, limits: RunnerLimits, run_name: str) -> list[str]:
        return list(self._command)

    def _preexec(self, limits: RunnerLimits):
        if limits.max_memory_mb is not None and os.name == "posix":
            return _memory_limiter(limits.max_memory_mb)
        return None

    def _cleanup(self, run_name: str) -> None:
        """Hook for releasing resources after a killed attempt."""
        return None

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
        if self._operations is not None and operation not in self._operations:
            raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"{self.name} runner does not implement {operation}")

        run_name = f"rendition-{uuid.uuid4().hex[:12]}"
        command = self.build_command(limits, run_name)
        document = json.dumps(job_input(source_locators, operation, options, target, limits))
        env = {**os.environ, **self._env} if self._env else None

        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                cwd=self._cwd,
                preexec_fn=self._preexec(limits),
            )
        except OSError as e:
            raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"Cannot start {command[0]}: {e}") from e

        if key is not None:
            with self._lock:
                self._running[key] = proc

        try:
            stdout, stderr = proc.communicate(document.encode("utf-8"), timeout=limits.max_wall_time)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            self._cleanup(run_name)
            raise RunnerError(RunnerErrorKind.TIMEOUT, f"{operation} exceeded {limits.max_wall_time}s")
        finally:
            if key is not None:
                with self._lock:
                    self._running.pop(key, None)

        return self._interpret(operation, proc.returncode, stdout, stderr, limits)

    def _interpret(
        self,
        operation: str,
        returncode: int,
        stdout: bytes,
        stderr: bytes,
        limits: RunnerLimits,
    ) -> RunnerOutput:
        data: Any = None
        text = stdout.decode("utf-8", errors="replace").strip()
        if text:
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                data = None

        if isinstance(data, dict) and "error" in data:
            return parse_job_output(data, limits)

        if returncode == 0:
            if data is None:
                raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"{operation} produced no JSON output")
            return parse_job_output(data, limits)

        tail = stderr.decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:].strip()
        if returncode == EXIT_INPUT_REJECTED:
            raise RunnerError(RunnerErrorKind.INPUT_REJECTED, tail or f"{operation} rejected its input")
        raise RunnerError(
            RunnerErrorKind.TOOL_FAILURE,
            f"{operation} exited with status {returncode}: {tail}",
        )

    def cancel(self, key: str) -> None:
        with self._lock:
            proc = self._running.get(key)
        if proc is not None and proc.poll() is None:
            logger.info(f"Killing {self.name} attempt for {key}")
            proc.kill()


class ContainerRunner(ProcessRunner):
    """
    Runs each attempt in a fresh, network-less container.

    The container receives the same job interface on stdin/stdout. Memory
    and CPU limits are passed to the container runtime.

    Usage:
        runner = ContainerRunner("ghcr.io/acme/pandoc-tool:3.1", runtime="podman")
    """

    name = "container"

    def __init__(
        self,
        image: str,
        runtime: str = "docker",
        operations: Optional[Iterable[str]] = None,
        extra_args: Sequence[str] = (),
    ):
        super().__init__([runtime, "run"], operations=operations)
        self._image = image
        self._runtime = runtime
        self._extra_args = list(extra_args)

    @property
    def image(self) -> str:
        return self._image

    def build_command(self, limits: RunnerLimits, run_name: str) -> list[str]:
        command = [self._runtime, "run", "--rm", "-i", "--network=none", "--name", run_name]
        if limits.max_memory_mb is not None:
            command.append(f"--memory={limits.max_memory_mb}m")
        if limits.max_cpus is not None:
            command.append(f"--cpus={limits.max_cpus}")
        command.extend(self._extra_args)
        command.append(self._image)
        return command

    def _preexec(self, limits: RunnerLimits):
        # The runtime enforces memory limits inside the container.
        return None

    def _cleanup(self, run_name: str) -> None:
        try:
            subprocess.run(
                [self._runtime, "rm", "-f", run_name],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=30,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Failed to remove container {run_name}: {e}")
