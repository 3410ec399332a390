"""
Transform runners.

Runners execute one transform attempt in isolation:
- inprocess: Python functions in the scheduler's process
- process: a native tool speaking JSON over stdin/stdout
- container: the same tool in a per-attempt container (docker/podman)
- sidecar: a long-lived HTTP transform service
"""

from rendition.runners.base import (
    Runner,
    RunnerLimits,
    RunnerOutput,
    job_input,
    parse_job_output,
    read_locator,
)
from rendition.runners.inprocess import InProcessRunner
from rendition.runners.process import ContainerRunner, ProcessRunner
from rendition.runners.registry import RunnerRegistry
from rendition.runners.sidecar import SidecarRunner

__all__ = [
    "Runner",
    "RunnerLimits",
    "RunnerOutput",
    "job_input",
    "parse_job_output",
    "read_locator",
    "InProcessRunner",
    "ProcessRunner",
    "ContainerRunner",
    "SidecarRunner",
    "RunnerRegistry",
]
