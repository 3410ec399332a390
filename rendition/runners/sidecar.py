"""
Sidecar runner - the job interface over HTTP.

POST {base_url}/run/{operation} with the job input document as JSON.
A 2xx response carries the output document; failures carry
{"error": {"kind", "message"}}. Without an error document the status code
is classified:

    408, 504          -> Timeout
    413               -> TooLarge
    400, 415, 422     -> InputRejected
    other 4xx/5xx     -> ToolFailure
"""

import logging
from typing import Any, Iterable, Optional, Sequence

import httpx

from rendition.errors import RunnerError, RunnerErrorKind
from rendition.mediatypes import MediaType
from rendition.runners.base import Runner, RunnerLimits, RunnerOutput, job_input, parse_job_output

logger = logging.getLogger(__name__)


STATUS_KINDS = {
    400: RunnerErrorKind.INPUT_REJECTED,
    408: RunnerErrorKind.TIMEOUT,
    413: RunnerErrorKind.TOO_LARGE,
    415: RunnerErrorKind.INPUT_REJECTED,
    422: RunnerErrorKind.INPUT_REJECTED,
    504: RunnerErrorKind.TIMEOUT,
}


class SidecarRunner(Runner):
    """
    Runner that delegates to a long-lived transform service.

    Usage:
        runner = SidecarRunner("http://localhost:8900")

        # Tests inject a transport
        runner = SidecarRunner("http://sidecar", transport=httpx.MockTransport(handler))
    """

    name = "sidecar"

    def __init__(
        self,
        base_url: str,
        operations: Optional[Iterable[str]] = None,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._operations = set(operations) if operations is not None else None
        self._client = httpx.Client(base_url=self._base_url, headers=headers, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    def supported_operations(self) -> Optional[set[str]]:
        return set(self._operations) if self._operations is not None else None

    def close(self) -> None:
        self._client.close()

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
            raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"Sidecar does not implement {operation}")

        document = job_input(source_locators, operation, options, target, limits)
        headers = {"X-Transform-Key": key} if key else None
        try:
            response = self._client.post(
                f"/run/{operation}",
                json=document,
                headers=headers,
                timeout=limits.max_wall_time,
            )
        except httpx.TimeoutException as e:
            raise RunnerError(RunnerErrorKind.TIMEOUT, f"{operation} exceeded {limits.max_wall_time}s") from e
        except httpx.HTTPError as e:
            raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"Sidecar request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_success:
            if data is None:
                raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"Sidecar returned non-JSON body for {operation}")
            return parse_job_output(data, limits)

        if isinstance(data, dict) and "error" in data:
            return parse_job_output(data, limits)

        kind = STATUS_KINDS.get(response.status_code, RunnerErrorKind.TOOL_FAILURE)
        raise RunnerError(kind, f"Sidecar returned HTTP {response.status_code} for {operation}")

    def cancel(self, key: str) -> None:
        """Ask the sidecar to abandon the attempt for key (best effort)."""
        try:
            self._client.post("/cancel", json={"key": key}, timeout=5.0)
        except httpx.HTTPError as e:
            logger.warning(f"Sidecar cancel for {key} failed: {e}")
