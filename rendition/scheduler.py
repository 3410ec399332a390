"""
TransformScheduler - deduplicated, bounded-retry transform execution.

The scheduler owns one job per TransformKey:
1. submit() computes the key and consults the job table (one lock)
   - succeeded: the stored result is returned, no runner call
   - queued/running: the caller attaches to the in-flight run
   - failed, under the attempt budget: the job is requeued
   - failed, budget exhausted: the terminal error is returned
2. A worker thread runs the attempt loop with exponential backoff
3. Success wraps the RunnerOutput into a Representation with provenance
   and notifies on_result callbacks; every waiter of the run observes the
   same outcome

Error handling contract:
- Runners raise RunnerError; anything else is converted to ToolFailure
- Retryable kinds (default Timeout, ToolFailure) are retried within a run;
  InputRejected and TooLarge fail the run immediately
- Outputs without contentHash or toolVersion are ToolFailure
- Any other failure inside a run (invalid output, job store errors) ends
  the run as ToolFailure, so waiters are always released
- A waiter that gives up gets WaitTimeout and stops counting as a waiter;
  the job keeps running
- A job is cancelled only when its last waiter cancels; the outcome is
  Cancelled and the runner is asked (advisory) to stop. A submit that
  arrives before the cancelled run settles resumes it instead
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Collection, Optional

from rendition.config import SchedulerConfig
from rendition.errors import (
    RunnerError,
    RunnerErrorKind,
    TransformError,
    TransformErrorKind,
)
from rendition.job_store import JobStore
from rendition.runners import Runner, RunnerLimits, RunnerOutput, RunnerRegistry
from rendition.schemas import JobState, Representation, TransformJob, TransformRequest
from rendition.utils import retry_with_backoff, utcnow

logger = logging.getLogger(__name__)


DEFAULT_RETRYABLE_KINDS = frozenset({RunnerErrorKind.TIMEOUT, RunnerErrorKind.TOOL_FAILURE})

ResultCallback = Callable[[TransformRequest, Representation], None]


class _Cancelled(Exception):
    pass


class _Run:
    """Completion object shared by every waiter of one execution of a job."""

    def __init__(self, key: str):
        self.key = key
        self.done = threading.Event()
        self.cancelled = threading.Event()
        self.waiters = 0
        self.future: Optional[Future] = None
        self.result: Optional[Representation] = None
        self.error: Optional[TransformError] = None

    @classmethod
    def completed(
        cls,
        key: str,
        result: Optional[Representation] = None,
        error: Optional[TransformError] = None,
    ) -> "_Run":
        run = cls(key)
        run.result = result
        run.error = error
        run.done.set()
        return run


class _Slot:
    """Job table entry: the job record, its current run and the request that created it."""

    def __init__(self, job: TransformJob, request: TransformRequest):
        self.job = job
        self.request = request
        self.run: Optional[_Run] = None


class TransformHandle:
    """
    A caller's view of a submitted transform.

    Usage:
        handle = scheduler.submit(request)
        representation = handle.result(timeout=10)
    """

    def __init__(self, scheduler: "TransformScheduler", run: _Run, deduplicated: bool):
        self._scheduler = scheduler
        self._run = run
        self._released = False
        self.deduplicated = deduplicated

    @property
    def key(self) -> str:
        return self._run.key

    def done(self) -> bool:
        return self._run.done.is_set()

    def result(self, timeout: Optional[float] = None) -> Representation:
        """Block until the result is available. Same as scheduler.wait(handle, timeout)."""
        return self._scheduler.wait(self, timeout)

    def cancel(self) -> bool:
        return self._scheduler.cancel(self)

    def __repr__(self) -> str:
        return f"TransformHandle(key={self.key}, done={self.done()})"


class TransformScheduler:
    """
    Runs TransformRequests on a worker pool with per-key deduplication.

    Usage:
        scheduler = TransformScheduler(runners, store=FileJobStore(path))
        scheduler.on_result(index.add_result)

        handle = scheduler.submit(resolution.request)
        representation = scheduler.wait(handle, timeout=30)
    """

    def __init__(
        self,
        runners: RunnerRegistry,
        store: Optional[JobStore] = None,
        config: Optional[SchedulerConfig] = None,
        retryable_kinds: Collection[RunnerErrorKind] = DEFAULT_RETRYABLE_KINDS,
    ):
        """
        Args:
            runners: Registry used to choose a runner per request
            store: Job record persistence (None keeps records only in the job table)
            config: Attempt budget, backoff, timeouts and pool size
            retryable_kinds: Runner error kinds retried within a run
        """
        self._runners = runners
        self._store = store
        self._config = config or SchedulerConfig()
        self._retryable = frozenset(retryable_kinds)
        self._slots: dict[str, _Slot] = {}
        self._lock = threading.Lock()
        self._callbacks: list[ResultCallback] = []
        self._pool = ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="rendition-transform",
        )

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def on_result(self, callback: ResultCallback) -> None:
        """Register a callback invoked with (request, representation) after each success."""
        self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Submission

    def submit(self, request: TransformRequest) -> TransformHandle:
        """
        Submit a transform request. Never blocks on execution.

        Returns:
            TransformHandle for the job with the request's TransformKey
        """
        key = request.key
        with self._lock:
            slot = self._slots.get(key)
            if slot is None and self._store is not None:
                stored = self._store.get(key)
                if stored is not None:
                    slot = _Slot(stored, request)
                    self._slots[key] = slot

            if slot is None:
                job = TransformJob(
                    key=key,
                    state=JobState.QUEUED,
                    kind_id=request.kind_id,
                    operation=request.operation,
                )
                slot = _Slot(job, request)
                self._slots[key] = slot
                self._persist(job)
                return self._start(slot, request, deduplicated=False)

            job = slot.job
            if job.state == JobState.SUCCEEDED:
                logger.debug(f"Transform {key} already succeeded", extra={"transform_key": key})
                return TransformHandle(self, _Run.completed(key, result=job.result), deduplicated=True)

            run = slot.run
            if job.state in (JobState.QUEUED, JobState.RUNNING) and run is not None and not run.done.is_set():
                if run.cancelled.is_set():
                    run.cancelled.clear()
                    logger.info(
                        f"Resumed cancelled transform {key}",
                        extra={"transform_key": key, "event": "resume"},
                    )
                run.waiters += 1
                logger.debug(f"Attached to in-flight transform {key}", extra={"transform_key": key})
                return TransformHandle(self, run, deduplicated=True)

            if job.terminal or job.attempts >= self._config.max_attempts:
                error = self._stored_error(job)
                return TransformHandle(self, _Run.completed(key, error=error), deduplicated=True)

            # Failed under budget, or a queued/running record left by a previous process
            requeued = replace(
                job,
                state=JobState.QUEUED,
                last_error=None,
                terminal=False,
                updated_at=utcnow(),
            )
            slot.job = requeued
            slot.request = request
            self._persist(requeued)
            logger.info(
                f"Requeued transform {key} after {job.attempts} attempt(s)",
                extra={"transform_key": key, "event": "requeue"},
            )
            return self._start(slot, request, deduplicated=True)

    def transform(self, request: TransformRequest, timeout: Optional[float] = None) -> Representation:
        """Submit and wait in one call."""
        return self.wait(self.submit(request), timeout)

    def _start(self, slot: _Slot, request: TransformRequest, deduplicated: bool) -> TransformHandle:
        run = _Run(slot.job.key)
        run.waiters = 1
        slot.run = run
        run.future = self._pool.submit(self._execute, run, request, slot.job.attempts)
        return TransformHandle(self, run, deduplicated=deduplicated)

    def _stored_error(self, job: TransformJob) -> TransformError:
        if job.last_error:
            error = TransformError.from_dict(job.key, job.last_error)
            error.terminal = True
            return error
        return TransformError(
            job.key,
            TransformErrorKind.TOOL_FAILURE,
            "Attempt budget exhausted",
            attempts=job.attempts,
        )

    # ------------------------------------------------------------------
    # Waiting and cancellation

    def wait(self, handle: TransformHandle, timeout: Optional[float] = None) -> Representation:
        """
        Wait for a handle's outcome.

        A handle that times out is released: it no longer holds the job
        against cancellation by other waiters, and cancel() on it returns
        False. Waiting on it again still observes the outcome.

        Raises:
            TransformError: WaitTimeout if no outcome within timeout (the job
                continues), otherwise the run's terminal error
        """
        run = handle._run
        if not run.done.wait(timeout):
            self._release(handle)
            job = self.get_job(run.key)
            raise TransformError(
                run.key,
                TransformErrorKind.WAIT_TIMEOUT,
                f"No result within {timeout}s",
                attempts=job.attempts if job else 0,
                terminal=False,
            )
        self._release(handle)
        if run.error is not None:
            raise run.error
        return run.result

    def _release(self, handle: TransformHandle) -> bool:
        with self._lock:
            if handle._released:
                return False
            handle._released = True
            if not handle._run.done.is_set():
                handle._run.waiters -= 1
            return True

    def cancel(self, handle: TransformHandle) -> bool:
        """
        Withdraw a waiter. The job is cancelled when no waiters remain.

        Returns:
            True if the job was cancelled
        """
        run = handle._run
        with self._lock:
            if handle._released or run.done.is_set():
                handle._released = True
                return False
            handle._released = True
            run.waiters -= 1
            if run.waiters > 0:
                return False
            run.cancelled.set()
            never_started = run.future is not None and run.future.cancel()
            slot = self._slots.get(run.key)
            if never_started and slot is not None:
                self._fail(slot, run, TransformError(
                    run.key,
                    TransformErrorKind.CANCELLED,
                    "Cancelled before start",
                    attempts=slot.job.attempts,
                    terminal=False,
                ))
            preferred = slot.request.runner if slot else None
            operation = slot.request.operation if slot else ""

        logger.info(f"Cancelled transform {run.key}", extra={"transform_key": run.key, "event": "cancel"})
        if not never_started:
            try:
                self._runners.runner_for(operation, preferred).cancel(run.key)
            except KeyError:
                pass
        return True

    # ------------------------------------------------------------------
    # Inspection

    def get_job(self, key: str) -> Optional[TransformJob]:
        with self._lock:
            slot = self._slots.get(key)
            if slot is not None:
                return slot.job
        if self._store is not None:
            return self._store.get(key)
        return None

    def jobs(self) -> list[TransformJob]:
        with self._lock:
            return [slot.job for slot in self._slots.values()]

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; in-flight runs finish when wait is True."""
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "TransformScheduler":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Execution (worker threads)

    def _limits(self, request: TransformRequest) -> RunnerLimits:
        timeout = request.timeout_seconds or self._config.default_timeout_seconds
        return RunnerLimits(
            max_wall_time=timeout,
            max_output_bytes=self._config.max_output_bytes,
            max_memory_mb=self._config.max_memory_mb,
            max_cpus=self._config.max_cpus,
        )

    def _execute(self, run: _Run, request: TransformRequest, prior_attempts: int) -> None:
        key = run.key
        if prior_attempts >= self._config.max_attempts:
            self._finish_error(run, TransformErrorKind.TOOL_FAILURE, "Attempt budget exhausted", None, terminal=True)
            return
        try:
            runner = self._runners.runner_for(request.operation, request.runner)
        except KeyError as e:
            self._finish_error(run, TransformErrorKind.TOOL_FAILURE, str(e), prior_attempts, terminal=True)
            return

        limits = self._limits(request)
        locators = request.source_locators()

        def attempt(n: int) -> Representation:
            if run.cancelled.is_set():
                raise _Cancelled()
            self._mark_running(key, n)
            try:
                output = runner.run(
                    locators,
                    request.operation,
                    dict(request.options),
                    request.target,
                    limits,
                    key=key,
                )
            except RunnerError:
                raise
            except Exception as e:
                logger.error(
                    f"Runner {runner.name} raised unexpectedly for {key}: {e}",
                    exc_info=True,
                    extra={"transform_key": key},
                )
                raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"{type(e).__name__}: {e}") from e
            if run.cancelled.is_set():
                raise _Cancelled()
            try:
                return self._accept(key, request, runner, output)
            except RunnerError:
                raise
            except Exception as e:
                raise RunnerError(RunnerErrorKind.TOOL_FAILURE, f"Invalid runner output: {type(e).__name__}: {e}") from e

        def should_retry(e: Exception) -> bool:
            return isinstance(e, RunnerError) and e.kind in self._retryable

        def backoff(seconds: float) -> None:
            if run.cancelled.wait(seconds):
                raise _Cancelled()

        try:
            representation = retry_with_backoff(
                attempt,
                max_attempts=self._config.max_attempts,
                backoff_seconds=self._config.backoff_seconds,
                backoff_multiplier=self._config.backoff_multiplier,
                max_backoff_seconds=self._config.max_backoff_seconds,
                should_retry=should_retry,
                sleep=backoff,
                first_attempt=prior_attempts + 1,
                logger=logger,
            )
        except _Cancelled:
            self._settle_cancelled(run, request)
            return
        except RunnerError as e:
            if run.cancelled.is_set():
                self._settle_cancelled(run, request)
                return
            self._finish_error(run, TransformErrorKind.from_runner_kind(e.kind), e.message, None, terminal=None)
            return
        except Exception as e:
            logger.error(
                f"Transform {key} failed unexpectedly: {e}",
                exc_info=True,
                extra={"transform_key": key},
            )
            self._finish_error(
                run, TransformErrorKind.TOOL_FAILURE, f"{type(e).__name__}: {e}", None, terminal=None
            )
            return

        self._finish_success(run, request, representation)

    def _settle_cancelled(self, run: _Run, request: TransformRequest) -> None:
        """End a cancelled run, or restart it when a submit resumed it after the cancel."""
        with self._lock:
            slot = self._slots[run.key]
            resumed = not run.cancelled.is_set()
            if resumed:
                try:
                    run.future = self._pool.submit(self._execute, run, request, slot.job.attempts)
                except RuntimeError:
                    # pool already shut down
                    resumed = False
            if not resumed:
                error = TransformError(
                    run.key,
                    TransformErrorKind.CANCELLED,
                    "Cancelled",
                    attempts=slot.job.attempts,
                    terminal=False,
                )
                self._fail(slot, run, error)

        if resumed:
            logger.info(f"Restarting transform {run.key} for a new waiter", extra={"transform_key": run.key})
        else:
            logger.warning(f"{error}", extra={"transform_key": run.key, "event": "failed"})

    def _accept(
        self,
        key: str,
        request: TransformRequest,
        runner: Runner,
        output: RunnerOutput,
    ) -> Representation:
        """Validate a runner output and wrap it into a Representation."""
        if not isinstance(output, RunnerOutput):
            raise RunnerError(
                RunnerErrorKind.TOOL_FAILURE,
                f"Runner {runner.name} returned {type(output).__name__}, expected RunnerOutput",
            )
        missing = [
            name for name, value in (("contentHash", output.content_hash), ("toolVersion", output.tool_version))
            if not value
        ]
        if missing:
            raise RunnerError(
                RunnerErrorKind.TOOL_FAILURE,
                f"Output is missing required provenance: {', '.join(missing)}",
            )
        if output.media_type.essence != request.target.essence:
            raise RunnerError(
                RunnerErrorKind.TOOL_FAILURE,
                f"Output media type {output.media_type} does not match target {request.target}",
            )
        representation = output.to_representation(transform_key=key)
        return replace(
            representation,
            media_type=request.target,
            generated_by=representation.generated_by or f"{runner.name}:{request.operation}",
            created_at=representation.created_at or utcnow(),
        )

    def _persist(self, job: TransformJob) -> None:
        if self._store is not None:
            self._store.put(job)

    def _persist_outcome(self, job: TransformJob) -> None:
        """Persist a finished job; the in-memory outcome stands if the store write fails."""
        try:
            self._persist(job)
        except Exception as e:
            logger.error(
                f"Could not record outcome of transform {job.key}: {e}",
                exc_info=True,
                extra={"transform_key": job.key},
            )

    def _mark_running(self, key: str, attempt: int) -> None:
        with self._lock:
            slot = self._slots[key]
            slot.job = replace(slot.job, state=JobState.RUNNING, attempts=attempt, updated_at=utcnow())
            self._persist(slot.job)
        logger.info(
            f"Transform {key} attempt {attempt}/{self._config.max_attempts}",
            extra={"transform_key": key, "event": "attempt"},
        )

    def _finish_success(self, run: _Run, request: TransformRequest, representation: Representation) -> None:
        with self._lock:
            slot = self._slots[run.key]
            slot.job = replace(
                slot.job,
                state=JobState.SUCCEEDED,
                result=representation,
                last_error=None,
                terminal=False,
                updated_at=utcnow(),
            )
            self._persist_outcome(slot.job)
            attempts = slot.job.attempts
        logger.info(
            f"Transform {run.key} succeeded after {attempts} attempt(s)",
            extra={"transform_key": run.key, "kind_id": request.kind_id, "event": "succeeded"},
        )
        # Callbacks run before waiters wake so fed-back results are visible to them
        for callback in list(self._callbacks):
            try:
                callback(request, representation)
            except Exception as e:
                logger.error(f"on_result callback failed for {run.key}: {e}", exc_info=True)
        run.result = representation
        run.done.set()

    def _finish_error(
        self,
        run: _Run,
        kind: TransformErrorKind,
        message: str,
        attempts: Optional[int],
        terminal: Optional[bool],
    ) -> None:
        with self._lock:
            slot = self._slots[run.key]
            if attempts is None:
                attempts = slot.job.attempts
            if terminal is None:
                terminal = attempts >= self._config.max_attempts
            error = TransformError(run.key, kind, message, attempts=attempts, terminal=terminal)
            self._fail(slot, run, error)
        log = logger.error if terminal else logger.warning
        log(f"{error}", extra={"transform_key": run.key, "event": "failed"})

    def _fail(self, slot: _Slot, run: _Run, error: TransformError) -> None:
        """Record a failed run. Caller holds the lock."""
        slot.job = replace(
            slot.job,
            state=JobState.FAILED,
            attempts=error.attempts,
            result=None,
            last_error=error.to_dict(),
            terminal=error.terminal,
            updated_at=utcnow(),
        )
        self._persist_outcome(slot.job)
        run.error = error
        run.done.set()
