"""Tests for rendition.scheduler.

Covers per-key deduplication under concurrency, bounded retry, provenance
checks, waiting, cancellation and job store reuse.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from rendition.config import SchedulerConfig
from rendition.errors import RunnerError, RunnerErrorKind, TransformError, TransformErrorKind
from rendition.job_store import FileJobStore, InMemoryJobStore
from rendition.mediatypes import parse_media_type
from rendition.runners import Runner, RunnerOutput, RunnerRegistry
from rendition.scheduler import TransformScheduler
from rendition.schemas import JobState, Representation, TransformJob, TransformRequest
from rendition.utils import sha256_prefixed


HTML = b"<h1>Title</h1>"


def html_output(**overrides):
    fields = dict(content_hash=sha256_prefixed(HTML), tool_version="fake/1")
    fields.update(overrides)
    return RunnerOutput.inline_bytes("text/html", HTML, **fields)


class FakeRunner(Runner):
    """
    Scripted runner.

    Each call pops the next outcome: an exception is raised, a RunnerOutput
    is returned, and when the script is exhausted a valid HTML output is
    returned. When a gate is set, calls block on it before completing.
    """

    name = "fake"

    def __init__(self, outcomes=(), gate=None):
        self.calls = []
        self.cancelled = []
        self.started = threading.Event()
        self._outcomes = list(outcomes)
        self._gate = gate
        self._lock = threading.Lock()

    def run(self, source_locators, operation, options, target, limits, *, key=None):
        with self._lock:
            self.calls.append({
                "locators": list(source_locators),
                "operation": operation,
                "options": options,
                "target": target,
                "limits": limits,
                "key": key,
            })
            outcome = self._outcomes.pop(0) if self._outcomes else None
        self.started.set()
        if self._gate is not None:
            self._gate.wait(5)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, RunnerOutput):
            return outcome
        return html_output()

    def cancel(self, key):
        self.cancelled.append(key)


def tool_failure(message="boom"):
    return RunnerError(RunnerErrorKind.TOOL_FAILURE, message)


@pytest.fixture
def request_(markdown_rep):
    return TransformRequest(
        kind_id="core:markdown",
        sources=(markdown_rep,),
        operation="markdown.render",
        target=parse_media_type("text/html"),
        options={"safe": True},
    )


@pytest.fixture
def config():
    return SchedulerConfig(max_attempts=3, backoff_seconds=0.0, max_workers=4)


def make_scheduler(runner, store=None, config=None, **kwargs):
    registry = RunnerRegistry()
    registry.register("fake", runner)
    return TransformScheduler(
        registry,
        store=store,
        config=config or SchedulerConfig(backoff_seconds=0.0),
        **kwargs,
    )


class TestSuccess:

    def test_result_has_provenance(self, request_, config):
        runner = FakeRunner()
        with make_scheduler(runner, config=config) as scheduler:
            rep = scheduler.transform(request_, timeout=5)

        assert rep.transform_key == request_.key
        assert rep.media_type == request_.target
        assert rep.content_hash == sha256_prefixed(HTML)
        assert rep.tool_version == "fake/1"
        assert rep.generated_by == "fake:markdown.render"
        assert rep.created_at is not None
        assert rep.payload.data == HTML.decode()

    def test_runner_receives_job_inputs(self, request_, config):
        runner = FakeRunner()
        with make_scheduler(runner, config=config) as scheduler:
            scheduler.transform(request_, timeout=5)

        call = runner.calls[0]
        assert call["locators"] == request_.source_locators()
        assert call["options"] == {"safe": True}
        assert call["key"] == request_.key
        assert call["limits"].max_wall_time == config.default_timeout_seconds
        assert call["limits"].max_output_bytes == config.max_output_bytes

    def test_request_timeout_sets_wall_time(self, markdown_rep, config):
        request = TransformRequest(
            kind_id="core:markdown",
            sources=(markdown_rep,),
            operation="markdown.render",
            target=parse_media_type("text/html"),
            timeout_seconds=7,
        )
        runner = FakeRunner()
        with make_scheduler(runner, config=config) as scheduler:
            scheduler.transform(request, timeout=5)
        assert runner.calls[0]["limits"].max_wall_time == 7

    def test_job_record(self, request_, config):
        with make_scheduler(FakeRunner(), config=config) as scheduler:
            rep = scheduler.transform(request_, timeout=5)
            job = scheduler.get_job(request_.key)

        assert job.state == JobState.SUCCEEDED
        assert job.attempts == 1
        assert job.result == rep
        assert job.last_error is None
        assert job.kind_id == "core:markdown"

    def test_on_result_callbacks(self, request_, config):
        seen = []
        broken = MagicMock(side_effect=RuntimeError("callback bug"))
        with make_scheduler(FakeRunner(), config=config) as scheduler:
            scheduler.on_result(broken)
            scheduler.on_result(lambda req, rep: seen.append((req.key, rep.transform_key)))
            scheduler.transform(request_, timeout=5)

        broken.assert_called_once()
        assert seen == [(request_.key, request_.key)]


class TestDeduplication:

    def test_concurrent_submits_share_one_run(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        with make_scheduler(runner, config=config) as scheduler:
            with ThreadPoolExecutor(max_workers=8) as pool:
                handles = list(pool.map(lambda _: scheduler.submit(request_), range(16)))
            assert runner.started.wait(5)
            gate.set()
            results = [h.result(timeout=5) for h in handles]

        assert len(runner.calls) == 1
        assert sum(1 for h in handles if not h.deduplicated) == 1
        assert all(r == results[0] for r in results)

    def test_equal_requests_at_different_times_dedupe(self, markdown_rep, config):
        runner = FakeRunner()

        def make():
            return TransformRequest(
                kind_id="core:markdown",
                sources=(markdown_rep,),
                operation="markdown.render",
                target=parse_media_type("text/html"),
            )

        with make_scheduler(runner, config=config) as scheduler:
            scheduler.transform(make(), timeout=5)
            scheduler.transform(make(), timeout=5)
        assert len(runner.calls) == 1

    def test_succeeded_job_short_circuits(self, request_, config):
        runner = FakeRunner()
        with make_scheduler(runner, config=config) as scheduler:
            first = scheduler.transform(request_, timeout=5)
            handle = scheduler.submit(request_)
            assert handle.done()
            assert handle.deduplicated
            assert handle.result(timeout=0) == first
        assert len(runner.calls) == 1

    def test_distinct_keys_run_separately(self, request_, markdown_rep, config):
        other = TransformRequest(
            kind_id="core:markdown",
            sources=(markdown_rep,),
            operation="markdown.render",
            target=parse_media_type("text/html"),
            options={"safe": False},
        )
        runner = FakeRunner()
        with make_scheduler(runner, config=config) as scheduler:
            scheduler.transform(request_, timeout=5)
            scheduler.transform(other, timeout=5)
            assert {job.key for job in scheduler.jobs()} == {request_.key, other.key}
        assert len(runner.calls) == 2


class TestRetry:

    def test_retryable_errors_then_success(self, request_, config):
        runner = FakeRunner([
            RunnerError(RunnerErrorKind.TIMEOUT, "slow"),
            tool_failure(),
        ])
        with make_scheduler(runner, config=config) as scheduler:
            rep = scheduler.transform(request_, timeout=5)
            job = scheduler.get_job(request_.key)

        assert rep.transform_key == request_.key
        assert len(runner.calls) == 3
        assert job.attempts == 3

    def test_attempts_bounded_by_max_attempts(self, request_, config):
        runner = FakeRunner([tool_failure() for _ in range(10)])
        with make_scheduler(runner, config=config) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
            job = scheduler.get_job(request_.key)

        error = exc_info.value
        assert error.kind == TransformErrorKind.TOOL_FAILURE
        assert error.attempts == 3
        assert error.terminal
        assert len(runner.calls) == 3
        assert job.state == JobState.FAILED
        assert job.terminal
        assert job.last_error["kind"] == "ToolFailure"

    def test_terminal_job_not_rerun(self, request_, config):
        runner = FakeRunner([tool_failure() for _ in range(10)])
        with make_scheduler(runner, config=config) as scheduler:
            with pytest.raises(TransformError):
                scheduler.transform(request_, timeout=5)
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
        assert exc_info.value.terminal
        assert len(runner.calls) == 3

    def test_input_rejected_not_retried(self, request_, config):
        runner = FakeRunner([RunnerError(RunnerErrorKind.INPUT_REJECTED, "bad markdown")])
        with make_scheduler(runner, config=config) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)

        assert exc_info.value.kind == TransformErrorKind.INPUT_REJECTED
        assert exc_info.value.attempts == 1
        assert not exc_info.value.terminal
        assert len(runner.calls) == 1

    def test_failed_job_requeued_on_resubmit(self, request_, config):
        runner = FakeRunner([RunnerError(RunnerErrorKind.TOO_LARGE, "huge")])
        with make_scheduler(runner, config=config) as scheduler:
            with pytest.raises(TransformError):
                scheduler.transform(request_, timeout=5)
            rep = scheduler.transform(request_, timeout=5)
            job = scheduler.get_job(request_.key)

        assert rep.transform_key == request_.key
        assert job.attempts == 2
        assert len(runner.calls) == 2

    def test_attempts_accumulate_across_requeues(self, request_, config):
        runner = FakeRunner([
            RunnerError(RunnerErrorKind.INPUT_REJECTED, "a"),
            RunnerError(RunnerErrorKind.INPUT_REJECTED, "b"),
            RunnerError(RunnerErrorKind.INPUT_REJECTED, "c"),
        ])
        with make_scheduler(runner, config=config) as scheduler:
            for _ in range(3):
                with pytest.raises(TransformError):
                    scheduler.transform(request_, timeout=5)
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)

        assert exc_info.value.terminal
        assert len(runner.calls) == 3

    def test_custom_retryable_kinds(self, request_, config):
        runner = FakeRunner([RunnerError(RunnerErrorKind.TIMEOUT, "slow")])
        with make_scheduler(runner, config=config, retryable_kinds=()) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
        assert exc_info.value.kind == TransformErrorKind.TIMEOUT
        assert len(runner.calls) == 1

    def test_unexpected_exception_is_tool_failure(self, request_):
        runner = FakeRunner([KeyError("oops")])
        with make_scheduler(runner, config=SchedulerConfig(max_attempts=1, backoff_seconds=0.0)) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
        assert exc_info.value.kind == TransformErrorKind.TOOL_FAILURE
        assert "KeyError" in exc_info.value.message


class TestOutputValidation:

    @pytest.mark.parametrize("overrides", [
        {"content_hash": None},
        {"tool_version": None},
    ])
    def test_missing_provenance_rejected(self, request_, config, overrides):
        bad = html_output(**overrides)
        runner = FakeRunner([bad, bad, bad])
        with make_scheduler(runner, config=config) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
        assert exc_info.value.kind == TransformErrorKind.TOOL_FAILURE
        assert "provenance" in exc_info.value.message
        assert len(runner.calls) == 3

    def test_wrong_media_type_rejected(self, request_):
        wrong = RunnerOutput.inline_bytes(
            "text/plain", b"Title", content_hash=sha256_prefixed(b"Title"), tool_version="fake/1"
        )
        runner = FakeRunner([wrong])
        with make_scheduler(runner, config=SchedulerConfig(max_attempts=1, backoff_seconds=0.0)) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
        assert "does not match target" in exc_info.value.message

    def test_non_output_result_fails_the_job(self, request_):
        class NoOutputRunner(FakeRunner):
            def run(self, *args, **kwargs):
                super().run(*args, **kwargs)
                return None

        runner = NoOutputRunner()
        with make_scheduler(runner, config=SchedulerConfig(max_attempts=2, backoff_seconds=0.0)) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
            job = scheduler.get_job(request_.key)

        assert exc_info.value.kind == TransformErrorKind.TOOL_FAILURE
        assert exc_info.value.terminal
        assert "expected RunnerOutput" in exc_info.value.message
        assert job.state == JobState.FAILED
        assert len(runner.calls) == 2

    def test_job_store_failure_fails_the_job(self, request_, config):
        class BrokenStore(InMemoryJobStore):
            def put(self, job):
                if job.state == JobState.RUNNING:
                    raise OSError("disk full")
                super().put(job)

        store = BrokenStore()
        runner = FakeRunner()
        with make_scheduler(runner, store=store, config=config) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)

        assert exc_info.value.kind == TransformErrorKind.TOOL_FAILURE
        assert "OSError: disk full" in exc_info.value.message
        assert store.get(request_.key).state == JobState.FAILED
        assert runner.calls == []

    def test_unknown_runner_fails_terminally(self, markdown_rep, config):
        request = TransformRequest(
            kind_id="core:markdown",
            sources=(markdown_rep,),
            operation="markdown.render",
            target=parse_media_type("text/html"),
            runner="missing",
        )
        runner = FakeRunner()
        with make_scheduler(runner, config=config) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request, timeout=5)
        assert exc_info.value.terminal
        assert "missing" in exc_info.value.message
        assert runner.calls == []


class TestWaiting:

    def test_wait_timeout_leaves_job_running(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        with make_scheduler(runner, config=config) as scheduler:
            handle = scheduler.submit(request_)
            with pytest.raises(TransformError) as exc_info:
                handle.result(timeout=0.05)
            assert exc_info.value.kind == TransformErrorKind.WAIT_TIMEOUT
            assert not exc_info.value.terminal
            assert scheduler.get_job(request_.key).state in (JobState.QUEUED, JobState.RUNNING)

            gate.set()
            rep = handle.result(timeout=5)
        assert rep.transform_key == request_.key
        assert len(runner.calls) == 1

    def test_timed_out_waiter_does_not_block_cancel(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        with make_scheduler(runner, config=config) as scheduler:
            impatient = scheduler.submit(request_)
            other = scheduler.submit(request_)
            assert runner.started.wait(5)
            with pytest.raises(TransformError):
                impatient.result(timeout=0.05)

            assert other.cancel()
            assert not impatient.cancel()
            gate.set()
            with pytest.raises(TransformError) as exc_info:
                impatient.result(timeout=5)

        assert exc_info.value.kind == TransformErrorKind.CANCELLED
        assert runner.cancelled == [request_.key]

    def test_scheduler_wait(self, request_, config):
        with make_scheduler(FakeRunner(), config=config) as scheduler:
            handle = scheduler.submit(request_)
            assert scheduler.wait(handle, timeout=5).transform_key == request_.key
            assert handle.done()


class TestCancellation:

    def test_cancel_last_waiter_cancels_job(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        with make_scheduler(runner, config=config) as scheduler:
            handle = scheduler.submit(request_)
            assert runner.started.wait(5)
            assert handle.cancel()
            gate.set()

            with pytest.raises(TransformError) as exc_info:
                scheduler.wait(handle, timeout=5)
            job = scheduler.get_job(request_.key)

        assert exc_info.value.kind == TransformErrorKind.CANCELLED
        assert not exc_info.value.terminal
        assert runner.cancelled == [request_.key]
        assert job.state == JobState.FAILED
        assert job.last_error["kind"] == "Cancelled"

    def test_cancel_with_other_waiters_keeps_running(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        with make_scheduler(runner, config=config) as scheduler:
            first = scheduler.submit(request_)
            second = scheduler.submit(request_)
            assert runner.started.wait(5)
            assert not first.cancel()
            gate.set()
            rep = second.result(timeout=5)

        assert rep.transform_key == request_.key
        assert runner.cancelled == []

    def test_cancel_before_start(self, request_, markdown_rep):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        blocker = TransformRequest(
            kind_id="core:markdown",
            sources=(Representation.inline("text/markdown", "# Blocker"),),
            operation="markdown.render",
            target=parse_media_type("text/html"),
        )
        config = SchedulerConfig(backoff_seconds=0.0, max_workers=1)
        with make_scheduler(runner, config=config) as scheduler:
            scheduler.submit(blocker)
            assert runner.started.wait(5)
            queued = scheduler.submit(request_)
            assert queued.cancel()
            with pytest.raises(TransformError) as exc_info:
                scheduler.wait(queued, timeout=5)
            gate.set()

        assert exc_info.value.kind == TransformErrorKind.CANCELLED
        assert len(runner.calls) == 1
        assert runner.cancelled == []

    def test_cancelled_job_can_be_resubmitted(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        with make_scheduler(runner, config=config) as scheduler:
            handle = scheduler.submit(request_)
            assert runner.started.wait(5)
            handle.cancel()
            gate.set()
            with pytest.raises(TransformError):
                scheduler.wait(handle, timeout=5)

            rep = scheduler.transform(request_, timeout=5)
        assert rep.transform_key == request_.key
        assert len(runner.calls) == 2

    def test_submit_after_cancel_resumes_run(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner(gate=gate)
        with make_scheduler(runner, config=config) as scheduler:
            first = scheduler.submit(request_)
            assert runner.started.wait(5)
            assert first.cancel()

            second = scheduler.submit(request_)
            assert second.deduplicated
            gate.set()
            rep = second.result(timeout=5)
            job = scheduler.get_job(request_.key)

        assert rep.transform_key == request_.key
        assert job.state == JobState.SUCCEEDED
        assert job.attempts == 1
        assert len(runner.calls) == 1

    def test_resumed_run_restarts_after_cancelled_attempt(self, request_, config):
        gate = threading.Event()
        runner = FakeRunner([tool_failure("slow start")], gate=gate)
        config = SchedulerConfig(max_attempts=3, backoff_seconds=0.2, max_workers=4)
        with make_scheduler(runner, config=config) as scheduler:
            first = scheduler.submit(request_)
            assert runner.started.wait(5)
            assert first.cancel()
            gate.set()

            # first attempt fails after the cancel, then a new waiter arrives
            second = scheduler.submit(request_)
            rep = second.result(timeout=5)
            job = scheduler.get_job(request_.key)

        assert rep.transform_key == request_.key
        assert job.state == JobState.SUCCEEDED
        assert job.attempts == 2

    def test_cancel_after_done_is_noop(self, request_, config):
        with make_scheduler(FakeRunner(), config=config) as scheduler:
            handle = scheduler.submit(request_)
            handle.result(timeout=5)
            assert not handle.cancel()


class TestJobStore:

    def test_result_reused_across_schedulers(self, request_, config):
        store = InMemoryJobStore()
        with make_scheduler(FakeRunner(), store=store, config=config) as scheduler:
            first = scheduler.transform(request_, timeout=5)

        second_runner = FakeRunner()
        with make_scheduler(second_runner, store=store, config=config) as scheduler:
            assert scheduler.transform(request_, timeout=5) == first
        assert second_runner.calls == []

    def test_file_store_survives_restart(self, request_, config, tmp_path):
        with make_scheduler(FakeRunner(), store=FileJobStore(tmp_path / "jobs"), config=config) as scheduler:
            first = scheduler.transform(request_, timeout=5)

        runner = FakeRunner()
        with make_scheduler(runner, store=FileJobStore(tmp_path / "jobs"), config=config) as scheduler:
            assert scheduler.transform(request_, timeout=5) == first
        assert runner.calls == []

    def test_stale_queued_record_is_requeued(self, request_, config):
        store = InMemoryJobStore()
        store.put(TransformJob(key=request_.key, state=JobState.RUNNING, attempts=1))
        runner = FakeRunner()
        with make_scheduler(runner, store=store, config=config) as scheduler:
            scheduler.transform(request_, timeout=5)
        assert store.get(request_.key).state == JobState.SUCCEEDED
        assert store.get(request_.key).attempts == 2
        assert len(runner.calls) == 1

    def test_terminal_record_returns_stored_error(self, request_, config):
        store = InMemoryJobStore()
        store.put(TransformJob(
            key=request_.key,
            state=JobState.FAILED,
            attempts=3,
            last_error={"kind": "Timeout", "message": "slow", "attempts": 3, "terminal": True},
            terminal=True,
        ))
        runner = FakeRunner()
        with make_scheduler(runner, store=store, config=config) as scheduler:
            with pytest.raises(TransformError) as exc_info:
                scheduler.transform(request_, timeout=5)
        assert exc_info.value.kind == TransformErrorKind.TIMEOUT
        assert exc_info.value.terminal
        assert runner.calls == []

    def test_transitions_persisted(self, request_, config):
        store = MagicMock(wraps=InMemoryJobStore())
        with make_scheduler(FakeRunner(), store=store, config=config) as scheduler:
            scheduler.transform(request_, timeout=5)
        states = [c.args[0].state for c in store.put.call_args_list]
        assert states == [JobState.QUEUED, JobState.RUNNING, JobState.SUCCEEDED]
