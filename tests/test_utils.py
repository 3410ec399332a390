"""Tests for rendition.utils."""

import json
import logging
import sys

import pytest

from rendition.utils import (
    StructuredFormatter,
    canonical_json,
    format_duration,
    retry_with_backoff,
    setup_logging,
    sha256_prefixed,
)


class TestRetryWithBackoff:

    def test_retries_until_success(self):
        waits = []
        attempts = []

        def flaky(attempt):
            attempts.append(attempt)
            if attempt < 3:
                raise RuntimeError("not yet")
            return "ok"

        result = retry_with_backoff(flaky, max_attempts=5, backoff_seconds=1.0, sleep=waits.append)

        assert result == "ok"
        assert attempts == [1, 2, 3]
        assert waits == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        calls = []

        def always_fails(attempt):
            calls.append(attempt)
            raise RuntimeError(f"attempt {attempt}")

        with pytest.raises(RuntimeError, match="attempt 3"):
            retry_with_backoff(always_fails, max_attempts=3, sleep=lambda s: None)
        assert calls == [1, 2, 3]

    def test_non_retryable_raises_immediately(self):
        calls = []

        def fails(attempt):
            calls.append(attempt)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            retry_with_backoff(
                fails,
                max_attempts=3,
                should_retry=lambda e: not isinstance(e, ValueError),
                sleep=lambda s: None,
            )
        assert calls == [1]

    def test_backoff_is_capped(self):
        waits = []

        def fails(attempt):
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            retry_with_backoff(
                fails,
                max_attempts=5,
                backoff_seconds=2.0,
                backoff_multiplier=10.0,
                max_backoff_seconds=5.0,
                sleep=waits.append,
            )
        assert waits == [2.0, 5.0, 5.0, 5.0]

    def test_sleep_can_abort(self):
        calls = []

        def fails(attempt):
            calls.append(attempt)
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            retry_with_backoff(fails, max_attempts=5, sleep=lambda s: True)
        assert calls == [1]

    def test_first_attempt_offset(self):
        calls = []

        def fails(attempt):
            calls.append(attempt)
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            retry_with_backoff(fails, max_attempts=3, first_attempt=2, sleep=lambda s: None)
        assert calls == [2, 3]


class TestHashing:

    def test_canonical_json(self):
        assert canonical_json({"b": 1, "a": [1, "é"]}) == '{"a":[1,"é"],"b":1}'

    def test_sha256_prefixed(self):
        assert sha256_prefixed("abc") == sha256_prefixed(b"abc")
        assert sha256_prefixed(b"abc") == (
            "sha256:ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )


@pytest.mark.parametrize("seconds,expected", [
    (0.25, "250ms"),
    (4.24, "4.2s"),
    (185, "3m 05s"),
    (3720, "1h 02m"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


class TestLogging:

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        logger = logging.getLogger("rendition")
        handlers, level = list(logger.handlers), logger.level
        yield
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        for handler in handlers:
            logger.addHandler(handler)
        logger.setLevel(level)

    def test_structured_file_output(self, tmp_path):
        log_file = tmp_path / "logs" / "rendition.log"
        logger = setup_logging(log_file=log_file, log_level="DEBUG", console_output=False)

        logging.getLogger("rendition.scheduler").info(
            "Transform succeeded", extra={"transform_key": "sha256:k", "event": "succeeded"}
        )
        for handler in logger.handlers:
            handler.flush()

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record["msg"] == "Transform succeeded"
        assert record["level"] == "INFO"
        assert record["logger"] == "rendition.scheduler"
        assert record["transform_key"] == "sha256:k"
        assert record["event"] == "succeeded"
        assert "kind_id" not in record

    def test_handlers_replaced(self):
        setup_logging(log_format="pretty")
        logger = setup_logging(log_format="structured")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredFormatter)

    def test_quiets_http_client(self):
        setup_logging(log_level="DEBUG", console_output=False)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("rendition", logging.ERROR, __file__, 1, "failed", None, None)
            record.exc_info = sys.exc_info()
        data = json.loads(StructuredFormatter().format(record))
        assert "RuntimeError: boom" in data["exc"]
