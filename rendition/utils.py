"""
Utility functions for rendition.

Includes logging, retries, hashing, and console output.
"""

import hashlib
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape


# stdout console for CLI confirmations
console = Console()


# Fields passed through `extra=` that the JSON formatter carries over
LOG_EXTRA_FIELDS = ("transform_key", "kind_id", "event")

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _formatter(log_format: str, console: bool) -> logging.Formatter:
    if log_format == "structured":
        return StructuredFormatter()
    if console:
        return logging.Formatter("%(levelname)s [%(name)s] %(message)s")
    return logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the "rendition" logger.

    Console output goes to stderr; stdout is left for command results.

    Args:
        log_file: Append log records to this file as well
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "structured" (JSON lines) or "pretty" (rich console)
        console_output: Attach a stderr handler

    Returns:
        The "rendition" logger
    """
    logger = logging.getLogger("rendition")
    logger.setLevel(log_level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_formatter(log_format, console=False))
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler: logging.Handler = RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                show_time=False,
                show_path=False,
            )
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(_formatter(log_format, console=True))
        logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logger.level))

    return logger


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with LOG_EXTRA_FIELDS when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        entry.update({
            name: getattr(record, name)
            for name in LOG_EXTRA_FIELDS
            if hasattr(record, name)
        })
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def retry_with_backoff(
    func: Callable[[int], Any],
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    backoff_multiplier: float = 2.0,
    max_backoff_seconds: Optional[float] = None,
    should_retry: Callable[[Exception], bool] = lambda e: True,
    sleep: Callable[[float], Any] = time.sleep,
    first_attempt: int = 1,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """
    Retry a function with exponential backoff.

    Args:
        func: Function to retry, called with the 1-indexed attempt number
        max_attempts: Maximum attempt number (inclusive)
        backoff_seconds: Initial backoff time in seconds
        backoff_multiplier: Multiplier for each retry
        max_backoff_seconds: Upper bound for a single wait
        should_retry: Predicate deciding whether an exception is retryable
        sleep: Wait function; returning True aborts further retries
        first_attempt: Attempt number to start counting from (for requeues)
        logger: Logger for retry messages

    Returns:
        Result of successful function call

    Raises:
        Exception: The last exception once retries are exhausted, or the
            first non-retryable one
    """
    attempt = first_attempt
    wait_time = backoff_seconds

    while True:
        try:
            return func(attempt)

        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                if logger:
                    logger.error(f"Attempt {attempt}/{max_attempts} failed, giving up: {e}")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {wait_time}s..."
                )

            if sleep(wait_time) is True:
                raise
            wait_time *= backoff_multiplier
            if max_backoff_seconds is not None:
                wait_time = min(wait_time, max_backoff_seconds)
            attempt += 1


def canonical_json(data: Any) -> str:
    """Canonical JSON: sorted keys, compact separators, UTF-8 preserved."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_prefixed(data: str | bytes) -> str:
    """Hash text or bytes as 'sha256:<hex>'."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def format_duration(seconds: float) -> str:
    """Compact duration for CLI output: "250ms", "4.2s", "3m 05s", "1h 02m"."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def print_success(message: str) -> None:
    console.print(f"[bold green]✓[/bold green] {escape(message)}")
