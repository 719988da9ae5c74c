"""Error handling and retry logic for wordclip.

Provides:
- Exception hierarchy keyed by `ErrorCategory`
- Retry logic with exponential backoff for model acquisition
- Rollback of staged files when a stage fails
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

from wordclip.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """Categories of errors for handling decisions."""

    TRANSIENT = "transient"  # Network, timeout - can retry
    CONFIGURATION = "configuration"  # Bad config - fatal before any stage runs
    ACQUISITION = "acquisition"  # Model download exhausted its retries
    EXTERNAL = "external"  # ffmpeg / whisper failure for one unit of work
    CACHE = "cache"  # Disk I/O on the stage cache
    CANCELLED = "cancelled"  # User interrupt
    INTERNAL = "internal"  # Bug in code


class WordclipError(Exception):
    """Base exception for wordclip errors.

    Attributes:
        message: Human-readable error message
        category: Error category for handling
        context: Additional context information (stage, fingerprint, track...)
        recoverable: Whether retrying may succeed
    """

    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        context: dict | None = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} (context: {self.context})"
        return self.message


class TransientError(WordclipError):
    """Transient error that can be retried.

    Examples: network timeouts, temporary service unavailability.
    """

    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, context, recoverable=True)


class ConfigError(WordclipError):
    """Configuration error.

    Examples: empty keyword list, unknown model, bad track list.
    """

    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, context, recoverable=False)


class InvalidTrackSelection(ConfigError):
    """A configured audio track does not exist in the input media."""

    def __init__(self, track_id: int, available: int, media_path: str = ""):
        super().__init__(
            f"Audio track {track_id} does not exist (media has {available} audio track(s))",
            context={"track_id": track_id, "available_tracks": available, "media": media_path},
        )
        self.track_id = track_id
        self.available = available


class AcquisitionError(WordclipError):
    """Model or network acquisition failure."""

    category = ErrorCategory.ACQUISITION

    def __init__(self, message: str, context: dict | None = None, recoverable: bool = False):
        super().__init__(message, context, recoverable=recoverable)


class ModelUnavailable(AcquisitionError):
    """The transcription model could not be resolved or downloaded."""

    def __init__(self, model_name: str, reason: str = ""):
        message = f"Model '{model_name}' is unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message, context={"model": model_name})
        self.model_name = model_name


class ExternalToolError(WordclipError):
    """A media or speech tool failed for one unit of work."""

    category = ErrorCategory.EXTERNAL

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, context, recoverable=False)


class TrackExtractionFailed(ExternalToolError):
    """Extracting one audio track from the media failed."""

    def __init__(self, track_id: int, reason: str = ""):
        message = f"Failed to extract audio track {track_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message, context={"stage": "audio", "track_id": track_id})
        self.track_id = track_id


class TranscriptionFailed(ExternalToolError):
    """The speech engine failed (or timed out) on one track."""

    def __init__(self, reason: str, track_id: int | None = None):
        context: dict[str, Any] = {"stage": "transcript"}
        if track_id is not None:
            context["track_id"] = track_id
        super().__init__(f"Transcription failed: {reason}", context=context)
        self.track_id = track_id


class ClipCutFailed(ExternalToolError):
    """Cutting one output clip failed."""

    def __init__(self, reason: str, clip_id: int | None = None):
        context: dict[str, Any] = {"stage": "cut"}
        if clip_id is not None:
            context["clip_id"] = clip_id
        super().__init__(f"Clip cut failed: {reason}", context=context)
        self.clip_id = clip_id


class CacheError(WordclipError):
    """Stage cache I/O failure."""

    category = ErrorCategory.CACHE

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, context, recoverable=False)


class RunCancelled(WordclipError):
    """The run was cancelled before it finished."""

    category = ErrorCategory.CANCELLED

    def __init__(self, message: str = "Run cancelled", context: dict | None = None):
        super().__init__(message, context, recoverable=False)


# Substrings of exception messages that indicate a temporary network problem
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
    "service unavailable",
    "429",
    "502",
    "503",
    "504",
)


def looks_transient(error: BaseException) -> bool:
    """Guess from its type and message whether a plain exception is temporary."""
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    text = str(error).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


@dataclass
class RetryConfig:
    """Backoff policy for model downloads.

    Attributes:
        max_attempts: Attempts including the first one
        initial_delay: Seconds to wait after the first failure
        max_delay: Upper bound for a single wait
        exponential_base: Growth factor between waits
        jitter: Spread each wait by up to a quarter either way
        retryable_errors: Error types retried when they are recoverable
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_errors: tuple = (TransientError,)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    delay = min(config.initial_delay * config.exponential_base ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay = max(0.1, delay * random.uniform(0.75, 1.25))
    return delay


def is_retryable(error: Exception, config: RetryConfig) -> bool:
    """Decide whether another attempt may succeed."""
    if isinstance(error, config.retryable_errors):
        return getattr(error, "recoverable", True)
    if isinstance(error, WordclipError):
        return error.recoverable
    return looks_transient(error)


def retry_with_backoff(
    config: RetryConfig | None = None,
    cancel_event: threading.Event | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorate a function so retryable failures are attempted again.

    Waits grow exponentially between attempts. When `cancel_event` is given
    the wait ends as soon as it is set and `RunCancelled` is raised instead
    of trying again. The last error propagates once attempts run out.

    Example:
        fetch = retry_with_backoff(RetryConfig(max_attempts=4))(store.fetch)
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = getattr(func, "__name__", repr(func))

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempts = max(1, config.max_attempts)
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable(e, config):
                        logger.debug(f"{name} failed permanently: {e}", extra={"error_type": type(e).__name__})
                        raise
                    if attempt == attempts:
                        logger.error(
                            f"{name} still failing after {attempt} attempts: {e}",
                            extra={"attempts": attempt},
                        )
                        raise

                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        f"{name} failed ({e}); retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{attempts})",
                        extra={"attempt": attempt, "delay": round(delay, 2)},
                    )
                    if cancel_event is None:
                        time.sleep(delay)
                    elif cancel_event.wait(delay):
                        raise RunCancelled(context={"retrying": name}) from e

        return wrapper

    return decorator


class ErrorContext:
    """Log a failing block and run its rollback before the error propagates.

    Wraps stage work that writes into the cache staging area, so a failed
    download or extraction never leaves a half-written staged path behind.
    A rollback that fails itself is logged and does not replace the
    original exception.
    """

    def __init__(
        self,
        operation: str,
        rollback: Callable[[], None] | None = None,
        context: dict | None = None,
    ):
        self.operation = operation
        self.rollback = rollback
        self.context = context or {}
        self.error: BaseException | None = None

    def __enter__(self) -> "ErrorContext":
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> bool:
        if exc_val is None:
            return False

        self.error = exc_val
        logger.debug(
            f"{self.operation} failed: {exc_val}",
            extra={"error_type": type(exc_val).__name__, **self.context},
        )
        if self.rollback is not None:
            try:
                self.rollback()
            except Exception as rollback_error:
                logger.error(f"Could not roll back {self.operation}: {rollback_error}", extra=self.context)
        return False


def wrap_download_error(error: Exception, model_name: str) -> WordclipError:
    """Classify a model download failure.

    Network-looking failures become `TransientError` so the caller's retry
    applies; anything else is a permanent `AcquisitionError`. Errors that
    are already wordclip errors are returned unchanged.
    """
    if isinstance(error, WordclipError):
        return error

    context = {"model": model_name, "error_type": type(error).__name__}
    if looks_transient(error):
        return TransientError(f"Transient error downloading model '{model_name}': {error}", context=context)
    return AcquisitionError(f"Failed to download model '{model_name}': {error}", context=context)


def format_error_for_display(error: BaseException) -> str:
    """Render an error as ``[category] message (key=value, ...)`` for the CLI."""
    if not isinstance(error, WordclipError):
        return f"[error] {type(error).__name__}: {error}"

    text = f"[{error.category.value}] {error.message}"
    if error.context:
        text += " (" + ", ".join(f"{key}={value}" for key, value in error.context.items()) + ")"
    return text
