"""Structured logging for wordclip.

Every module logs through `get_logger(__name__)`, which lives under the
``wordclip`` logger. Records carry pipeline context (run, input file,
stage, track, clip) either bound with `with_context` or passed per call
through ``extra``; the formatter renders that context as ``key=value``
pairs in text mode or as a nested object in JSON-lines mode.

Console output goes to stderr so it never mixes with the results the CLI
prints on stdout. A log file, when enabled, always records DEBUG.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any

ROOT_LOGGER_NAME = "wordclip"

# Context keys shown first, in pipeline order
PIPELINE_FIELDS = ("run_id", "input", "stage", "track_id", "clip_id")

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_ANSI_RESET = "\033[0m"
_ANSI_DIM = "\033[90m"
_ANSI_NAME = "\033[96m"
_LEVEL_ANSI = {
    logging.DEBUG: "\033[90m",
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[1;91m",
}


class LogLevel(IntEnum):
    """CLI verbosity, from ``--quiet`` to ``--debug``."""

    QUIET = 0  # Errors only
    NORMAL = 1  # Warnings, e.g. keywords that never occur
    VERBOSE = 2  # Stage progress
    DEBUG = 3  # Subprocess commands, cache hits and misses

    @property
    def logging_level(self) -> int:
        return (logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG)[self]


@dataclass
class LogConfig:
    """How `configure_logging` sets up handlers.

    Attributes:
        level: Console verbosity
        log_file: Also write every record (DEBUG and up) here
        json_format: Emit one JSON object per line instead of text
        include_timestamp: Prefix records with their time
        include_context: Render pipeline context fields
        color: Colour the console output when stderr is a terminal
    """

    level: LogLevel = LogLevel.NORMAL
    log_file: Path | None = None
    json_format: bool = False
    include_timestamp: bool = True
    include_context: bool = True
    color: bool = True


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Collect the non-standard attributes of a record, pipeline fields first."""
    extra = {key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS}
    ordered = {key: extra.pop(key) for key in PIPELINE_FIELDS if key in extra}
    ordered.update(sorted(extra.items()))
    return ordered


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Render records as aligned text lines or as JSON lines."""

    def __init__(
        self,
        json_format: bool = False,
        include_timestamp: bool = True,
        include_context: bool = True,
        color: bool = True,
    ):
        super().__init__()
        self.json_format = json_format
        self.include_timestamp = include_timestamp
        self.include_context = include_context
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_json(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {}
        if self.include_timestamp:
            data["timestamp"] = datetime.fromtimestamp(record.created).isoformat()
        data["level"] = record.levelname.lower()
        data["logger"] = record.name
        data["message"] = record.getMessage()

        context = record_context(record) if self.include_context else {}
        if context:
            data["context"] = {key: _jsonable(value) for key, value in context.items()}
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data)

    def _format_text(self, record: logging.LogRecord) -> str:
        columns = []
        if self.include_timestamp:
            columns.append(self._ansi(datetime.fromtimestamp(record.created).strftime("%H:%M:%S"), _ANSI_DIM))
        columns.append(self._ansi(f"{record.levelname:<7}", _LEVEL_ANSI.get(record.levelno, "")))
        # wordclip.transcription.whisper -> transcription.whisper
        name = record.name.removeprefix(ROOT_LOGGER_NAME + ".")
        columns.append(self._ansi(f"{name:<22}", _ANSI_NAME))

        line = " ".join(columns) + " " + record.getMessage()

        context = record_context(record) if self.include_context else {}
        if context:
            pairs = " ".join(f"{key}={value}" for key, value in context.items())
            line += " " + self._ansi(f"[{pairs}]", _ANSI_DIM)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

    def _ansi(self, text: str, code: str) -> str:
        if not self.color or not code:
            return text
        return f"{code}{text}{_ANSI_RESET}"


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds bound pipeline context to every record.

    Per-call ``extra`` values win over bound ones.

    Example:
        log = get_logger(__name__).with_context(run_id=run.run_id)
        log.info("Extracted audio", extra={"track_id": 2})
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        super().__init__(logger, context or {})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def with_context(self, **context: Any) -> "ContextLogger":
        """Return an adapter with more context bound."""
        return ContextLogger(self.logger, {**self.extra, **context})


_config = LogConfig()
_configured = False


def _handler(handler: logging.Handler, level: int, formatter: StructuredFormatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(config: LogConfig | None = None) -> None:
    """(Re)build the handlers of the ``wordclip`` logger.

    Args:
        config: Settings to apply; the last applied settings when omitted
    """
    global _config, _configured
    if config is not None:
        _config = config

    console_level = _config.level.logging_level
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.setLevel(logging.DEBUG if _config.log_file else console_level)

    root.addHandler(
        _handler(
            logging.StreamHandler(sys.stderr),
            console_level,
            StructuredFormatter(
                json_format=_config.json_format,
                include_timestamp=_config.include_timestamp,
                include_context=_config.include_context,
                color=_config.color and sys.stderr.isatty(),
            ),
        )
    )

    if _config.log_file is not None:
        _config.log_file.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(
            _handler(
                logging.FileHandler(_config.log_file, encoding="utf-8"),
                logging.DEBUG,
                StructuredFormatter(json_format=_config.json_format, color=False),
            )
        )

    _configured = True


def get_logger(name: str) -> ContextLogger:
    """Get the logger for a module, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    return ContextLogger(logging.getLogger(name))


def set_verbosity(level: LogLevel) -> None:
    """Change console verbosity, keeping the other settings."""
    _config.level = level
    configure_logging()


def enable_file_logging(log_file: Path) -> None:
    """Start writing DEBUG records to a file, keeping the other settings."""
    _config.log_file = log_file
    configure_logging()


def log_operation_start(logger: logging.Logger | logging.LoggerAdapter, operation: str, **context: Any) -> None:
    """Log the start of an operation."""
    logger.info(f"Starting: {operation}", extra=context)


def log_operation_complete(
    logger: logging.Logger | logging.LoggerAdapter,
    operation: str,
    duration: float | None = None,
    **context: Any,
) -> None:
    """Log the completion of an operation.

    Args:
        logger: Logger to use
        operation: Operation name
        duration: Optional duration in seconds
        **context: Additional context
    """
    if duration is not None:
        context["duration_seconds"] = round(duration, 2)
    logger.info(f"Completed: {operation}", extra=context)


def log_operation_failed(
    logger: logging.Logger | logging.LoggerAdapter,
    operation: str,
    error: Exception,
    **context: Any,
) -> None:
    """Log a failed operation with the error's type, message and category."""
    context["error_type"] = type(error).__name__
    context["error_message"] = str(error)
    category = getattr(error, "category", None)
    if category is not None:
        context["category"] = getattr(category, "value", category)
    logger.error(f"Failed: {operation}", extra=context)
