"""Structured logging for camera-scanner.

Every module logs through ``get_logger(__name__)``. Keyword arguments to
the level methods become structured fields on the record; formatters
render them as ``key=value`` pairs or as JSON. ``LogContext`` adds fields
to every record logged in its scope, which is how the coordinator tags
records with the camera name.

Security Note:
    Barcode payloads and camera names come from outside the process. Pass
    them as keyword arguments, never inside the message string:

    # SAFE - structured data is escaped by the formatter
    logger.info("Barcode decoded", text=payload, format=fmt)

    # UNSAFE - a payload containing CRLF could fake log lines
    logger.info(f"Barcode decoded {payload}")

Example:
    logger = get_logger(__name__)
    with LogContext(camera_name="0", session_id=3):
        logger.info("Picture saved", path=str(path), width=1600)

    configure_logging(level="DEBUG", json_format=True, force=True)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import Callable, Mapping, MutableMapping
from datetime import UTC, datetime
from typing import IO, Any, Protocol, cast, runtime_checkable

ROOT_LOGGER_NAME = "camera_scanner"

DEFAULT_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Fields active for the current thread or task; replaced, never mutated.
_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "camera_scanner_log_context", default={}
)


def _format_value(value: Any) -> str:
    """Render one structured value for text output.

    None is written as ``null``, strings with spaces are quoted, dicts and
    lists are JSON encoded, anything else goes through ``str()``.
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        return f'"{value}"' if " " in value else value
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


def render_pairs(data: Mapping[str, Any]) -> str:
    """``key=value`` pairs separated by spaces, in insertion order."""
    return " ".join(f"{key}={_format_value(value)}" for key, value in data.items())


def _structured_data(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "structured_data", None) or {}


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept structured keyword arguments.

    ``Logger.debug()``, ``info()`` and friends hand unknown keyword
    arguments straight to ``_log``; this class collects them there and
    stores them, merged over the active ``LogContext``, as
    ``record.structured_data``.

    Usage:
        logger = get_logger("camera_scanner.devices.capture")
        logger.info("Capture converged", ae_state="CONVERGED", af_state=None)
    """

    def _log(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None,
        exc_info: Any = None,
        extra: Mapping[str, object] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        merged_extra = dict(extra or {})
        merged_extra["structured_data"] = {**_log_context.get(), **fields}
        # one extra frame: this override sits between the level method and
        # Logger._log, and findCaller must skip it
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=merged_extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Text lines of the form ``ts - name - LEVEL - message | k=v k=v``.

    Args:
        fmt: Base format; ``DEFAULT_TEXT_FORMAT`` when None.
        datefmt: Date format for ``%(asctime)s``.
        include_structured: Append the structured pairs.
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        super().__init__(fmt or DEFAULT_TEXT_FORMAT, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        data = _structured_data(record)
        if self.include_structured and data:
            line = f"{line} | {render_pairs(data)}"
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: ``timestamp`` (UTC ISO-8601), ``level``, ``logger``, ``message``,
    ``exception`` when there is one, and every structured field at the top
    level. Values JSON cannot encode are written with ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_structured_data(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


# =============================================================================
# Context
# =============================================================================


class LogContext:
    """Adds fields to every record logged inside a ``with`` block.

    Contexts nest; inner fields override outer ones with the same key and
    the outer mapping is restored on exit, also when the block raises.

    Usage:
        with LogContext(camera_name="0"):
            with LogContext(stream_id=7):
                logger.info("Stream listening")  # camera_name and stream_id
    """

    __slots__ = ("fields", "_token")

    def __init__(self, **fields: Any) -> None:
        self.fields = fields
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __repr__(self) -> str:
        return f"LogContext({render_pairs(self.fields)})"

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**_log_context.get(), **self.fields})
        return self

    def __exit__(self, *exc: object) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


# =============================================================================
# Configuration
# =============================================================================

_lock = threading.Lock()
_installed: logging.Handler | None = None


def _install(
    level: int | str,
    json_format: bool,
    stream: IO[str] | None,
    include_structured: bool,
) -> None:
    global _installed
    if _installed is not None:
        return
    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        JSONFormatter()
        if json_format
        else StructuredFormatter(include_structured=include_structured)
    )
    package = logging.getLogger(ROOT_LOGGER_NAME)
    package.setLevel(level)
    package.addHandler(handler)
    package.propagate = False
    _installed = handler


def _uninstall() -> None:
    global _installed
    package = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(package.handlers):
        package.removeHandler(handler)
        handler.close()
    _installed = None


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: IO[str] | None = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Install the package log handler.

    Only the first call takes effect unless ``force`` drops the current
    setup first.

    Business context: the plugin runs inside a host process that owns
    the root logger. The handler lives on the ``camera_scanner`` logger
    with propagation off so host output never shows our lines twice.

    Args:
        level: Minimum level as a number or a name such as "DEBUG".
        json_format: JSON lines instead of ``key=value`` text.
        stream: Destination; stderr when None.
        include_structured: Append structured pairs in text mode.
        force: Replace an existing configuration.
    """
    with _lock:
        if force:
            _uninstall()
        _install(level, json_format, stream, include_structured)


def reset_logging() -> None:
    """Remove every handler from the package logger (used by tests)."""
    with _lock:
        _uninstall()


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for ``name``; installs the defaults on first use."""
    if _installed is None:
        with _lock:
            _install(logging.INFO, False, None, True)
    return cast(StructuredLogger, logging.getLogger(name))


# =============================================================================
# Host forwarding
# =============================================================================


@runtime_checkable
class DeviceLogSink(Protocol):  # pragma: no cover
    """Publishes device log lines to the host."""

    def send_device_log_info(self, message: str) -> None: ...

    def send_device_log_error(self, message: str) -> None: ...


class DeviceLogHandler(logging.Handler):
    """Forwards package records to the host as device log events.

    ERROR and above become ``deviceLogError``, everything else
    ``deviceLogInfo``; structured fields are appended as pairs. Records
    logged while a forward is in progress on the same thread are dropped,
    so a sink that logs cannot recurse.

    Usage:
        handler = DeviceLogHandler(lambda: messenger, level=logging.INFO)
        logging.getLogger(ROOT_LOGGER_NAME).addHandler(handler)

    Args:
        sink_getter: Current sink, or None while no camera is attached.
        level: Minimum level to forward.
    """

    def __init__(
        self,
        sink_getter: Callable[[], DeviceLogSink | None],
        level: int = logging.NOTSET,
    ) -> None:
        super().__init__(level)
        self._get_sink = sink_getter
        self._forwarding = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(self._forwarding, "active", False):
            return
        self._forwarding.active = True
        try:
            sink = self._get_sink()
            if sink is None:
                return
            message = record.getMessage()
            data = _structured_data(record)
            if data:
                message = f"{message} | {render_pairs(data)}"
            if record.levelno >= logging.ERROR:
                sink.send_device_log_error(message)
            else:
                sink.send_device_log_info(message)
        except Exception:
            self.handleError(record)
        finally:
            self._forwarding.active = False
