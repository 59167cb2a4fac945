"""
Structured logging with key=value and JSON output support.

``Logger`` wraps a stdlib ``logging.Logger`` and turns keyword arguments
into structured fields. Fields travel on the ``structured_kv`` extra of the
log record and are rendered by
[StructuredFormatter][relaysync.core.logger.StructuredFormatter] as
``level name message key=value ...``. With ``json_output=True`` each call
emits one JSON object instead.

[Logger.bind()][relaysync.core.logger.Logger.bind] returns a child logger
that repeats a fixed set of fields on every call; the synchronizer uses it
to tag everything logged for one relay task with the relay URL.

[configure_logging()][relaysync.core.logger.configure_logging] installs the
formatter on the root logger. The CLI calls it once, and every worker
process calls it again on start because spawned interpreters begin with an
unconfigured root logger.

Examples:
    ```python
    from relaysync.core.logger import Logger

    logger = Logger("synchronizer")
    logger.info("cycle_started", relays=42)
    # info synchronizer cycle_started relays=42

    relay_log = logger.bind(relay="wss://relay.example.com")
    relay_log.warning("relay_sync_failed", error="timeout")
    # warning synchronizer relay_sync_failed relay=wss://relay.example.com error=timeout
    ```
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any, ClassVar


_TRUNCATION_SUFFIX = "...<truncated {} chars>"


def _truncate(value: Any, max_length: int | None) -> Any:
    """Shorten the string form of *value* past *max_length* characters."""
    if not max_length:
        return value
    text = str(value)
    if len(text) <= max_length:
        return value
    return text[:max_length] + _TRUNCATION_SUFFIX.format(len(text) - max_length)


def format_kv_pairs(
    kwargs: dict[str, Any],
    max_value_length: int | None = 1000,
    prefix: str = " ",
) -> str:
    """Format a dictionary as space-separated key=value pairs.

    Values containing whitespace, ``=`` or quotes are escaped and wrapped
    in double quotes so the output stays machine-splittable.

    Args:
        kwargs: Key-value pairs to format.
        max_value_length: Maximum characters per value before truncation.
            ``None`` disables truncation.
        prefix: String prepended to the output (default: single space).

    Returns:
        Formatted string, e.g. ``' relay=wss://a.io error="bad things"'``,
        or an empty string if *kwargs* is empty.
    """
    if not kwargs:
        return ""

    parts = []
    for key, value in kwargs.items():
        text = str(_truncate(value, max_value_length))
        if not text or any(ch in text for ch in " =\"'"):
            escaped = text.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'{key}="{escaped}"')
        else:
            parts.append(f"{key}={text}")
    return prefix + " ".join(parts)


class StructuredFormatter(logging.Formatter):
    """Render every record as ``level name message key=value ...``.

    Records produced by plain ``logging.getLogger()`` calls (models, utils)
    carry no ``structured_kv`` and are emitted with the same prefix.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname.lower()} {record.name} {record.getMessage()}"
        fields: dict[str, Any] = getattr(record, "structured_kv", {})
        if fields:
            line += format_kv_pairs(fields, max_value_length=None)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    """Render every record as one JSON object per line.

    Structured fields are merged into the top-level object next to
    ``timestamp``, ``level``, ``service`` and ``message``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.datetime.fromtimestamp(record.created, datetime.UTC).isoformat(),
            "level": record.levelname.lower(),
            "service": record.name,
            "message": record.getMessage(),
            **getattr(record, "structured_kv", {}),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    """Install a structured formatter on the root logger.

    Idempotent: existing handlers on the root logger are replaced, so a
    worker process that inherited handlers does not log twice.

    Args:
        level: Standard level name (``DEBUG``, ``INFO``, ``WARNING``, ``ERROR``).
        json_output: Use [JsonFormatter][relaysync.core.logger.JsonFormatter]
            instead of [StructuredFormatter][relaysync.core.logger.StructuredFormatter].
    """
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if json_output else StructuredFormatter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def logging_settings() -> tuple[str, bool]:
    """Level name and JSON flag of the current root configuration.

    Worker processes pass these back to
    [configure_logging()][relaysync.core.logger.configure_logging] so they
    log the same way as the parent.
    """
    root = logging.getLogger()
    json_output = any(isinstance(h.formatter, JsonFormatter) for h in root.handlers)
    return logging.getLevelName(root.getEffectiveLevel()), json_output


class Logger:
    """Structured logger that appends keyword arguments as extra fields.

    All public methods mirror the standard logging API with an added
    ``**kwargs`` parameter holding the structured fields.
    """

    _DEFAULT_MAX_VALUE_LENGTH: ClassVar[int] = 1000

    def __init__(
        self,
        name: str,
        *,
        json_output: bool = False,
        max_value_length: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a structured logger.

        Args:
            name: Logger name, typically the service or module name.
            json_output: If True, emit JSON objects instead of key=value pairs.
            max_value_length: Maximum characters per value before
                truncation. Defaults to 1000.
            context: Fields repeated on every record (see
                [bind()][relaysync.core.logger.Logger.bind]).
        """
        if max_value_length is None:
            max_value_length = self._DEFAULT_MAX_VALUE_LENGTH
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._max_value_length = max_value_length
        self._context: dict[str, Any] = dict(context or {})

    @property
    def name(self) -> str:
        """Name of the underlying stdlib logger."""
        return self._logger.name

    def bind(self, **context: Any) -> Logger:
        """Return a child logger that adds *context* to every record.

        Explicit keyword arguments on a log call override bound fields with
        the same name.
        """
        return Logger(
            self._logger.name,
            json_output=self._json_output,
            max_value_length=self._max_value_length,
            context={**self._context, **context},
        )

    def _emit(self, level: int, msg: str, kwargs: dict[str, Any], *, exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields = {**self._context, **kwargs}
        if self._json_output:
            payload = {
                "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
                "level": logging.getLevelName(level).lower(),
                "service": self._logger.name,
                "message": msg,
                **{k: _truncate(v, self._max_value_length) for k, v in fields.items()},
            }
            self._logger.log(level, json.dumps(payload, default=str), exc_info=exc_info)
            return
        extra = (
            {"structured_kv": {k: _truncate(v, self._max_value_length) for k, v in fields.items()}}
            if fields
            else {}
        )
        self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **kwargs: Any) -> None:
        """Log a DEBUG level message with optional key=value pairs."""
        self._emit(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        """Log an INFO level message with optional key=value pairs."""
        self._emit(logging.INFO, msg, kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        """Log a WARNING level message with optional key=value pairs."""
        self._emit(logging.WARNING, msg, kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        """Log an ERROR level message with optional key=value pairs."""
        self._emit(logging.ERROR, msg, kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        """Log a CRITICAL level message with optional key=value pairs."""
        self._emit(logging.CRITICAL, msg, kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log an ERROR level message with the active exception's traceback."""
        self._emit(logging.ERROR, msg, kwargs, exc_info=True)
