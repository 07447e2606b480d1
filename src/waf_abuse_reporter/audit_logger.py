"""
Audit Logger module for the WAF abuse reporter.

Provides structured logging with JSON and human-readable text output,
minimum-level filtering, an optional append-only log file and masking of
API keys and tokens before anything reaches a stream.
"""

import json
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TextIO

from .enums import LogLevel


MASK_VALUE = "***MASKED***"

# Matched as substrings of the lowercased key
_SECRET_FRAGMENTS = (
    "token", "secret", "password", "apikey", "api_key",
    "auth", "credential",
)
# Matched only as a whole underscore/dash separated part ("api_key", not "monkey")
_SECRET_PARTS = frozenset({"key"})


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if any(fragment in lowered for fragment in _SECRET_FRAGMENTS):
        return True
    return not _SECRET_PARTS.isdisjoint(lowered.replace("-", "_").split("_"))


def mask_secrets(value: Any) -> Any:
    """Return a copy of ``value`` with every secret-looking dict key masked."""
    if isinstance(value, dict):
        return {
            k: MASK_VALUE if is_sensitive_key(str(k)) else mask_secrets(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [mask_secrets(item) for item in value]
    return value


@dataclass
class LogEntry:
    """Represents a single log entry with all metadata."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "level": self.level.value,
                "component": self.component,
                "message": self.message,
                "data": self.data,
            },
            ensure_ascii=False,
            default=str,
        )

    def to_text(self) -> str:
        # [TIMESTAMP] LEVEL [COMPONENT] MESSAGE {data}
        line = f"[{self.timestamp}] {self.level.value.upper()} [{self.component}] {self.message}"
        if self.data:
            line += " " + json.dumps(self.data, ensure_ascii=False, default=str)
        return line


class AuditLogger:
    """
    Structured logger shared by every component.

    Entries below ``min_level`` are dropped. Everything else is masked,
    kept in a bounded in-memory history, written to the output stream in
    the configured format(s) and appended to ``log_file`` when one is set.
    """

    MASK_VALUE = MASK_VALUE
    MAX_STORED_ENTRIES = 10_000
    FORMATS = ("json", "text", "both")

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.INFO,
        log_file: Optional[Path] = None,
    ):
        """
        Initialize the audit logger.

        Args:
            output_format: Output format - 'json', 'text', or 'both'
            output_stream: Output stream for log entries (defaults to sys.stderr)
            min_level: Entries below this level are dropped
            log_file: Optional file every emitted line is appended to

        Raises:
            ValueError: If the output format is unknown
        """
        if output_format not in self.FORMATS:
            raise ValueError(f"Invalid output_format: {output_format}")

        self._output_format = output_format
        self._stream = output_stream or sys.stderr
        self._min_level = min_level
        self._log_file = log_file
        self._history: deque[LogEntry] = deque(maxlen=self.MAX_STORED_ENTRIES)

    @classmethod
    def from_config(cls, logging_config, verbose: bool = False) -> "AuditLogger":
        """Build a logger from a LoggingConfig; ``verbose`` forces DEBUG."""
        if verbose:
            level = LogLevel.DEBUG
        else:
            try:
                level = LogLevel(logging_config.level.lower())
            except ValueError:
                level = LogLevel.INFO
        return cls(
            output_format=logging_config.output_format,
            min_level=level,
            log_file=logging_config.log_file,
        )

    @property
    def output_format(self) -> str:
        return self._output_format

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def entries(self) -> list[LogEntry]:
        """Recently emitted entries, oldest first."""
        return list(self._history)

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Emit one entry.

        Returns:
            The emitted LogEntry, or None if ``level`` is below the minimum
        """
        if level.rank < self._min_level.rank:
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=mask_secrets(data or {}),
        )
        self._history.append(entry)
        self._write(self._render(entry))
        return entry

    def debug(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, component, message, data)

    def info(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, component, message, data)

    def warn(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, component, message, data)

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[Exception] = None,
        request_url: Optional[str] = None,
        response_status_code: Optional[int] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Log an error with full context.

        Reporter errors contribute their code and details; any status code
        they carry is used when ``response_status_code`` is not given.

        Args:
            component: Component name generating the log
            message: Human-readable error message
            error: Optional exception object
            request_url: Optional URL of the failed request
            response_status_code: Optional HTTP status code
            additional_data: Optional additional context data
        """
        context = dict(additional_data or {})
        if error is not None:
            context.update(error_type=type(error).__name__, error_message=str(error))
            if getattr(error, "code", None) is not None:
                context["error_code"] = error.code
            if getattr(error, "details", None):
                context["error_details"] = error.details
            if response_status_code is None:
                response_status_code = getattr(error, "status_code", None)
        if request_url is not None:
            context["request_url"] = request_url
        if response_status_code is not None:
            context["response_status_code"] = response_status_code
        return self.log(LogLevel.ERROR, component, message, context)

    def mask_sensitive_data(self, data: dict) -> dict:
        return mask_secrets(data)

    def _render(self, entry: LogEntry) -> list[str]:
        lines = []
        if self._output_format != "text":
            lines.append(entry.to_json())
        if self._output_format != "json":
            lines.append(entry.to_text())
        return lines

    def _write(self, lines: list[str]) -> None:
        block = "".join(line + "\n" for line in lines)
        self._stream.write(block)
        self._stream.flush()
        if self._log_file is not None:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a", encoding="utf-8") as f:
                f.write(block)
