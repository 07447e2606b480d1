"""
Exception classes for the WAF abuse reporter.

All exceptions inherit from ReporterError and carry a machine-readable code,
a human-readable message and optional details for structured logging.
"""

from typing import Optional


class ReporterError(Exception):
    """Base exception for all reporter errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(ReporterError):
    """Raised when the configuration is incomplete or invalid."""

    pass


class EventValidationError(ReporterError):
    """Raised when a firewall event record is missing required fields."""

    pass


class SourceUnavailableError(ReporterError):
    """Raised when the event source returns a non-2xx or malformed response."""

    pass


class ReportSubmissionError(ReporterError):
    """Raised when a live abuse report submission fails."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(code, message, details)
        self.status_code = status_code


class RateLimitError(ReportSubmissionError):
    """Raised when the reporting API throttles the client (HTTP 429)."""

    pass


class DailyQuotaExceededError(RateLimitError):
    """Raised when the daily report quota is exhausted until the next UTC day."""

    pass


class PersistenceError(ReporterError):
    """Raised when persistence operations fail (file I/O, parsing)."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation of a persisted file fails."""

    pass


class ForwardingError(ReporterError):
    """Raised when forwarding reports to the secondary collector fails."""

    pass
