"""
Data models for the WAF abuse reporter.

This module defines the data structures used for firewall events, report
history records, bulk buffer entries, report outcomes and cycle statistics.
"""

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .enums import OutcomeStatus
from .exceptions import EventValidationError, ReportSubmissionError


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp ('Z' suffix allowed) into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as ISO-8601 UTC with a 'Z' suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Event:
    """One firewall-blocked request as returned by the event source."""

    client_ip: str
    ray_id: str
    occurred_at: datetime
    request_path: str = ""
    request_host: str = ""
    user_agent: str = ""
    country: str = ""
    source: str = ""
    action: str = ""

    @classmethod
    def from_api(cls, raw: dict) -> "Event":
        """
        Build an Event from a raw firewall event record.

        Args:
            raw: Event dictionary as returned by the Cloudflare GraphQL API

        Returns:
            Validated Event

        Raises:
            EventValidationError: If the client IP, ray id or timestamp is
                missing or malformed
        """
        if not isinstance(raw, dict):
            raise EventValidationError(
                code="not_an_object",
                message="Event record is not an object",
                details={"type": type(raw).__name__},
            )

        client_ip = raw.get("clientIP")
        if not isinstance(client_ip, str) or not client_ip:
            raise EventValidationError(
                code="missing_client_ip",
                message="Event record has no client IP",
                details={"ray_id": raw.get("rayName")},
            )
        try:
            client_ip = str(ipaddress.ip_address(client_ip.strip()))
        except ValueError as e:
            raise EventValidationError(
                code="invalid_client_ip",
                message=f"Invalid client IP: {client_ip}",
                details={"ray_id": raw.get("rayName")},
            ) from e

        ray_id = raw.get("rayName")
        if not isinstance(ray_id, str) or not ray_id:
            raise EventValidationError(
                code="missing_ray_id",
                message="Event record has no ray id",
                details={"client_ip": client_ip},
            )

        occurred_raw = raw.get("datetime")
        if not isinstance(occurred_raw, str):
            raise EventValidationError(
                code="missing_timestamp",
                message="Event record has no timestamp",
                details={"ray_id": ray_id},
            )
        try:
            occurred_at = parse_timestamp(occurred_raw)
        except ValueError as e:
            raise EventValidationError(
                code="invalid_timestamp",
                message=f"Invalid event timestamp: {occurred_raw}",
                details={"ray_id": ray_id},
            ) from e

        return cls(
            client_ip=client_ip,
            ray_id=ray_id,
            occurred_at=occurred_at,
            request_path=raw.get("clientRequestPath") or "",
            request_host=raw.get("clientRequestHTTPHost") or "",
            user_agent=raw.get("userAgent") or "",
            country=raw.get("clientCountryName") or "",
            source=raw.get("source") or "",
            action=raw.get("action") or "",
        )


@dataclass
class ReportRecord:
    """A single row of the report history."""

    timestamp: datetime
    ray_id: str
    ip: str
    country: str = ""
    host: str = ""
    path: str = ""
    user_agent: str = ""
    action: str = ""
    status: OutcomeStatus = OutcomeStatus.REPORTED
    forwarded: bool = False

    @classmethod
    def for_event(
        cls,
        event: Event,
        status: OutcomeStatus,
        timestamp: Optional[datetime] = None,
    ) -> "ReportRecord":
        """Create the history record for an event's report outcome."""
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            ray_id=event.ray_id,
            ip=event.client_ip,
            country=event.country,
            host=event.request_host,
            path=event.request_path,
            user_agent=event.user_agent,
            action=event.action,
            status=status,
        )


@dataclass
class BufferEntry:
    """A report deferred to the next bulk flush."""

    categories: list[int]
    timestamp: str  # ISO-8601, time the attack was observed
    comment: str

    def to_dict(self) -> dict:
        return {
            "categories": list(self.categories),
            "timestamp": self.timestamp,
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BufferEntry":
        return cls(
            categories=[int(c) for c in data["categories"]],
            timestamp=str(data["timestamp"]),
            comment=str(data["comment"]),
        )


@dataclass
class SubmissionResult:
    """Result of a successful report submission."""

    ip: str
    abuse_confidence_score: Optional[int] = None
    simulated: bool = False
    response_time_ms: float = 0.0


@dataclass
class ReportOutcome:
    """Outcome of the 'report one IP' operation."""

    status: OutcomeStatus
    ip: str
    error: Optional[ReportSubmissionError] = None
    submission: Optional[SubmissionResult] = None


@dataclass
class FlushResult:
    """Summary of a bulk buffer flush."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0
    interrupted: bool = False


@dataclass
class CycleStats:
    """Statistics accumulated over one reporting cycle."""

    started_at: str
    finished_at: Optional[str] = None
    fetched: int = 0
    processed: int = 0
    reported: int = 0
    buffered: int = 0
    skipped: int = 0
    errors: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "fetched": self.fetched,
            "processed": self.processed,
            "reported": self.reported,
            "buffered": self.buffered,
            "skipped": self.skipped,
            "errors": self.errors,
            "skip_reasons": dict(self.skip_reasons),
        }
