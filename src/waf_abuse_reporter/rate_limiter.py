"""
Rate Limiter module for the WAF abuse reporter.

Tracks the AbuseIPDB daily report quota as a small state machine:

- NORMAL: reports are submitted live
- LIMITED_BUFFERING: the daily quota is exhausted; reports go to the bulk
  buffer until ``reset_at`` (next UTC midnight plus one minute)
- LIMITED_BULK_SENT: still limited, but the buffer was already flushed once
  in this window; no second flush is attempted before the reset

The quota resets at a fixed UTC boundary, so ``reset_at`` is recomputed from
the detection time on every new limit instead of being extrapolated.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .enums import LogLevel, RateLimitPhase


# Interval between "still waiting" messages while limited
RATE_LIMIT_LOG_INTERVAL = timedelta(minutes=10)
# Interval between buffer statistics messages while the buffer is non-empty
BUFFER_STATS_INTERVAL = timedelta(minutes=5)
# Margin after UTC midnight before the quota is considered reset
RESET_MARGIN = timedelta(minutes=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_rate_limit_reset(now: datetime) -> datetime:
    """
    Compute the next quota reset: the next UTC midnight plus one minute.

    Args:
        now: Aware reference time

    Returns:
        Aware UTC datetime strictly after ``now``'s UTC date
    """
    now_utc = now.astimezone(timezone.utc)
    midnight = datetime(now_utc.year, now_utc.month, now_utc.day, tzinfo=timezone.utc)
    return midnight + timedelta(days=1) + RESET_MARGIN


@dataclass
class ResetCheck:
    """Result of a reset check."""

    reset: bool = False  # LIMITED -> NORMAL happened in this call
    should_flush: bool = False  # no bulk flush was issued in the ended window


class DailyQuotaState:
    """
    Daily quota state machine.

    Invariant: ``is_buffering`` is true whenever ``is_limited`` is true.
    Buffering can also be forced on independently of the quota.
    """

    COMPONENT = "rate_limiter"

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the state in NORMAL.

        Args:
            clock: Returns the current aware UTC time (injectable for tests)
            logger: Optional audit logger
        """
        self._clock = clock or utc_now
        self._logger = logger
        self._is_limited = False
        self._forced_buffering = False
        self._sent_bulk = False
        self._reset_at = next_rate_limit_reset(self._clock())
        self._last_wait_log: Optional[datetime] = None
        self._last_stats_log: Optional[datetime] = None

    @property
    def is_limited(self) -> bool:
        return self._is_limited

    @property
    def is_buffering(self) -> bool:
        return self._is_limited or self._forced_buffering

    @property
    def sent_bulk(self) -> bool:
        return self._sent_bulk

    @property
    def reset_at(self) -> datetime:
        return self._reset_at

    @property
    def phase(self) -> RateLimitPhase:
        """Current phase derived from the flags."""
        if not self._is_limited:
            return RateLimitPhase.NORMAL
        if self._sent_bulk:
            return RateLimitPhase.LIMITED_BULK_SENT
        return RateLimitPhase.LIMITED_BUFFERING

    def now(self) -> datetime:
        return self._clock()

    def force_buffering(self, enabled: bool = True) -> None:
        """Force reports into the buffer regardless of the quota."""
        self._forced_buffering = enabled

    def mark_limited(self, now: Optional[datetime] = None) -> bool:
        """
        Record a daily-quota rejection.

        Only the first detection while NORMAL has an effect: the state moves
        to LIMITED_BUFFERING, ``sent_bulk`` is cleared and ``reset_at`` is
        recomputed from ``now``.

        Returns:
            True if the state transitioned
        """
        if self._is_limited:
            return False

        now = now or self._clock()
        self._is_limited = True
        self._sent_bulk = False
        self._reset_at = next_rate_limit_reset(now)
        self._last_wait_log = now
        self._log(
            LogLevel.WARN,
            f"Daily AbuseIPDB limit reached. Buffering reports until {self._reset_at.isoformat()}",
            {"reset_at": self._reset_at.isoformat()},
        )
        return True

    def mark_bulk_sent(self) -> None:
        """Record that the buffer was flushed in the current window."""
        self._sent_bulk = True

    def check_reset(self, now: Optional[datetime] = None, buffered: int = 0) -> ResetCheck:
        """
        Leave the limited state once ``reset_at`` has passed.

        Before ``reset_at`` the only effect is a "still waiting" message,
        emitted at most once per RATE_LIMIT_LOG_INTERVAL.

        Args:
            now: Reference time (defaults to the clock)
            buffered: Current buffer size, for log messages

        Returns:
            ResetCheck telling the caller whether to flush the buffer
        """
        if not self._is_limited:
            return ResetCheck()

        now = now or self._clock()
        if now >= self._reset_at:
            should_flush = not self._sent_bulk
            self._is_limited = False
            self._sent_bulk = False
            self._reset_at = next_rate_limit_reset(now)
            self._last_wait_log = None
            self._log(
                LogLevel.INFO,
                f"Rate limit reset. Next reset scheduled at {self._reset_at.isoformat()}",
                {"buffered": buffered},
            )
            return ResetCheck(reset=True, should_flush=should_flush)

        if self._last_wait_log is None or now - self._last_wait_log >= RATE_LIMIT_LOG_INTERVAL:
            minutes_left = math.ceil((self._reset_at - now).total_seconds() / 60)
            self._log(
                LogLevel.INFO,
                f"Rate limit is still active. Collected {buffered} IPs. "
                f"Waiting for reset in {minutes_left} minute(s)",
                {"reset_at": self._reset_at.isoformat(), "buffered": buffered},
            )
            self._last_wait_log = now
        return ResetCheck()

    def log_buffer_stats(self, buffered: int, capacity: int, now: Optional[datetime] = None) -> bool:
        """
        Log buffer statistics at most once per BUFFER_STATS_INTERVAL.

        Returns:
            True if a message was logged
        """
        if buffered <= 0:
            return False
        now = now or self._clock()
        if self._last_stats_log is not None and now - self._last_stats_log < BUFFER_STATS_INTERVAL:
            return False
        self._last_stats_log = now
        self._log(
            LogLevel.INFO,
            f"Bulk buffer holds {buffered}/{capacity} IPs",
            {"buffered": buffered, "capacity": capacity, "phase": self.phase.value},
        )
        return True

    def to_dict(self) -> dict:
        """Snapshot for status output."""
        return {
            "phase": self.phase.value,
            "is_limited": self._is_limited,
            "is_buffering": self.is_buffering,
            "sent_bulk": self._sent_bulk,
            "reset_at": self._reset_at.isoformat(),
        }

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
