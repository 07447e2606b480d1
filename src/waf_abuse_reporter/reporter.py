"""
Report gate: the "report one IP" operation and bulk buffer flushing.

Every report attempt first runs the quota reset check, which may flush the
buffer as a side effect. While buffering, reports are queued in the bulk
buffer; otherwise they are submitted live. A daily-quota rejection switches
the state machine to buffering and queues the report instead.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .audit_logger import AuditLogger
from .bulk_buffer import BulkBuffer
from .buffer_store import BufferStore
from .enums import LogLevel, OutcomeStatus
from .exceptions import (
    DailyQuotaExceededError,
    PersistenceError,
    ReportSubmissionError,
    TamperingError,
)
from .models import (
    BufferEntry,
    Event,
    FlushResult,
    ReportOutcome,
    SubmissionResult,
    format_timestamp,
)
from .rate_limiter import DailyQuotaState


class ReportSubmitter(Protocol):
    """Anything that can submit a single abuse report."""

    async def submit(
        self,
        ip: str,
        categories: list[int],
        comment: str,
        timestamp: Optional[str] = None,
    ) -> SubmissionResult:
        ...


@dataclass
class ReportingContext:
    """Quota state and bulk buffer shared by one reporter instance."""

    state: DailyQuotaState = field(default_factory=DailyQuotaState)
    buffer: BulkBuffer = field(default_factory=BulkBuffer)
    buffer_store: Optional[BufferStore] = None


class ReportGate:
    """
    Routes reports to live submission or the bulk buffer.

    The buffer is persisted after every mutation. Persistence failures are
    logged and the in-memory buffer stays authoritative.
    """

    COMPONENT = "reporter"

    def __init__(
        self,
        client: ReportSubmitter,
        context: ReportingContext,
        logger: Optional[AuditLogger] = None,
        flush_delay_seconds: float = 0.0,
    ) -> None:
        """
        Initialize the report gate.

        Args:
            client: Report submitter (AbuseIPDBClient in production)
            context: Shared quota state, buffer and buffer store
            logger: Optional audit logger
            flush_delay_seconds: Pause between submissions during a flush
        """
        self._client = client
        self._context = context
        self._logger = logger
        self._flush_delay = flush_delay_seconds

    @property
    def context(self) -> ReportingContext:
        return self._context

    @property
    def state(self) -> DailyQuotaState:
        return self._context.state

    @property
    def buffer(self) -> BulkBuffer:
        return self._context.buffer

    async def check_rate_limit(self) -> Optional[FlushResult]:
        """
        Run the quota reset check and flush the buffer if the window ended
        without a bulk flush.

        Returns:
            FlushResult if a flush ran, None otherwise
        """
        self.state.log_buffer_stats(len(self.buffer), self.buffer.capacity)
        check = self.state.check_reset(buffered=len(self.buffer))
        if check.reset and check.should_flush and len(self.buffer) > 0:
            return await self.flush_buffer()
        return None

    async def report(
        self,
        event: Event,
        categories: list[int],
        comment: str,
    ) -> ReportOutcome:
        """
        Report one IP.

        Args:
            event: Event carrying the IP and metadata
            categories: AbuseIPDB categories
            comment: Report comment

        Returns:
            ReportOutcome; never raises for submission failures
        """
        await self.check_rate_limit()
        ip = event.client_ip

        if self.state.is_buffering:
            status = self._enqueue(event, categories, comment)
            return ReportOutcome(status=status, ip=ip)

        try:
            submission = await self._client.submit(
                ip, categories, comment, format_timestamp(event.occurred_at)
            )
        except DailyQuotaExceededError:
            self.state.mark_limited()
            status = self._enqueue(event, categories, comment, rate_limited=True)
            return ReportOutcome(status=status, ip=ip)
        except ReportSubmissionError as e:
            self._log_error(f"Failed to report {ip}", e, {"ip": ip, "path": event.request_path})
            return ReportOutcome(status=OutcomeStatus.FAILED, ip=ip, error=e)

        self._log(LogLevel.INFO, f"Reported {ip}; URI: {event.request_path}", {"ip": ip})
        return ReportOutcome(status=OutcomeStatus.REPORTED, ip=ip, submission=submission)

    def _enqueue(
        self,
        event: Event,
        categories: list[int],
        comment: str,
        rate_limited: bool = False,
    ) -> OutcomeStatus:
        ip = event.client_ip
        entry = BufferEntry(
            categories=list(categories),
            timestamp=format_timestamp(event.occurred_at),
            comment=comment,
        )
        status = self.buffer.enqueue(ip, entry)

        if status is OutcomeStatus.READY_FOR_BULK_REPORT:
            self.persist_buffer()
            self._log(
                LogLevel.INFO,
                f"Queued {ip} for bulk report (collected {len(self.buffer)} IPs)",
                {"ip": ip, "rate_limited": rate_limited},
            )
            return OutcomeStatus.RL_BULK_REPORT if rate_limited else status
        if status is OutcomeStatus.BUFFER_IS_FULL:
            self._log(
                LogLevel.WARN,
                f"Bulk buffer is full ({self.buffer.capacity} IPs); dropping {ip}",
                {"ip": ip},
            )
        return status

    async def flush_buffer(self) -> FlushResult:
        """
        Submit every buffered entry, one at a time, in insertion order.

        Attempted entries are removed once all attempts are done and the
        result is persisted. A daily-quota rejection stops the flush, puts
        the state back into LIMITED_BUFFERING and leaves the rejected and
        not yet attempted entries buffered. A flush that runs to completion
        marks the bulk as sent, even when every entry was rejected.

        Returns:
            FlushResult with per-flush counters
        """
        result = FlushResult()
        entries = self.buffer.items()
        if not entries:
            return result

        self._log(LogLevel.INFO, f"Sending bulk report of {len(entries)} buffered IPs")
        attempted: list[str] = []

        for index, (ip, entry) in enumerate(entries):
            if index and self._flush_delay > 0:
                await asyncio.sleep(self._flush_delay)
            try:
                await self._client.submit(ip, entry.categories, entry.comment, entry.timestamp)
            except DailyQuotaExceededError:
                self.state.mark_limited()
                result.interrupted = True
                break
            except ReportSubmissionError as e:
                self._log_error(f"Bulk report of {ip} failed", e, {"ip": ip})
                result.failed += 1
            else:
                result.succeeded += 1
            attempted.append(ip)

        for ip in attempted:
            self.buffer.remove(ip)
        self.persist_buffer()

        result.attempted = len(attempted)
        result.remaining = len(self.buffer)
        if not result.interrupted:
            self.state.mark_bulk_sent()

        self._log(
            LogLevel.WARN if result.interrupted else LogLevel.INFO,
            f"Bulk report finished: {result.succeeded} sent, {result.failed} failed, "
            f"{result.remaining} still buffered",
            {"interrupted": result.interrupted},
        )
        return result

    def load_buffer(self) -> int:
        """
        Repopulate the buffer from the buffer store.

        A tampered or unreadable file is logged and the buffer starts empty.

        Returns:
            Number of entries loaded
        """
        store = self._context.buffer_store
        if store is None:
            return 0
        try:
            mapping = store.load()
        except TamperingError as e:
            self._log_error("Buffer file failed integrity check; starting empty", e)
            mapping = {}
        except PersistenceError as e:
            self._log_error("Failed to load buffer file; starting empty", e)
            mapping = {}
        self.buffer.replace(mapping)
        return len(self.buffer)

    async def startup(self) -> Optional[FlushResult]:
        """
        Load the persisted buffer and flush it unless reports are being buffered.

        Returns:
            FlushResult if a flush ran, None otherwise
        """
        loaded = self.load_buffer()
        if loaded == 0 or self.state.is_buffering:
            return None
        self._log(LogLevel.INFO, f"Found {loaded} IPs in buffer after restart. Sending bulk report...")
        return await self.flush_buffer()

    def persist_buffer(self) -> bool:
        """
        Save the buffer through the buffer store.

        Returns:
            True if saved (or no store is configured), False on failure
        """
        store = self._context.buffer_store
        if store is None:
            return True
        try:
            store.save(self.buffer.to_mapping())
        except PersistenceError as e:
            self._log_error("Failed to persist bulk buffer", e)
            return False
        return True

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error=error, additional_data=data)
