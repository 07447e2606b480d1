"""
Cycle Orchestrator for the WAF abuse reporter.

This module provides the orchestration layer that coordinates all components
to run one reporting cycle. It integrates:
- Own-address discovery (self-traffic guard)
- Cloudflare event fetching and whitelist filtering
- History-based deduplication and cooldown checks
- The report gate with its daily quota state machine and bulk buffer
- Outcome logging to the report history

One cycle: FETCH -> FILTER -> for each event: gate -> report -> log outcome
-> success cooldown -> SUMMARY. Events are processed strictly one at a
time and an error in one event never aborts the cycle.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from .abuseipdb_client import AbuseIPDBClient
from .audit_logger import AuditLogger
from .buffer_store import BufferStore
from .bulk_buffer import BulkBuffer
from .comments import categories_for, generate_comment
from .config import SystemConfig
from .dedup import DedupGate
from .enums import LogLevel, OutcomeStatus
from .event_source import CloudflareEventSource
from .exceptions import PersistenceError, SourceUnavailableError
from .forwarder import ReportForwarder
from .history_store import HistoryIndex, ReportHistoryStore
from .models import CycleStats, Event, FlushResult, ReportRecord, format_timestamp
from .rate_limiter import DailyQuotaState
from .reporter import ReportGate, ReportingContext, ReportSubmitter
from .server_ips import ServerAddressResolver
from .whitelist import WhitelistFilter


class CycleOrchestrator:
    """
    Runs reporting cycles.

    Owns the ReportingContext (quota state and bulk buffer) for the life of
    the process. Collaborators are built from the configuration unless they
    are passed in.
    """

    COMPONENT = "orchestrator"

    def __init__(
        self,
        config: SystemConfig,
        event_source: Optional[CloudflareEventSource] = None,
        client: Optional[ReportSubmitter] = None,
        history: Optional[ReportHistoryStore] = None,
        context: Optional[ReportingContext] = None,
        address_resolver: Optional[ServerAddressResolver] = None,
        logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the cycle orchestrator.

        Args:
            config: System configuration
            event_source: Optional event source (built from config if omitted)
            client: Optional report submitter (AbuseIPDBClient if omitted)
            history: Optional report history store
            context: Optional reporting context (state, buffer, buffer store)
            address_resolver: Optional own-address resolver
            logger: Optional audit logger for logging
            clock: Returns the current aware UTC time
            sleep: Coroutine used for the success cooldown delay
        """
        self._config = config
        self._logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

        self._event_source = event_source or CloudflareEventSource(
            config.cloudflare,
            logger=logger,
            simulation_mode=config.simulation_mode,
            clock=self._clock,
        )
        self._client = client or AbuseIPDBClient(
            config.abuseipdb,
            simulation_mode=config.simulation_mode,
        )
        self._history = history or ReportHistoryStore(
            config.persistence.history_file_path,
            max_bytes=config.persistence.max_history_bytes,
            logger=logger,
        )
        self._context = context or ReportingContext(
            state=DailyQuotaState(clock=self._clock, logger=logger),
            buffer=BulkBuffer(config.reporting.buffer_capacity),
            buffer_store=BufferStore(
                config.persistence.buffer_file_path,
                config.persistence.hmac_secret,
            ),
        )
        if config.reporting.force_buffering:
            self._context.state.force_buffering()
        self._resolver = address_resolver or ServerAddressResolver(
            configured=config.reporting.server_ips,
            public_ip_url=config.reporting.public_ip_url,
            logger=logger,
            simulation_mode=config.simulation_mode,
        )
        self._whitelist = WhitelistFilter(config.whitelist)
        self._gate = ReportGate(
            self._client,
            self._context,
            logger=logger,
            flush_delay_seconds=config.reporting.success_cooldown_seconds,
        )
        self._forwarder = ReportForwarder(
            config.forwarder,
            self._history,
            own_ips=lambda: self._resolver.addresses,
            logger=logger,
            simulation_mode=config.simulation_mode,
        )

        self._cycle_running = False
        self._cycle_id = 0

    async def __aenter__(self) -> "CycleOrchestrator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def config(self) -> SystemConfig:
        """Get the system configuration."""
        return self._config

    @property
    def gate(self) -> ReportGate:
        """Get the report gate instance."""
        return self._gate

    @property
    def context(self) -> ReportingContext:
        return self._context

    @property
    def history(self) -> ReportHistoryStore:
        return self._history

    @property
    def forwarder(self) -> ReportForwarder:
        return self._forwarder

    @property
    def cycle_running(self) -> bool:
        return self._cycle_running

    async def startup(self) -> Optional[FlushResult]:
        """
        Prepare persistence and flush a buffer left over from a previous run.

        Returns:
            FlushResult if the recovered buffer was flushed

        Raises:
            PersistenceError: If the history file cannot be created
        """
        self._history.ensure_file()
        return await self._gate.startup()

    async def run_cycle(self) -> Optional[CycleStats]:
        """
        Run one reporting cycle.

        Returns:
            CycleStats, or None if another cycle is still in flight
        """
        if self._cycle_running:
            self._log(
                LogLevel.WARN,
                "Previous reporting cycle is still running; skipping this trigger",
            )
            return None

        self._cycle_running = True
        try:
            return await self._run_cycle()
        finally:
            self._cycle_running = False

    async def _run_cycle(self) -> CycleStats:
        self._cycle_id += 1
        cycle_id = self._cycle_id
        stats = CycleStats(started_at=format_timestamp(self._clock()))
        self._log(LogLevel.INFO, f"Starting reporting cycle #{cycle_id}")

        own_ips = await self._resolver.refresh()

        try:
            records = self._history.read_all()
        except PersistenceError as e:
            self._log_error("Failed to read report history; continuing without it", e)
            records = []

        dedup = DedupGate(
            HistoryIndex(records),
            own_ips=own_ips,
            whitelisted_endpoints=self._whitelist.endpoints,
            max_url_length=self._config.reporting.max_url_length,
            cooldown=timedelta(hours=self._config.reporting.cooldown_hours),
            clock=self._clock,
        )
        seen_ips: set[str] = set()

        try:
            events = await self._event_source.fetch_events()
        except SourceUnavailableError as e:
            self._log_error("Event source unavailable; treating cycle as empty", e)
            events = []

        stats.fetched = len(events)
        candidates = self._whitelist.filter(events)
        if not candidates:
            self._log(LogLevel.INFO, "No events to process. Skipping this cycle.")
            stats.finished_at = format_timestamp(self._clock())
            return stats

        self._log(
            LogLevel.INFO,
            f"{len(candidates)} of {len(events)} events match the filter criteria",
        )

        for event in candidates:
            stats.processed += 1
            try:
                await self._process_event(event, dedup, seen_ips, stats)
            except Exception as e:  # fault isolation per event
                stats.errors += 1
                self._log_error(
                    f"Unexpected error while processing {event.client_ip}",
                    e,
                    {"ray_id": event.ray_id},
                )

        stats.finished_at = format_timestamp(self._clock())
        self._log(
            LogLevel.INFO,
            f"Summary: Processed: {stats.processed}; Reported: {stats.reported}; "
            f"Buffered: {stats.buffered}; Skipped: {stats.skipped}; Errors: {stats.errors}",
            {"cycle": cycle_id, **stats.to_dict()},
        )
        return stats

    async def _process_event(
        self,
        event: Event,
        dedup: DedupGate,
        seen_ips: set[str],
        stats: CycleStats,
    ) -> None:
        reason = dedup.evaluate(event, seen_ips)
        if reason is not None:
            stats.skipped += 1
            stats.skip_reasons[reason.value] = stats.skip_reasons.get(reason.value, 0) + 1
            self._log(
                LogLevel.DEBUG,
                f"Skipping {event.client_ip}: {reason.value}",
                {"ray_id": event.ray_id},
            )
            return

        categories = categories_for(event, self._config.abuseipdb.default_categories)
        outcome = await self._gate.report(event, categories, generate_comment(event))
        status = outcome.status

        record = ReportRecord.for_event(event, status, timestamp=self._clock())
        try:
            self._history.append_record(record)
        except PersistenceError as e:
            self._log_error("Failed to record report outcome", e, {"ip": event.client_ip})
        dedup.index.add(record)

        if status.is_handled:
            seen_ips.add(event.client_ip)

        if status is OutcomeStatus.REPORTED:
            stats.reported += 1
            if self._config.reporting.success_cooldown_seconds > 0:
                await self._sleep(self._config.reporting.success_cooldown_seconds)
        elif status in (OutcomeStatus.READY_FOR_BULK_REPORT, OutcomeStatus.RL_BULK_REPORT):
            stats.buffered += 1
        elif status is OutcomeStatus.ALREADY_IN_BUFFER:
            stats.skipped += 1
            key = status.value.lower()
            stats.skip_reasons[key] = stats.skip_reasons.get(key, 0) + 1
        elif status in (OutcomeStatus.BUFFER_IS_FULL, OutcomeStatus.FAILED):
            stats.errors += 1
        else:
            raise ValueError(f"Unhandled outcome status: {status}")

    async def flush(self) -> FlushResult:
        """Load the persisted buffer and flush it now, regardless of the quota."""
        self._gate.load_buffer()
        return await self._gate.flush_buffer()

    async def run_until_stopped(self, work: Awaitable[object], stop_event: asyncio.Event) -> bool:
        """
        Run ``work`` until it finishes or ``stop_event`` is set, then persist the buffer.

        A stop interrupts work that is still running (a cycle in the middle
        of its success cooldowns included). Waiting for the interruption and
        persisting the buffer share one ``shutdown_grace_seconds`` budget.

        Returns:
            True if the buffer was saved in time

        Raises:
            Exception: Whatever ``work`` raised if it failed on its own
        """
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(work)
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            deadline = loop.time() + self._config.shutdown_grace_seconds
            if not task.done():
                self._log(LogLevel.INFO, "Stop requested; interrupting running work")
                task.cancel()
                await asyncio.wait({task}, timeout=self._config.shutdown_grace_seconds)
            saved = await self.shutdown(timeout=max(0.0, deadline - loop.time()))

        if task.done() and not task.cancelled():
            task.result()
        return saved

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Persist the bulk buffer within the configured grace period.

        Args:
            timeout: Overrides ``shutdown_grace_seconds`` when given

        Returns:
            True if the buffer was saved in time
        """
        grace = self._config.shutdown_grace_seconds if timeout is None else timeout
        try:
            saved = await asyncio.wait_for(
                asyncio.to_thread(self._gate.persist_buffer),
                timeout=grace,
            )
        except asyncio.TimeoutError:
            self._log(
                LogLevel.ERROR,
                f"Buffer was not persisted within {grace}s shutdown grace period",
                {"buffered": len(self._context.buffer)},
            )
            return False
        if saved:
            self._log(
                LogLevel.INFO,
                f"Shutdown: persisted {len(self._context.buffer)} buffered IPs",
            )
        return saved

    def status(self) -> dict:
        """Snapshot of quota state, buffer and history for status output."""
        try:
            history_count = len(self._history.read_all())
        except PersistenceError as e:
            self._log_error("Failed to read report history", e)
            history_count = None
        return {
            "rate_limit": self._context.state.to_dict(),
            "buffer": {
                "size": len(self._context.buffer),
                "capacity": self._context.buffer.capacity,
            },
            "history_records": history_count,
            "cycle_running": self._cycle_running,
        }

    async def close(self) -> None:
        """Close network clients."""
        for component in (self._event_source, self._client):
            close = getattr(component, "close", None)
            if close is not None:
                await close()

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        """Log a message if logger is available."""
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception, data: Optional[dict] = None) -> None:
        """Log an error with context if logger is available."""
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error=error, additional_data=data)
