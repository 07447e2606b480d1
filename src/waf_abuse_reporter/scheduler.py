"""
Scheduler module for the WAF abuse reporter.

This module provides cron-compatible scheduling for the reporting cycle and
the secondary API forwarding job. Jobs are awaited one at a time, so a job
never overlaps with itself or with another job.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Mapping, NamedTuple, Optional

from .audit_logger import AuditLogger
from .enums import LogLevel
from .exceptions import ConfigurationError


MONTH_ALIASES = {
    name: number
    for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1,
    )
}

WEEKDAY_ALIASES = {
    name: number
    for number, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))
}

# "*", "N" or "N-M", each optionally followed by "/STEP"
_PART_RE = re.compile(r"^(?:(?P<any>\*)|(?P<start>\d+)(?:-(?P<end>\d+))?)(?:/(?P<step>\d+))?$")
_WORD_RE = re.compile(r"[a-z]+")


class CronParseError(ConfigurationError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, message: str, expression: str) -> None:
        self.expression = expression
        super().__init__(
            code="invalid_cron",
            message=f"{message}: '{expression}'",
            details={"expression": expression},
        )


class FieldSpec(NamedTuple):
    """Name, bounds and accepted names of one cron field."""

    name: str
    low: int
    high: int
    aliases: Mapping[str, int] = {}


@dataclass(frozen=True)
class CronField:
    """The set of values one cron field accepts."""

    values: frozenset[int]
    low: int
    high: int

    @property
    def is_wildcard(self) -> bool:
        return len(self.values) == self.high - self.low + 1

    def matches(self, value: int) -> bool:
        return value in self.values


@dataclass(frozen=True)
class CronSchedule:
    """A parsed five-field schedule evaluated at minute precision."""

    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField  # 0 = Sunday, as in standard cron
    expression: str

    def matches(self, dt: datetime) -> bool:
        return (
            self.minute.matches(dt.minute)
            and self.hour.matches(dt.hour)
            and self.month.matches(dt.month)
            and self.matches_day(dt)
        )

    def matches_day(self, dt: datetime) -> bool:
        """
        Apply cron's day rule.

        When both day fields are restricted a day matching either of them
        qualifies; otherwise only the restricted one is consulted.
        """
        weekday = (dt.weekday() + 1) % 7
        dom_ok = self.day_of_month.matches(dt.day)
        dow_ok = self.day_of_week.matches(weekday)
        if self.day_of_month.is_wildcard:
            return dow_ok
        if self.day_of_week.is_wildcard:
            return dom_ok
        return dom_ok or dow_ok

    def next_run(self, after: datetime, horizon_days: int = 366) -> Optional[datetime]:
        """
        First matching minute strictly after ``after``.

        Returns:
            The next run time, or None if nothing matches within the horizon
        """
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(days=horizon_days)
        while candidate < limit:
            if not self.month.matches(candidate.month):
                year = candidate.year + (candidate.month == 12)
                month = candidate.month % 12 + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
            elif not self.matches_day(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
            elif not self.hour.matches(candidate.hour):
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
            elif not self.minute.matches(candidate.minute):
                candidate += timedelta(minutes=1)
            else:
                return candidate
        return None


class CronParser:
    """
    Parser for standard cron expressions.

    Five fields (minute, hour, day of month, month, day of week) accept
    ``*``, numbers, ``N-M`` ranges, ``,`` lists and ``/STEP`` suffixes.
    Months and weekdays also accept three-letter names, and both 0 and 7
    mean Sunday. A leading sixth seconds field is validated and dropped.
    """

    SECONDS = FieldSpec("second", 0, 59)
    FIELDS = (
        FieldSpec("minute", 0, 59),
        FieldSpec("hour", 0, 23),
        FieldSpec("day_of_month", 1, 31),
        FieldSpec("month", 1, 12, MONTH_ALIASES),
        FieldSpec("day_of_week", 0, 7, WEEKDAY_ALIASES),
    )

    def parse(self, expression: str) -> CronSchedule:
        """
        Parse a cron expression.

        Raises:
            CronParseError: If the expression is invalid
        """
        text = expression.strip()
        tokens = text.split()
        if len(tokens) == 6:
            self._field(tokens.pop(0), self.SECONDS, text)
        if len(tokens) != 5:
            raise CronParseError(f"Expected 5 or 6 fields, got {len(tokens)}", text)

        minute, hour, day_of_month, month, day_of_week = (
            self._field(token, spec, text) for token, spec in zip(tokens, self.FIELDS)
        )
        sunday_folded = CronField(frozenset(v % 7 for v in day_of_week.values), 0, 6)
        return CronSchedule(minute, hour, day_of_month, month, sunday_folded, text)

    def _field(self, token: str, spec: FieldSpec, expression: str) -> CronField:
        try:
            values = self._expand(token, spec)
        except ValueError as e:
            raise CronParseError(f"Invalid {spec.name} field ({e})", expression) from e
        return CronField(frozenset(values), spec.low, spec.high)

    @staticmethod
    def _expand(token: str, spec: FieldSpec) -> set[int]:
        def resolve(match: re.Match) -> str:
            word = match.group(0)
            if word not in spec.aliases:
                raise ValueError(f"unknown name {word!r}")
            return str(spec.aliases[word])

        token = _WORD_RE.sub(resolve, token.lower())
        values: set[int] = set()
        for part in token.split(","):
            match = _PART_RE.match(part)
            if match is None:
                raise ValueError(f"cannot parse {part!r}")

            step = int(match["step"]) if match["step"] else 1
            if step < 1:
                raise ValueError("step must be at least 1")

            if match["any"]:
                start, end = spec.low, spec.high
            else:
                start = int(match["start"])
                if match["end"]:
                    end = int(match["end"])
                else:
                    # "5/15" counts from 5 up to the top of the range
                    end = spec.high if match["step"] else start

            if not spec.low <= start <= end <= spec.high:
                raise ValueError(f"{part!r} is reversed or outside {spec.low}-{spec.high}")
            values.update(range(start, end + 1, step))
        return values


@dataclass
class ScheduledTask:
    """A named job and its schedule."""

    name: str
    schedule: CronSchedule
    callback: Callable[[], Awaitable[object]]
    last_run: Optional[datetime] = None
    failures: int = 0


class Scheduler:
    """
    Runs async jobs on cron schedules.

    The clock runs in local time, like cron. Each job fires at most once
    per matching minute; a failing job is logged and the loop continues.
    """

    COMPONENT = "scheduler"

    def __init__(
        self,
        logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            logger: Optional audit logger
            clock: Returns the current local time (injectable for tests)
        """
        self._parser = CronParser()
        self._jobs: dict[str, ScheduledTask] = {}
        self._stopped = asyncio.Event()
        self._running = False
        self._logger = logger
        self._clock = clock or datetime.now

    @property
    def tasks(self) -> list[ScheduledTask]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._running

    def schedule(
        self,
        name: str,
        cron_expression: str,
        callback: Callable[[], Awaitable[object]],
    ) -> CronSchedule:
        """
        Register ``callback`` to run whenever ``cron_expression`` matches.

        Raises:
            CronParseError: If the cron expression is invalid
            ValueError: If a job with the same name is already registered
        """
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already scheduled")
        parsed = self._parser.parse(cron_expression)
        self._jobs[name] = ScheduledTask(name=name, schedule=parsed, callback=callback)
        self._log(LogLevel.DEBUG, f"Scheduled '{name}'", {"cron": parsed.expression})
        return parsed

    def next_run(self, name: str) -> Optional[datetime]:
        job = self._jobs.get(name)
        return job.schedule.next_run(self._clock()) if job else None

    async def run_pending(self, now: Optional[datetime] = None) -> list[str]:
        """
        Run every job due in the current minute.

        Returns:
            Names of the jobs that ran, in registration order
        """
        minute = (now or self._clock()).replace(second=0, microsecond=0)
        due = [
            job for job in self._jobs.values()
            if job.schedule.matches(minute) and (job.last_run is None or job.last_run < minute)
        ]
        for job in due:
            job.last_run = minute
            try:
                await job.callback()
            except Exception as e:  # a failing job must not stop the loop
                job.failures += 1
                if self._logger:
                    self._logger.log_error(
                        self.COMPONENT,
                        f"Scheduled job '{job.name}' failed",
                        error=e,
                        additional_data={"failures": job.failures},
                    )
        return [job.name for job in due]

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run due jobs, then sleep until the next minute, until stopped.

        Args:
            stop_event: Setting this event ends the loop
        """
        stop_event = stop_event or self._stopped
        self._running = True
        try:
            while not stop_event.is_set() and not self._stopped.is_set():
                await self.run_pending()
                now = self._clock()
                wake = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=max(0.0, (wake - now).total_seconds()),
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
            self._log(LogLevel.INFO, "Scheduler stopped")

    def stop(self) -> None:
        """Ask a running loop to exit after its current sleep."""
        self._stopped.set()

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
