"""
Property-based tests for the daily quota state machine.

Uses Hypothesis to verify that the limited state holds until the reset time,
that reset checks are idempotent and that the next reset always lands on the
following UTC day.
"""

import io
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from waf_abuse_reporter.audit_logger import AuditLogger
from waf_abuse_reporter.enums import LogLevel, RateLimitPhase
from waf_abuse_reporter.rate_limiter import (
    RESET_MARGIN,
    DailyQuotaState,
    next_rate_limit_reset,
)


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


# Strategy for aware UTC datetimes in a realistic range
utc_datetimes = st.datetimes(
    min_value=datetime(2020, 1, 1),
    max_value=datetime(2035, 12, 31),
    timezones=st.just(timezone.utc),
)


class TestNextResetProperty:
    """The next reset is always UTC midnight of the following day plus the margin."""

    @given(now=utc_datetimes)
    @settings(max_examples=100)
    def test_next_reset_is_next_utc_day(self, now: datetime) -> None:
        reset_at = next_rate_limit_reset(now)

        assert reset_at > now
        assert reset_at.tzinfo is not None
        assert reset_at.date() == (now + timedelta(days=1)).date()
        assert reset_at.hour == 0
        assert reset_at.minute == RESET_MARGIN.seconds // 60
        assert reset_at - now <= timedelta(days=1) + RESET_MARGIN

    @given(
        now=st.datetimes(
            min_value=datetime(2020, 1, 1),
            max_value=datetime(2035, 12, 31),
            timezones=st.sampled_from([
                timezone(timedelta(hours=-8)),
                timezone(timedelta(hours=5, minutes=30)),
                timezone(timedelta(hours=14)),
            ]),
        )
    )
    @settings(max_examples=100)
    def test_next_reset_uses_utc_date_for_any_offset(self, now: datetime) -> None:
        now_utc = now.astimezone(timezone.utc)
        assert next_rate_limit_reset(now) == next_rate_limit_reset(now_utc)


class TestLimitedUntilResetProperty:
    """
    Once a daily-quota rejection is observed, the state stays limited and
    buffering for every check before ``reset_at``.
    """

    @given(
        start=utc_datetimes,
        offsets=st.lists(st.floats(min_value=0.0, max_value=0.999), min_size=1, max_size=10),
    )
    @settings(max_examples=100)
    def test_limited_until_reset(self, start: datetime, offsets: list[float]) -> None:
        clock = FakeClock(start)
        state = DailyQuotaState(clock=clock)

        assert state.mark_limited() is True
        window = state.reset_at - start

        for fraction in sorted(offsets):
            clock.now = start + window * fraction
            check = state.check_reset(buffered=3)
            assert check.reset is False
            assert check.should_flush is False
            assert state.is_limited
            assert state.is_buffering

        clock.now = state.reset_at
        check = state.check_reset(buffered=3)
        assert check.reset is True
        assert check.should_flush is True
        assert not state.is_limited
        assert not state.is_buffering
        assert state.phase is RateLimitPhase.NORMAL

    @given(start=utc_datetimes, calls=st.integers(min_value=2, max_value=10))
    @settings(max_examples=100)
    def test_reset_check_before_reset_is_idempotent(self, start: datetime, calls: int) -> None:
        clock = FakeClock(start)
        state = DailyQuotaState(clock=clock)
        state.mark_limited()
        before = state.to_dict()

        clock.advance(timedelta(minutes=1))
        for _ in range(calls):
            assert state.check_reset().reset is False

        assert state.to_dict() == before

    @given(start=utc_datetimes)
    @settings(max_examples=100)
    def test_reset_happens_exactly_once(self, start: datetime) -> None:
        clock = FakeClock(start)
        state = DailyQuotaState(clock=clock)
        state.mark_limited()

        clock.now = state.reset_at + timedelta(seconds=1)
        first = state.check_reset()
        second = state.check_reset()

        assert first.reset is True
        assert second.reset is False
        assert second.should_flush is False

    @given(start=utc_datetimes, later=st.integers(min_value=1, max_value=600))
    @settings(max_examples=100)
    def test_mark_limited_is_idempotent(self, start: datetime, later: int) -> None:
        clock = FakeClock(start)
        state = DailyQuotaState(clock=clock)
        state.mark_limited()
        reset_at = state.reset_at

        clock.advance(timedelta(minutes=later))
        assert state.mark_limited() is False
        assert state.reset_at == reset_at


class TestBulkSentProperty:
    """A bulk flush inside the limited window suppresses the flush at reset."""

    @given(start=utc_datetimes)
    @settings(max_examples=100)
    def test_bulk_sent_suppresses_flush_at_reset(self, start: datetime) -> None:
        clock = FakeClock(start)
        state = DailyQuotaState(clock=clock)
        state.mark_limited()
        state.mark_bulk_sent()

        assert state.phase is RateLimitPhase.LIMITED_BULK_SENT

        clock.now = state.reset_at
        check = state.check_reset()
        assert check.reset is True
        assert check.should_flush is False
        assert state.sent_bulk is False

    @given(start=utc_datetimes)
    @settings(max_examples=100)
    def test_new_limit_clears_bulk_sent(self, start: datetime) -> None:
        clock = FakeClock(start)
        state = DailyQuotaState(clock=clock)
        state.mark_bulk_sent()

        state.mark_limited()
        assert state.sent_bulk is False
        assert state.phase is RateLimitPhase.LIMITED_BUFFERING


class TestBufferingInvariant:
    """``is_buffering`` holds whenever ``is_limited`` holds."""

    @given(
        start=utc_datetimes,
        actions=st.lists(
            st.sampled_from(["limit", "force_on", "force_off", "bulk", "advance_day", "check"]),
            max_size=20,
        ),
    )
    @settings(max_examples=100)
    def test_buffering_whenever_limited(self, start: datetime, actions: list[str]) -> None:
        clock = FakeClock(start)
        state = DailyQuotaState(clock=clock)

        for action in actions:
            if action == "limit":
                state.mark_limited()
            elif action == "force_on":
                state.force_buffering(True)
            elif action == "force_off":
                state.force_buffering(False)
            elif action == "bulk":
                state.mark_bulk_sent()
            elif action == "advance_day":
                clock.advance(timedelta(days=1, minutes=2))
            else:
                state.check_reset()

            if state.is_limited:
                assert state.is_buffering

    def test_forced_buffering_without_limit(self) -> None:
        state = DailyQuotaState(clock=FakeClock(datetime(2024, 5, 1, tzinfo=timezone.utc)))
        state.force_buffering()

        assert state.is_buffering
        assert not state.is_limited
        assert state.phase is RateLimitPhase.NORMAL


class TestRateLimitLogging:
    """Waiting and buffer statistics messages are throttled."""

    def _messages(self, logger: AuditLogger, needle: str) -> list[str]:
        return [e.message for e in logger.entries if needle in e.message]

    def test_still_waiting_logged_once_per_interval(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())
        clock = FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
        state = DailyQuotaState(clock=clock, logger=logger)
        state.mark_limited()

        for minutes in (1, 5, 10, 12, 19):
            clock.now = datetime(2024, 5, 1, 12, minutes, tzinfo=timezone.utc)
            state.check_reset(buffered=2)

        assert len(self._messages(logger, "still active")) == 1

        clock.now = datetime(2024, 5, 1, 12, 20, tzinfo=timezone.utc)
        state.check_reset(buffered=2)
        assert len(self._messages(logger, "still active")) == 2

    def test_limit_logged_as_warning(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())
        state = DailyQuotaState(
            clock=FakeClock(datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)),
            logger=logger,
        )
        state.mark_limited()
        state.mark_limited()

        warnings = [e for e in logger.entries if e.level is LogLevel.WARN]
        assert len(warnings) == 1
        assert "2024-05-02T00:01:00+00:00" in warnings[0].message

    def test_buffer_stats_throttled(self) -> None:
        logger = AuditLogger(output_stream=io.StringIO())
        clock = FakeClock(datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc))
        state = DailyQuotaState(clock=clock, logger=logger)

        assert state.log_buffer_stats(0, 100) is False
        assert state.log_buffer_stats(3, 100) is True
        clock.advance(timedelta(minutes=4))
        assert state.log_buffer_stats(3, 100) is False
        clock.advance(timedelta(minutes=1))
        assert state.log_buffer_stats(3, 100) is True
