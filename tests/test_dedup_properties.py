"""
Property-based tests for the deduplication and cooldown gate.

Uses Hypothesis to verify that own addresses are rejected without any
network access, that the checks run in a fixed order and that the cooldown
honours the most recent handled record.
"""

import socket
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from hypothesis import given, settings
from hypothesis import strategies as st

from waf_abuse_reporter.dedup import DedupGate
from waf_abuse_reporter.enums import OutcomeStatus, SkipReason
from waf_abuse_reporter.history_store import HistoryIndex
from waf_abuse_reporter.models import Event, ReportRecord


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

ip_strategy = st.ip_addresses().map(str)
path_strategy = st.text(alphabet="abcdefghijklmnopqrstuvwxyz/._-?=", min_size=1, max_size=60).map(
    lambda p: "/" + p
)


def make_gate(records=(), own_ips=(), endpoints=(), max_url_length=920, cooldown_hours=6):
    return DedupGate(
        HistoryIndex(records),
        own_ips=own_ips,
        whitelisted_endpoints=endpoints,
        max_url_length=max_url_length,
        cooldown=timedelta(hours=cooldown_hours),
        clock=lambda: NOW,
    )


def make_event(ip: str, path: str = "/wp-login.php", ray_id: str = "ray-1") -> Event:
    return Event(client_ip=ip, ray_id=ray_id, occurred_at=NOW, request_path=path)


def _no_network(*args, **kwargs):
    raise AssertionError("network access attempted")


class TestSelfTrafficProperty:
    """Events from the operator's own addresses are rejected without a network call."""

    @given(ip=ip_strategy, others=st.lists(ip_strategy, max_size=5), path=path_strategy)
    @settings(max_examples=100)
    def test_own_ip_rejected_without_network(self, ip: str, others: list[str], path: str) -> None:
        gate = make_gate(own_ips=[ip, *others])

        with patch.object(socket, "socket", _no_network), patch.object(
            socket, "getaddrinfo", _no_network
        ), patch.object(socket, "create_connection", _no_network):
            reason = gate.evaluate(make_event(ip, path), set())

        assert reason is SkipReason.SELF_TRAFFIC

    @given(ip=ip_strategy)
    @settings(max_examples=50)
    def test_self_traffic_checked_before_history(self, ip: str) -> None:
        record = ReportRecord(timestamp=NOW, ray_id="ray-1", ip=ip)
        gate = make_gate(records=[record], own_ips=[ip])

        assert gate.evaluate(make_event(ip), {ip}) is SkipReason.SELF_TRAFFIC


class TestPathChecksProperty:
    """Whitelisted endpoints and over-long URLs are rejected."""

    @given(ip=ip_strategy, endpoint=st.sampled_from(["/robots.txt", "/favicon.ico", "/ads.txt"]))
    @settings(max_examples=50)
    def test_exact_endpoint_rejected(self, ip: str, endpoint: str) -> None:
        gate = make_gate(endpoints=["/robots.txt", "/favicon.ico", "/ads.txt"])
        assert gate.evaluate(make_event(ip, endpoint), set()) is SkipReason.WHITELISTED_ENDPOINT

    @given(ip=ip_strategy, limit=st.integers(min_value=1, max_value=200), extra=st.integers(min_value=1, max_value=50))
    @settings(max_examples=100)
    def test_url_length_limit(self, ip: str, limit: int, extra: int) -> None:
        gate = make_gate(max_url_length=limit)

        at_limit = make_event(ip, "/" + "a" * (limit - 1))
        too_long = make_event(ip, "/" + "a" * (limit - 1 + extra))

        assert gate.evaluate(at_limit, set()) is None
        assert gate.evaluate(too_long, set()) is SkipReason.URL_TOO_LONG


class TestCycleDedupProperty:
    """An IP handled earlier in the cycle is skipped."""

    @given(ip=ip_strategy)
    @settings(max_examples=50)
    def test_seen_ip_skipped(self, ip: str) -> None:
        gate = make_gate()
        assert gate.evaluate(make_event(ip), set()) is None
        assert gate.evaluate(make_event(ip), {ip}) is SkipReason.SEEN_THIS_CYCLE


class TestCooldownProperty:
    """Only the latest handled record decides whether the cooldown applies."""

    @given(
        ip=ip_strategy,
        old_hours=st.integers(min_value=7, max_value=72),
        recent_minutes=st.integers(min_value=0, max_value=359),
    )
    @settings(max_examples=100)
    def test_latest_record_wins(self, ip: str, old_hours: int, recent_minutes: int) -> None:
        old = ReportRecord(timestamp=NOW - timedelta(hours=old_hours), ray_id="old", ip=ip)
        recent = ReportRecord(timestamp=NOW - timedelta(minutes=recent_minutes), ray_id="new", ip=ip)

        gate = make_gate(records=[recent, old])
        reason = gate.evaluate(make_event(ip, ray_id="other"), set())

        assert reason is SkipReason.RECENTLY_REPORTED

    @given(ip=ip_strategy, hours=st.integers(min_value=6, max_value=72))
    @settings(max_examples=100)
    def test_expired_cooldown_allows_report(self, ip: str, hours: int) -> None:
        record = ReportRecord(timestamp=NOW - timedelta(hours=hours), ray_id="old", ip=ip)
        gate = make_gate(records=[record])

        assert gate.evaluate(make_event(ip, ray_id="other"), set()) is None

    @given(ip=ip_strategy)
    @settings(max_examples=50)
    def test_failed_record_does_not_block(self, ip: str) -> None:
        record = ReportRecord(
            timestamp=NOW - timedelta(minutes=5), ray_id="r", ip=ip, status=OutcomeStatus.FAILED
        )
        gate = make_gate(records=[record])

        assert gate.evaluate(make_event(ip, ray_id="other"), set()) is None

    def test_index_updates_are_visible(self) -> None:
        gate = make_gate()
        event = make_event("198.51.100.20")
        assert gate.evaluate(event, set()) is None

        gate.index.add(ReportRecord.for_event(event, OutcomeStatus.RL_BULK_REPORT, timestamp=NOW))
        assert gate.evaluate(event, set()) is SkipReason.RECENTLY_REPORTED
