"""
Property-based tests for forwarding reports to the secondary collector.

Uses Hypothesis to verify record selection (unique by IP, live reports only,
never the operator's own address) and httpx.MockTransport to check the
upload and the forwarded flag.
"""

import asyncio
import io
import json
import string
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from waf_abuse_reporter.audit_logger import AuditLogger
from waf_abuse_reporter.config import ForwarderConfig
from waf_abuse_reporter.enums import OutcomeStatus
from waf_abuse_reporter.exceptions import ForwardingError
from waf_abuse_reporter.forwarder import ReportForwarder, build_payload, select_pending
from waf_abuse_reporter.history_store import ReportHistoryStore
from waf_abuse_reporter.models import ReportRecord


BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
OWN_IP = "198.51.100.1"
COLLECTOR_URL = "https://collector.test/api/reports"


@st.composite
def record_strategy(draw) -> ReportRecord:
    """Generate history records over a small pool of IPs so duplicates occur."""
    return ReportRecord(
        timestamp=BASE_TIME + timedelta(seconds=draw(st.integers(min_value=0, max_value=86_400))),
        ray_id=draw(st.text(alphabet=string.hexdigits.lower(), min_size=8, max_size=8)),
        ip=draw(st.sampled_from(["203.0.113.1", "203.0.113.2", "2001:db8::7", OWN_IP])),
        path=draw(st.sampled_from(["/.env", "/wp-login.php", "/xmlrpc.php"])),
        status=draw(st.sampled_from(list(OutcomeStatus))),
        forwarded=draw(st.booleans()),
    )


def make_record(ray_id: str, ip: str, status: OutcomeStatus = OutcomeStatus.REPORTED) -> ReportRecord:
    return ReportRecord(
        timestamp=BASE_TIME,
        ray_id=ray_id,
        ip=ip,
        country="DE",
        host="example.com",
        path="/.env",
        user_agent="curl/8.0",
        action="BLOCK",
        status=status,
    )


def make_forwarder(tmp_path: Path, handler, records=(), **kwargs) -> tuple[ReportForwarder, ReportHistoryStore]:
    history = ReportHistoryStore(tmp_path / "reported_ips.csv")
    for record in records:
        history.append_record(record)
    config = ForwarderConfig(enabled=True, url=COLLECTOR_URL, secret_token="collector-token")
    forwarder = ReportForwarder(
        config,
        history,
        own_ips=lambda: [OWN_IP],
        logger=AuditLogger(output_stream=io.StringIO()),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    return forwarder, history


def refuse(request: httpx.Request) -> httpx.Response:
    raise AssertionError("network access attempted")


class TestSelectionProperty:
    """Only first, unforwarded, live reports of foreign IPs are selected."""

    @given(records=st.lists(record_strategy(), max_size=30))
    @settings(max_examples=100)
    def test_selection(self, records: list[ReportRecord]) -> None:
        pending = select_pending(records, [OWN_IP])

        ips = [r.ip for r in pending]
        assert len(ips) == len(set(ips))
        assert OWN_IP not in ips
        assert all(r.status is OutcomeStatus.REPORTED and not r.forwarded for r in pending)

        for record in pending:
            candidates = [
                r for r in records
                if r.ip == record.ip and r.status is OutcomeStatus.REPORTED and not r.forwarded
            ]
            assert candidates[0] is record

    def test_payload_fields(self) -> None:
        payload = build_payload([make_record("r1", "203.0.113.1")])

        assert payload == [
            {
                "rayId": "r1",
                "ip": "203.0.113.1",
                "endpoint": "/.env",
                "userAgent": "curl/8.0",
                "action": "BLOCK",
                "country": "DE",
                "timestamp": "2024-05-01T12:00:00.000Z",
            }
        ]


class TestForwarding:
    """Uploads mark records forwarded; failures raise ForwardingError."""

    def test_success_marks_forwarded(self, tmp_path) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["content_type"] = request.headers.get("Content-Type", "")
            seen["body"] = request.content
            return httpx.Response(200, json={"success": True})

        records = [
            make_record("r1", "203.0.113.1"),
            make_record("r2", "203.0.113.1"),
            make_record("r3", OWN_IP),
            make_record("r4", "203.0.113.9", OutcomeStatus.RL_BULK_REPORT),
        ]
        forwarder, history = make_forwarder(tmp_path, handler, records)

        sent = asyncio.run(forwarder.forward())

        assert sent == 1
        assert seen["auth"] == "Bearer collector-token"
        assert seen["content_type"].startswith("multipart/form-data")
        assert b'"rayId": "r1"' in seen["body"]
        flags = {r.ray_id: r.forwarded for r in history.read_all()}
        assert flags == {"r1": True, "r2": False, "r3": False, "r4": False}

        # Already forwarded records are not sent again
        assert asyncio.run(forwarder.forward()) == 1
        flags = {r.ray_id: r.forwarded for r in history.read_all()}
        assert flags["r2"] is True

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, json={"success": False, "message": "quota"}),
            httpx.Response(500, json={"success": True}),
            httpx.Response(200, text="ok"),
        ],
    )
    def test_rejected_upload(self, tmp_path, response: httpx.Response) -> None:
        forwarder, history = make_forwarder(tmp_path, lambda request: response, [make_record("r1", "203.0.113.1")])

        with pytest.raises(ForwardingError) as exc_info:
            asyncio.run(forwarder.forward())

        assert exc_info.value.code == "rejected"
        assert not history.read_all()[0].forwarded

    def test_network_error(self, tmp_path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        forwarder, _ = make_forwarder(tmp_path, handler, [make_record("r1", "203.0.113.1")])
        with pytest.raises(ForwardingError) as exc_info:
            asyncio.run(forwarder.forward())
        assert exc_info.value.code == "network_error"

    def test_nothing_pending(self, tmp_path) -> None:
        forwarder, _ = make_forwarder(tmp_path, refuse, [make_record("r1", OWN_IP)])
        assert asyncio.run(forwarder.forward()) == 0

    def test_disabled(self, tmp_path) -> None:
        history = ReportHistoryStore(tmp_path / "reported_ips.csv")
        history.append_record(make_record("r1", "203.0.113.1"))
        forwarder = ReportForwarder(
            ForwarderConfig(enabled=True, url=COLLECTOR_URL, secret_token=None),
            history,
            transport=httpx.MockTransport(refuse),
        )

        assert not forwarder.enabled
        assert asyncio.run(forwarder.forward()) == 0

    def test_simulation_sends_nothing(self, tmp_path) -> None:
        forwarder, history = make_forwarder(
            tmp_path, refuse, [make_record("r1", "203.0.113.1")], simulation_mode=True
        )

        assert asyncio.run(forwarder.forward()) == 0
        assert not history.read_all()[0].forwarded

    def test_payload_is_json_file(self, tmp_path) -> None:
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            body = request.content
            start = body.index(b"[")
            end = body.rindex(b"]") + 1
            captured["reports"] = json.loads(body[start:end])
            return httpx.Response(200, json={"success": True})

        forwarder, _ = make_forwarder(
            tmp_path, handler, [make_record("r1", "203.0.113.1"), make_record("r2", "2001:db8::7")]
        )
        asyncio.run(forwarder.forward())

        assert [r["ip"] for r in captured["reports"]] == ["203.0.113.1", "2001:db8::7"]
