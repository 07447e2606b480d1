"""
Property-based tests for the AbuseIPDB client.

Uses httpx.MockTransport to verify the request format and the
classification of responses: daily quota exhaustion is recognised only from
a 429 whose structured error detail names the daily limit.
"""

import asyncio

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from waf_abuse_reporter.abuseipdb_client import (
    MAX_COMMENT_LENGTH,
    AbuseIPDBClient,
    is_daily_quota_response,
)
from waf_abuse_reporter.config import AbuseIPDBConfig
from waf_abuse_reporter.exceptions import (
    DailyQuotaExceededError,
    RateLimitError,
    ReportSubmissionError,
)


DAILY_LIMIT_BODY = {
    "errors": [
        {
            "detail": "Daily rate limit of 1000 requests exceeded for this endpoint. See headers for additional details.",
            "status": 429,
        }
    ]
}

THROTTLE_BODY = {"errors": [{"detail": "Too Many Attempts.", "status": 429}]}


def make_client(handler) -> AbuseIPDBClient:
    config = AbuseIPDBConfig(api_key="test-key", report_url="https://api.abuseipdb.test/api/v2/report")
    return AbuseIPDBClient(config, transport=httpx.MockTransport(handler))


def submit(client: AbuseIPDBClient, ip: str = "203.0.113.7", comment: str = "test"):
    async def run():
        async with client:
            return await client.submit(ip, [18, 21], comment, "2024-05-01T10:00:00.000Z")

    return asyncio.run(run())


class TestDailyQuotaDiscriminator:
    """Only a 429 carrying the daily-limit detail counts as quota exhaustion."""

    def test_daily_limit_body(self) -> None:
        assert is_daily_quota_response(429, DAILY_LIMIT_BODY)

    @given(status=st.integers(min_value=100, max_value=599).filter(lambda s: s != 429))
    @settings(max_examples=100)
    def test_other_status_never_daily(self, status: int) -> None:
        assert not is_daily_quota_response(status, DAILY_LIMIT_BODY)

    @given(detail=st.text(max_size=80).filter(lambda d: "daily rate limit" not in d.lower()))
    @settings(max_examples=100)
    def test_other_details_not_daily(self, detail: str) -> None:
        assert not is_daily_quota_response(429, {"errors": [{"detail": detail}]})

    @pytest.mark.parametrize("body", [None, "Daily rate limit", [], {"errors": "daily rate limit"}, {"message": "Daily rate limit"}])
    def test_unstructured_bodies_not_daily(self, body) -> None:
        assert not is_daily_quota_response(429, body)


class TestSubmission:
    """Requests carry the key header and form fields; responses are classified."""

    def test_successful_submission(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.headers.get("Key")
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"data": {"ipAddress": "203.0.113.7", "abuseConfidenceScore": 87}})

        client = make_client(handler)
        result = submit(client)

        assert result.ip == "203.0.113.7"
        assert result.abuse_confidence_score == 87
        assert result.simulated is False
        assert client.submissions == 1
        assert seen["key"] == "test-key"
        assert "categories=18%2C21" in seen["body"]
        assert "timestamp=2024-05-01T10%3A00%3A00.000Z" in seen["body"]

    @given(length=st.integers(min_value=MAX_COMMENT_LENGTH + 1, max_value=3000))
    @settings(max_examples=20, deadline=None)
    def test_comment_truncated(self, length: int) -> None:
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            form = dict(pair.split("=", 1) for pair in request.content.decode().split("&"))
            sent["comment"] = form["comment"]
            return httpx.Response(200, json={"data": {}})

        submit(make_client(handler), comment="x" * length)
        assert sent["comment"] == "x" * MAX_COMMENT_LENGTH

    def test_daily_quota_raises(self) -> None:
        client = make_client(lambda request: httpx.Response(429, json=DAILY_LIMIT_BODY))
        with pytest.raises(DailyQuotaExceededError) as exc_info:
            submit(client)
        assert exc_info.value.status_code == 429
        assert exc_info.value.code == "daily_quota"

    def test_short_window_429_raises_rate_limit_only(self) -> None:
        client = make_client(lambda request: httpx.Response(429, json=THROTTLE_BODY))
        with pytest.raises(RateLimitError) as exc_info:
            submit(client)
        assert not isinstance(exc_info.value, DailyQuotaExceededError)
        assert exc_info.value.code == "rate_limited"

    @pytest.mark.parametrize(
        "status, code",
        [(401, "unauthorized"), (403, "unauthorized"), (422, "unprocessable"), (500, "server_error"), (503, "server_error")],
    )
    def test_error_statuses(self, status: int, code: str) -> None:
        client = make_client(lambda request: httpx.Response(status, json={"errors": [{"detail": "nope"}]}))
        with pytest.raises(ReportSubmissionError) as exc_info:
            submit(client)
        assert exc_info.value.code == code
        assert exc_info.value.status_code == status
        assert not isinstance(exc_info.value, RateLimitError)

    def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ReportSubmissionError) as exc_info:
            submit(make_client(handler))
        assert exc_info.value.code == "network_error"

    def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ReportSubmissionError) as exc_info:
            submit(make_client(handler))
        assert exc_info.value.code == "timeout"


class TestSimulationMode:
    """Simulation mode never touches the transport."""

    @given(ip=st.ip_addresses().map(str))
    @settings(max_examples=50)
    def test_no_network_in_simulation(self, ip: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("network access attempted")

        config = AbuseIPDBConfig(api_key="")
        client = AbuseIPDBClient(config, simulation_mode=True, transport=httpx.MockTransport(handler))
        result = asyncio.run(client.submit(ip, [18], "comment"))

        assert result.simulated is True
        assert result.ip == ip
