"""
AbuseIPDB report client.

Submits single abuse reports to the AbuseIPDB v2 report endpoint
(https://docs.abuseipdb.com/#report-endpoint) and classifies failures:

- HTTP 429 whose error detail names the daily limit -> DailyQuotaExceededError
- any other HTTP 429 (short-window throttling) -> RateLimitError
- every other failure -> ReportSubmissionError
"""

import time
from typing import Optional

import httpx

from . import __version__
from .config import AbuseIPDBConfig
from .enums import SubmissionErrorCode
from .exceptions import (
    DailyQuotaExceededError,
    RateLimitError,
    ReportSubmissionError,
)
from .models import SubmissionResult


USER_AGENT = f"Mozilla/5.0 (compatible; waf-abuse-reporter/{__version__})"

# AbuseIPDB rejects comments longer than this
MAX_COMMENT_LENGTH = 1024

DAILY_LIMIT_MARKER = "daily rate limit"


def is_daily_quota_response(status_code: int, body) -> bool:
    """
    Check whether a response signals exhaustion of the daily report quota.

    AbuseIPDB answers with ``{"errors": [{"detail": "Daily rate limit of
    1000 requests exceeded ...", "status": 429}]}``. Only the structured
    ``detail`` fields are inspected.
    """
    if status_code != 429 or not isinstance(body, dict):
        return False
    errors = body.get("errors")
    if not isinstance(errors, list):
        return False
    for error in errors:
        if isinstance(error, dict):
            detail = error.get("detail")
            if isinstance(detail, str) and DAILY_LIMIT_MARKER in detail.lower():
                return True
    return False


def _error_detail(body) -> Optional[str]:
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0].get("detail")
    return None


class AbuseIPDBClient:
    """
    Async AbuseIPDB client.

    In simulation mode every submission succeeds without network I/O.
    """

    def __init__(
        self,
        config: AbuseIPDBConfig,
        simulation_mode: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: AbuseIPDB configuration
            simulation_mode: If True, no real network requests are made
            transport: Optional httpx transport (used by tests)
        """
        self._config = config
        self._simulation_mode = simulation_mode
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._submissions = 0

    async def __aenter__(self) -> "AbuseIPDBClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def submissions(self) -> int:
        """Number of submissions attempted by this client."""
        return self._submissions

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_seconds),
                transport=self._transport,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "application/json",
                    "Key": self._config.api_key,
                },
            )
        return self._client

    async def submit(
        self,
        ip: str,
        categories: list[int],
        comment: str,
        timestamp: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Submit one abuse report.

        Args:
            ip: IP address to report
            categories: AbuseIPDB category ids
            comment: Description of the abuse (truncated to 1024 chars)
            timestamp: ISO-8601 time of the attack

        Returns:
            SubmissionResult for an accepted report

        Raises:
            DailyQuotaExceededError: Daily quota exhausted until the next UTC day
            RateLimitError: Short-window throttling
            ReportSubmissionError: Any other failure
        """
        self._submissions += 1
        start_time = time.perf_counter()

        if self._simulation_mode:
            return SubmissionResult(ip=ip, simulated=True)

        data = {
            "ip": ip,
            "categories": ",".join(str(int(c)) for c in categories),
            "comment": comment[:MAX_COMMENT_LENGTH],
        }
        if timestamp:
            data["timestamp"] = timestamp

        client = self._ensure_client()
        try:
            response = await client.post(self._config.report_url, data=data)
        except httpx.TimeoutException as e:
            raise ReportSubmissionError(
                code=SubmissionErrorCode.TIMEOUT.value,
                message=f"AbuseIPDB request timed out after {self._config.timeout_seconds}s",
                details={"ip": ip},
            ) from e
        except httpx.HTTPError as e:
            raise ReportSubmissionError(
                code=SubmissionErrorCode.NETWORK_ERROR.value,
                message=f"AbuseIPDB request failed: {e}",
                details={"ip": ip},
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        status = response.status_code
        if status == 200:
            report_data = body.get("data", {}) if isinstance(body, dict) else {}
            return SubmissionResult(
                ip=ip,
                abuse_confidence_score=report_data.get("abuseConfidenceScore"),
                response_time_ms=(time.perf_counter() - start_time) * 1000,
            )

        detail = _error_detail(body)
        details = {"ip": ip, "detail": detail}

        if is_daily_quota_response(status, body):
            raise DailyQuotaExceededError(
                code=SubmissionErrorCode.DAILY_QUOTA.value,
                message=detail or "Daily rate limit exceeded",
                details=details,
                status_code=status,
            )
        if status == 429:
            raise RateLimitError(
                code=SubmissionErrorCode.RATE_LIMITED.value,
                message=detail or "Rate limit exceeded",
                details=details,
                status_code=status,
            )
        if status in (401, 403):
            raise ReportSubmissionError(
                code=SubmissionErrorCode.UNAUTHORIZED.value,
                message=detail or "Invalid API key",
                details=details,
                status_code=status,
            )
        if status == 422:
            raise ReportSubmissionError(
                code=SubmissionErrorCode.UNPROCESSABLE.value,
                message=detail or "Validation error",
                details=details,
                status_code=status,
            )
        if status >= 500:
            raise ReportSubmissionError(
                code=SubmissionErrorCode.SERVER_ERROR.value,
                message=f"AbuseIPDB server error: {status}",
                details=details,
                status_code=status,
            )
        code = SubmissionErrorCode.PARSE_ERROR if body is None else SubmissionErrorCode.SERVER_ERROR
        raise ReportSubmissionError(
            code=code.value,
            message=detail or f"Unexpected HTTP status: {status}",
            details=details,
            status_code=status,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
