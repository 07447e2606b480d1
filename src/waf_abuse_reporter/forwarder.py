"""
Forwarding of reported IPs to a secondary aggregation API.

Collects history records that were reported live, have not been forwarded
yet and are not the operator's own traffic, keeps the first record per IP,
uploads them as a JSON file and flips their "forwarded" flag on success.
"""

import json
from typing import Callable, Iterable, Optional

import httpx

from .audit_logger import AuditLogger
from .config import ForwarderConfig
from .enums import LogLevel, OutcomeStatus
from .exceptions import ForwardingError
from .history_store import ReportHistoryStore
from .models import ReportRecord, format_timestamp


def select_pending(records: Iterable[ReportRecord], own_ips: Iterable[str] = ()) -> list[ReportRecord]:
    """Unique-by-IP REPORTED records that were not forwarded yet."""
    own = set(own_ips)
    seen: set[str] = set()
    pending = []
    for record in records:
        if record.status is not OutcomeStatus.REPORTED or record.forwarded:
            continue
        if record.ip in own or record.ip in seen:
            continue
        seen.add(record.ip)
        pending.append(record)
    return pending


def build_payload(records: Iterable[ReportRecord]) -> list[dict]:
    return [
        {
            "rayId": record.ray_id,
            "ip": record.ip,
            "endpoint": record.path,
            "userAgent": record.user_agent,
            "action": record.action,
            "country": record.country,
            "timestamp": format_timestamp(record.timestamp),
        }
        for record in records
    ]


class ReportForwarder:
    """Uploads pending reports to the secondary collector."""

    COMPONENT = "forwarder"

    def __init__(
        self,
        config: ForwarderConfig,
        history: ReportHistoryStore,
        own_ips: Callable[[], Iterable[str]] = lambda: (),
        logger: Optional[AuditLogger] = None,
        simulation_mode: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the forwarder.

        Args:
            config: Forwarder configuration
            history: Report history store to read and update
            own_ips: Returns the operator's current addresses
            logger: Optional audit logger
            simulation_mode: If True, uploads are skipped and nothing is flagged
            transport: Optional httpx transport (used by tests)
        """
        self._config = config
        self._history = history
        self._own_ips = own_ips
        self._logger = logger
        self._simulation_mode = simulation_mode
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._config.enabled and self._config.url and self._config.secret_token)

    async def forward(self) -> int:
        """
        Run one forwarding pass.

        Returns:
            Number of records forwarded

        Raises:
            ForwardingError: If the upload fails or the collector rejects it
        """
        if not self.enabled:
            self._log(LogLevel.DEBUG, "Secondary API forwarding is disabled")
            return 0

        pending = select_pending(self._history.read_all(), self._own_ips())
        if not pending:
            self._log(LogLevel.INFO, "Secondary API: no data to report")
            return 0

        if self._simulation_mode:
            self._log(LogLevel.INFO, f"Simulation mode: would forward {len(pending)} reports")
            return 0

        body = json.dumps(build_payload(pending), indent=2).encode("utf-8")
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self._config.url,
                    files={"file": ("reports.json", body, "application/json")},
                    headers={"Authorization": f"Bearer {self._config.secret_token}"},
                )
        except httpx.HTTPError as e:
            raise ForwardingError(
                code="network_error",
                message=f"Secondary API request failed: {e}",
                details={"url": self._config.url},
            ) from e

        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}

        if not response.is_success or not result.get("success", False):
            raise ForwardingError(
                code="rejected",
                message=f"Secondary API (status {response.status_code}): "
                f"{result.get('message') or 'Something went wrong'}",
                details={"url": self._config.url, "status_code": response.status_code},
            )

        self._history.mark_forwarded(record.ray_id for record in pending)
        self._log(
            LogLevel.INFO,
            f"Secondary API (status {response.status_code}): successfully sent {len(pending)} reports",
        )
        return len(pending)

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
