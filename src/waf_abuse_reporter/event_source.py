"""
Cloudflare firewall event source.

Fetches a batch of firewall events through the Cloudflare GraphQL analytics
API and validates each record at the boundary. Records that fail validation
are dropped and logged; a failed or malformed response raises
SourceUnavailableError so the caller can treat the cycle as empty.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from . import __version__
from .audit_logger import AuditLogger
from .config import CloudflareConfig
from .enums import LogLevel
from .exceptions import EventValidationError, SourceUnavailableError
from .models import Event


USER_AGENT = f"Mozilla/5.0 (compatible; waf-abuse-reporter/{__version__})"

FIREWALL_EVENTS_QUERY = """
query ListFirewallEvents($zoneTag: string, $filter: FirewallEventsAdaptiveFilter_InputObject, $limit: uint64!) {
  viewer {
    zones(filter: { zoneTag: $zoneTag }) {
      firewallEventsAdaptive(filter: $filter, limit: $limit, orderBy: [datetime_DESC]) {
        action
        clientASNDescription
        clientAsn
        clientCountryName
        clientIP
        clientRequestHTTPHost
        clientRequestHTTPMethodName
        clientRequestHTTPProtocol
        clientRequestPath
        clientRequestQuery
        datetime
        rayName
        source
        userAgent
      }
    }
  }
}
"""

# Actions Cloudflare takes on requests it considers hostile
BLOCKING_ACTIONS = ["block", "challenge", "jschallenge", "managed_challenge"]


class CloudflareEventSource:
    """
    Async client for the Cloudflare firewall event log.

    In simulation mode no request is made and an empty batch is returned.
    """

    COMPONENT = "event_source"

    def __init__(
        self,
        config: CloudflareConfig,
        logger: Optional[AuditLogger] = None,
        simulation_mode: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        lookback: timedelta = timedelta(hours=24),
    ) -> None:
        """
        Initialize the event source.

        Args:
            config: Cloudflare API configuration
            logger: Optional audit logger
            simulation_mode: If True, no real network requests are made
            transport: Optional httpx transport (used by tests)
            clock: Returns the current UTC time
            lookback: How far back the event query reaches
        """
        self._config = config
        self._logger = logger
        self._simulation_mode = simulation_mode
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lookback = lookback
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "CloudflareEventSource":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_seconds),
                transport=self._transport,
                headers={
                    "User-Agent": USER_AGENT,
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self._config.api_token}",
                },
            )
        return self._client

    def build_payload(self, zone_id: str) -> dict:
        """Build the GraphQL request body for one fetch."""
        since = self._clock() - self._lookback
        return {
            "query": FIREWALL_EVENTS_QUERY,
            "variables": {
                "zoneTag": zone_id,
                "limit": self._config.fetch_limit,
                "filter": {
                    "datetime_geq": since.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "action_in": BLOCKING_ACTIONS,
                },
            },
        }

    async def fetch_events(self, zone_id: Optional[str] = None) -> list[Event]:
        """
        Fetch and validate one batch of firewall events.

        Args:
            zone_id: Zone to query; defaults to the configured zone

        Returns:
            Validated events, newest first

        Raises:
            SourceUnavailableError: On transport failure, non-2xx status or a
                response without an event list
        """
        if self._simulation_mode:
            self._log(LogLevel.DEBUG, "Simulation mode: skipping Cloudflare fetch")
            return []

        zone = zone_id or self._config.zone_id
        start_time = time.perf_counter()
        client = self._ensure_client()

        try:
            response = await client.post(
                self._config.graphql_url,
                json=self.build_payload(zone),
            )
        except httpx.TimeoutException as e:
            raise SourceUnavailableError(
                code="timeout",
                message=f"Cloudflare API timed out after {self._config.timeout_seconds}s",
                details={"zone_id": zone},
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnavailableError(
                code="network_error",
                message=f"Cloudflare API request failed: {e}",
                details={"zone_id": zone},
            ) from e

        if not response.is_success:
            raise SourceUnavailableError(
                code="http_error",
                message=f"Cloudflare API returned HTTP {response.status_code}",
                details={"zone_id": zone, "status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SourceUnavailableError(
                code="parse_error",
                message="Cloudflare API returned invalid JSON",
                details={"zone_id": zone},
            ) from e

        raw_events = self._extract_events(body)
        if raw_events is None:
            raise SourceUnavailableError(
                code="missing_events",
                message="Cloudflare response has no firewall event list",
                details={
                    "zone_id": zone,
                    "errors": body.get("errors") if isinstance(body, dict) else None,
                },
            )

        events: list[Event] = []
        for raw in raw_events:
            try:
                events.append(Event.from_api(raw))
            except EventValidationError as e:
                self._log(
                    LogLevel.WARN,
                    f"Dropping invalid event: {e.message}",
                    {"code": e.code, **e.details},
                )

        self._log(
            LogLevel.INFO,
            f"Fetched {len(raw_events)} Cloudflare events ({len(events)} valid)",
            {"zone_id": zone, "response_time_ms": round((time.perf_counter() - start_time) * 1000, 1)},
        )
        return events

    @staticmethod
    def _extract_events(body) -> Optional[list]:
        if not isinstance(body, dict):
            return None
        try:
            events = body["data"]["viewer"]["zones"][0]["firewallEventsAdaptive"]
        except (KeyError, IndexError, TypeError):
            return None
        return events if isinstance(events, list) else None

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
