"""
Discovery of the operator's own IP addresses.

Combines configured addresses, the public address reported by an HTTP
lookup service and the non-loopback addresses of local interfaces. The set
is refreshed at the start of every cycle so self-traffic is never reported.
"""

import ipaddress
import socket
from typing import Iterable, Optional

import httpx

from .audit_logger import AuditLogger
from .enums import LogLevel


def is_public_address(address: str) -> bool:
    """True for a global unicast address (not loopback, private or link-local)."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    return ip.is_global


def local_interface_addresses() -> set[str]:
    """Best-effort list of this host's public interface addresses."""
    addresses: set[str] = set()
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None)
    except OSError:
        infos = []
    for family, _, _, _, sockaddr in infos:
        if family in (socket.AF_INET, socket.AF_INET6):
            addresses.add(str(sockaddr[0]).split("%", 1)[0])

    # The source address picked for an outbound route; connect() on UDP sends nothing
    for family, target in ((socket.AF_INET, "198.51.100.1"), (socket.AF_INET6, "2001:db8::1")):
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as sock:
                sock.connect((target, 9))
                addresses.add(sock.getsockname()[0].split("%", 1)[0])
        except OSError:
            continue

    return {address for address in addresses if is_public_address(address)}


def _normalize(address: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(address.strip()))
    except ValueError:
        return None


class ServerAddressResolver:
    """Resolves and caches the operator's own addresses."""

    COMPONENT = "server_ips"

    def __init__(
        self,
        configured: Iterable[str] = (),
        public_ip_url: Optional[str] = None,
        logger: Optional[AuditLogger] = None,
        simulation_mode: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        include_interfaces: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self._configured = {a for a in (_normalize(c) for c in configured) if a}
        self._public_ip_url = public_ip_url
        self._logger = logger
        self._simulation_mode = simulation_mode
        self._transport = transport
        self._include_interfaces = include_interfaces
        self._timeout = timeout
        self._addresses: set[str] = set(self._configured)

    @property
    def addresses(self) -> frozenset[str]:
        return frozenset(self._addresses)

    async def fetch_public_ip(self) -> Optional[str]:
        """
        Ask the lookup service for this host's public address.

        Accepts ``{"ip": ...}``, ``{"message": ...}`` or a plain-text body.
        Failures are logged and yield None.
        """
        if not self._public_ip_url or self._simulation_mode:
            return None
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            ) as client:
                response = await client.get(self._public_ip_url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            self._log(LogLevel.WARN, f"Error fetching public IP address: {e}")
            return None

        candidate: Optional[str] = None
        try:
            body = response.json()
        except ValueError:
            candidate = response.text
        else:
            if isinstance(body, dict):
                candidate = body.get("ip") or body.get("message")
            elif isinstance(body, str):
                candidate = body

        address = _normalize(candidate) if isinstance(candidate, str) else None
        if address is None:
            self._log(LogLevel.WARN, "Public IP lookup returned no valid address")
        return address

    async def refresh(self) -> frozenset[str]:
        """Rebuild the address set; configured addresses are always kept."""
        addresses = set(self._configured)
        public_ip = await self.fetch_public_ip()
        if public_ip:
            addresses.add(public_ip)
        if self._include_interfaces:
            addresses.update(local_interface_addresses())
        self._addresses = addresses
        self._log(
            LogLevel.INFO,
            f"Collected {len(addresses)} of your IP address{'es' if len(addresses) != 1 else ''}",
        )
        self._log(LogLevel.DEBUG, "Own addresses", {"addresses": sorted(addresses)})
        return self.addresses

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
