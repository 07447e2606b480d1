"""
Whitelist filter for benign traffic.

Decides whether a firewall event belongs to traffic that must never be
reported: known-good user agents, static asset requests, asset/API
subdomains and well-known endpoints such as robots.txt.
"""

from typing import Iterable

import idna

from .config import WhitelistConfig
from .models import Event


def normalize_host(host: str) -> str:
    """
    Normalize a request host for comparison.

    Strips the port and trailing dot, lowercases, and converts
    internationalized names to their ASCII (punycode) form. Hosts that
    cannot be IDNA-encoded are returned lowercased as-is.
    """
    host = host.strip().lower()
    if host.startswith("[") and "]" in host:
        # IPv6 literal with optional port
        return host[1:host.index("]")]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    host = host.rstrip(".")
    if not host or host.isascii():
        return host
    try:
        return idna.encode(host, uts46=True).decode("ascii")
    except idna.IDNAError:
        return host


def _normalize_domain_rule(rule: str) -> str:
    # prefix rules such as "api." keep their trailing dot
    if rule.endswith("."):
        return normalize_host(rule[:-1]) + "."
    return normalize_host(rule)


class WhitelistFilter:
    """Pure pass/reject decision over an event and a rule set."""

    def __init__(self, config: WhitelistConfig) -> None:
        self._user_agents = [ua for ua in config.user_agents if ua]
        self._domains = [_normalize_domain_rule(d) for d in config.domains if d]
        self._endpoints = [e for e in config.endpoints if e]
        self._image_extensions = [ext.lower() for ext in config.image_extensions if ext]

    @property
    def endpoints(self) -> list[str]:
        return list(self._endpoints)

    def is_whitelisted(self, event: Event) -> bool:
        """
        Check whether an event is benign and must not be reported.

        Args:
            event: The firewall event

        Returns:
            True if any whitelist rule matches
        """
        path = event.request_path
        path_lower = path.lower().split("?", 1)[0]
        host = normalize_host(event.request_host)

        if any(ua in event.user_agent for ua in self._user_agents):
            return True
        if any(path_lower.endswith(ext) for ext in self._image_extensions):
            return True
        if host and any(domain in host for domain in self._domains):
            return True
        if any(endpoint in path for endpoint in self._endpoints):
            return True
        return False

    def filter(self, events: Iterable[Event]) -> list[Event]:
        """Return the events that are not whitelisted, in order."""
        return [event for event in events if not self.is_whitelisted(event)]
