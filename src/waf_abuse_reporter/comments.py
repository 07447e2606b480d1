"""Report comment and category generation."""

from typing import Sequence

from .abuseipdb_client import MAX_COMMENT_LENGTH
from .enums import AbuseCategory
from .models import Event


L7_DDOS_SOURCE = "l7ddos"

# Cloudflare event sources and how they read in a report
SOURCE_DESCRIPTIONS = {
    "l7ddos": "Layer 7 DDoS attack",
    "waf": "WAF rule match",
    "firewallmanaged": "managed firewall rule match",
    "firewallcustom": "custom firewall rule match",
    "securitylevel": "security level challenge",
    "ratelimit": "rate limit exceeded",
    "bic": "browser integrity check failure",
    "hot": "hotlink protection violation",
    "country": "country block",
    "asn": "ASN block",
    "ip": "IP access rule match",
    "iprange": "IP range access rule match",
    "uablock": "user agent block",
    "zonelockdown": "zone lockdown violation",
    "botfight": "bot fight mode",
}


def categories_for(event: Event, default_categories: Sequence[int]) -> list[int]:
    """Map an event to AbuseIPDB categories; L7 DDoS events report as DDoS."""
    if event.source.lower() == L7_DDOS_SOURCE:
        return [int(AbuseCategory.DDOS_ATTACK)]
    return [int(c) for c in default_categories]


def generate_comment(event: Event) -> str:
    """Build a report comment, truncated to the AbuseIPDB limit."""
    source = SOURCE_DESCRIPTIONS.get(event.source.lower(), event.source or "firewall event")
    lines = [
        f"Blocked by Cloudflare WAF: {source}",
        f"Action: {event.action or 'N/A'}",
    ]
    if event.request_host or event.request_path:
        lines.append(f"Request: {event.request_host}{event.request_path}")
    if event.user_agent:
        lines.append(f"User-Agent: {event.user_agent}")
    if event.country:
        lines.append(f"Country: {event.country}")
    lines.append(f"Ray ID: {event.ray_id}")

    comment = "\n".join(lines)
    if len(comment) > MAX_COMMENT_LENGTH:
        comment = comment[: MAX_COMMENT_LENGTH - 3] + "..."
    return comment
