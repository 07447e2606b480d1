"""
Enumeration types for the WAF abuse reporter.

These enums replace the string status codes used for control flow with
closed sets that every consumer matches exhaustively.
"""

from enum import Enum, IntEnum


class OutcomeStatus(Enum):
    """Outcome of a single report attempt, as recorded in the history store."""

    REPORTED = "REPORTED"
    READY_FOR_BULK_REPORT = "READY_FOR_BULK_REPORT"
    RL_BULK_REPORT = "RL_BULK_REPORT"
    ALREADY_IN_BUFFER = "ALREADY_IN_BUFFER"
    BUFFER_IS_FULL = "BUFFER_IS_FULL"
    FAILED = "FAILED"

    @property
    def is_handled(self) -> bool:
        """True when the IP has been reported or queued for a bulk report."""
        return self in _HANDLED_STATUSES

    @property
    def counts_as_error(self) -> bool:
        """True when the outcome should be counted as a cycle error."""
        return self in _ERROR_STATUSES


_HANDLED_STATUSES = frozenset({
    OutcomeStatus.REPORTED,
    OutcomeStatus.READY_FOR_BULK_REPORT,
    OutcomeStatus.RL_BULK_REPORT,
})

_ERROR_STATUSES = frozenset({
    OutcomeStatus.FAILED,
    OutcomeStatus.BUFFER_IS_FULL,
})


class RateLimitPhase(Enum):
    """Phase of the daily quota state machine."""

    NORMAL = "normal"
    LIMITED_BUFFERING = "limited_buffering"
    LIMITED_BULK_SENT = "limited_bulk_sent"


class SkipReason(Enum):
    """Why the dedup gate rejected an event before reporting."""

    SELF_TRAFFIC = "self_traffic"
    WHITELISTED_ENDPOINT = "whitelisted_endpoint"
    URL_TOO_LONG = "url_too_long"
    SEEN_THIS_CYCLE = "seen_this_cycle"
    RECENTLY_REPORTED = "recently_reported"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        """Numeric rank used for minimum-level filtering."""
        return _LOG_LEVEL_RANKS[self]


_LOG_LEVEL_RANKS = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


class SubmissionErrorCode(Enum):
    """Error codes for abuse report submissions."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    DAILY_QUOTA = "daily_quota"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    UNPROCESSABLE = "unprocessable"
    SERVER_ERROR = "server_error"
    PARSE_ERROR = "parse_error"


class AbuseCategory(IntEnum):
    """
    AbuseIPDB attack categories.
    https://www.abuseipdb.com/categories
    """

    DNS_COMPROMISE = 1
    DNS_POISONING = 2
    FRAUD_ORDERS = 3
    DDOS_ATTACK = 4
    FTP_BRUTE_FORCE = 5
    PING_OF_DEATH = 6
    PHISHING = 7
    FRAUD_VOIP = 8
    OPEN_PROXY = 9
    WEB_SPAM = 10
    EMAIL_SPAM = 11
    BLOG_SPAM = 12
    VPN_IP = 13
    PORT_SCAN = 14
    HACKING = 15
    SQL_INJECTION = 16
    SPOOFING = 17
    BRUTE_FORCE = 18
    BAD_WEB_BOT = 19
    EXPLOITED_HOST = 20
    WEB_APP_ATTACK = 21
    SSH = 22
    IOT_TARGETED = 23
