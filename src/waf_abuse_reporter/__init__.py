"""
WAF Abuse Reporter - reports IPs blocked by the Cloudflare WAF to AbuseIPDB.

This package fetches firewall events, filters and deduplicates them, and
submits abuse reports while respecting the AbuseIPDB daily quota: once the
quota is exhausted, reports are buffered on disk and flushed after the reset.
"""

__version__ = "0.1.0"
__author__ = "WAF Abuse Reporter Team"

from waf_abuse_reporter.exceptions import (
    ReporterError,
    ConfigurationError,
    EventValidationError,
    SourceUnavailableError,
    ReportSubmissionError,
    RateLimitError,
    DailyQuotaExceededError,
    PersistenceError,
    TamperingError,
    ForwardingError,
)
from waf_abuse_reporter.enums import (
    OutcomeStatus,
    RateLimitPhase,
    SkipReason,
    LogLevel,
    SubmissionErrorCode,
    AbuseCategory,
)
from waf_abuse_reporter.config import (
    CloudflareConfig,
    AbuseIPDBConfig,
    ReportingConfig,
    WhitelistConfig,
    PersistenceConfig,
    ForwarderConfig,
    LoggingConfig,
    SystemConfig,
    create_default_config,
    load_config_from_env,
    load_config_from_file,
    save_config_to_file,
)
from waf_abuse_reporter.models import (
    Event,
    ReportRecord,
    BufferEntry,
    SubmissionResult,
    ReportOutcome,
    FlushResult,
    CycleStats,
)
from waf_abuse_reporter.audit_logger import (
    AuditLogger,
    LogEntry,
)
from waf_abuse_reporter.event_source import CloudflareEventSource
from waf_abuse_reporter.abuseipdb_client import AbuseIPDBClient
from waf_abuse_reporter.whitelist import WhitelistFilter
from waf_abuse_reporter.history_store import (
    ReportHistoryStore,
    HistoryIndex,
)
from waf_abuse_reporter.bulk_buffer import BulkBuffer
from waf_abuse_reporter.buffer_store import BufferStore
from waf_abuse_reporter.rate_limiter import (
    DailyQuotaState,
    ResetCheck,
    next_rate_limit_reset,
)
from waf_abuse_reporter.reporter import (
    ReportGate,
    ReportingContext,
)
from waf_abuse_reporter.dedup import DedupGate
from waf_abuse_reporter.comments import (
    categories_for,
    generate_comment,
)
from waf_abuse_reporter.server_ips import ServerAddressResolver
from waf_abuse_reporter.forwarder import ReportForwarder
from waf_abuse_reporter.scheduler import (
    Scheduler,
    CronSchedule,
    CronField,
    CronParser,
    CronParseError,
    ScheduledTask,
)
from waf_abuse_reporter.orchestrator import CycleOrchestrator
from waf_abuse_reporter.self_test import (
    SelfTest,
    SelfTestResult,
    EndpointTestResult,
    ConfigValidationResult,
    run_self_test,
)
from waf_abuse_reporter.cli import (
    main as cli_main,
    create_parser,
)

__all__ = [
    # Exceptions
    "ReporterError",
    "ConfigurationError",
    "EventValidationError",
    "SourceUnavailableError",
    "ReportSubmissionError",
    "RateLimitError",
    "DailyQuotaExceededError",
    "PersistenceError",
    "TamperingError",
    "ForwardingError",
    # Enums
    "OutcomeStatus",
    "RateLimitPhase",
    "SkipReason",
    "LogLevel",
    "SubmissionErrorCode",
    "AbuseCategory",
    # Configuration
    "CloudflareConfig",
    "AbuseIPDBConfig",
    "ReportingConfig",
    "WhitelistConfig",
    "PersistenceConfig",
    "ForwarderConfig",
    "LoggingConfig",
    "SystemConfig",
    "create_default_config",
    "load_config_from_env",
    "load_config_from_file",
    "save_config_to_file",
    # Models
    "Event",
    "ReportRecord",
    "BufferEntry",
    "SubmissionResult",
    "ReportOutcome",
    "FlushResult",
    "CycleStats",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Event source and reporting client
    "CloudflareEventSource",
    "AbuseIPDBClient",
    # Filtering
    "WhitelistFilter",
    "DedupGate",
    # History
    "ReportHistoryStore",
    "HistoryIndex",
    # Bulk buffer
    "BulkBuffer",
    "BufferStore",
    # Rate limiting
    "DailyQuotaState",
    "ResetCheck",
    "next_rate_limit_reset",
    # Reporting
    "ReportGate",
    "ReportingContext",
    "categories_for",
    "generate_comment",
    # Own addresses and forwarding
    "ServerAddressResolver",
    "ReportForwarder",
    # Scheduler
    "Scheduler",
    "CronSchedule",
    "CronField",
    "CronParser",
    "CronParseError",
    "ScheduledTask",
    # Orchestrator
    "CycleOrchestrator",
    # Self-Test
    "SelfTest",
    "SelfTestResult",
    "EndpointTestResult",
    "ConfigValidationResult",
    "run_self_test",
    # CLI
    "cli_main",
    "create_parser",
]
