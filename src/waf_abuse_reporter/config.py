"""
Configuration dataclasses for the WAF abuse reporter.

This module defines all configuration structures used throughout the system:
the Cloudflare event source, the AbuseIPDB endpoint, reporting policy
(cooldowns, buffer capacity, schedule), whitelist rules, persistence,
secondary forwarding and logging. Configuration can be loaded from a JSON
file or from environment variables (a local .env file is honoured).
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError


DEFAULT_STATE_DIR = Path.home() / ".waf_abuse_reporter"


@dataclass
class CloudflareConfig:
    """Cloudflare GraphQL event source configuration."""

    api_token: str
    zone_id: str
    graphql_url: str = "https://api.cloudflare.com/client/v4/graphql"
    fetch_limit: int = 1000
    timeout_seconds: float = 7.0


@dataclass
class AbuseIPDBConfig:
    """AbuseIPDB report endpoint configuration."""

    api_key: str
    report_url: str = "https://api.abuseipdb.com/api/v2/report"
    timeout_seconds: float = 7.0
    default_categories: list[int] = field(default_factory=lambda: [14])


@dataclass
class ReportingConfig:
    """Reporting policy: cooldowns, buffer capacity and scheduling."""

    cooldown_hours: float = 6.0
    max_url_length: int = 920
    buffer_capacity: int = 100_000
    success_cooldown_seconds: float = 1.0
    report_schedule: str = "0 */2 * * *"
    run_on_start: bool = True
    force_buffering: bool = False
    server_ips: list[str] = field(default_factory=list)
    public_ip_url: Optional[str] = "https://api.ipify.org?format=json"


@dataclass
class WhitelistConfig:
    """Rules for benign traffic that must never be reported."""

    user_agents: list[str] = field(default_factory=list)
    domains: list[str] = field(default_factory=lambda: [
        "api.",
        "cdn.",
        "static.",
        "assets.",
        "media.",
        "auth.",
        "files.",
    ])
    endpoints: list[str] = field(default_factory=lambda: [
        "favicon.ico",
        "favicon.png",
        "sitemap.xml",
        "robots.txt",
        "ads.txt",
        "security.txt",
        "humans.txt",
        "manifest.json",
        "apple-touch-icon.png",
        "crossdomain.xml",
    ])
    image_extensions: list[str] = field(default_factory=lambda: [
        ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".svg", ".webp",
    ])


@dataclass
class PersistenceConfig:
    """History and bulk buffer storage configuration."""

    history_file_path: Path
    buffer_file_path: Path
    hmac_secret: str
    max_history_bytes: int = 4 * 1024 * 1024


@dataclass
class ForwarderConfig:
    """Secondary aggregation API (operator-controlled collector)."""

    enabled: bool = False
    url: Optional[str] = None
    secret_token: Optional[str] = None
    schedule: str = "0 */6 * * *"
    timeout_seconds: float = 15.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'
    log_file: Optional[Path] = None


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    cloudflare: CloudflareConfig
    abuseipdb: AbuseIPDBConfig
    reporting: ReportingConfig
    whitelist: WhitelistConfig
    persistence: PersistenceConfig
    forwarder: ForwarderConfig
    logging: LoggingConfig
    simulation_mode: bool = False
    startup_self_test: bool = False
    shutdown_grace_seconds: float = 5.0


def _default_persistence(state_dir: Path = DEFAULT_STATE_DIR) -> PersistenceConfig:
    return PersistenceConfig(
        history_file_path=state_dir / "reported_ips.csv",
        buffer_file_path=state_dir / "bulk_buffer.json",
        hmac_secret="default-secret-change-me",
    )


def create_default_config(
    simulation_mode: bool = False,
    state_dir: Optional[Path] = None,
) -> SystemConfig:
    """
    Create a default system configuration with empty credentials.

    Args:
        simulation_mode: Enable simulation mode (no real submissions)
        state_dir: Directory for the history and buffer files

    Returns:
        SystemConfig with default settings
    """
    return SystemConfig(
        cloudflare=CloudflareConfig(api_token="", zone_id=""),
        abuseipdb=AbuseIPDBConfig(api_key=""),
        reporting=ReportingConfig(),
        whitelist=WhitelistConfig(),
        persistence=_default_persistence(state_dir or DEFAULT_STATE_DIR),
        forwarder=ForwarderConfig(),
        logging=LoggingConfig(),
        simulation_mode=simulation_mode,
    )


def _str_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(
    env_file: Optional[Path] = None,
    base: Optional[SystemConfig] = None,
) -> SystemConfig:
    """
    Build configuration from environment variables.

    Values from a .env file are loaded first (existing environment variables
    win). Unset variables keep the value from ``base`` or the defaults.

    Raises:
        ConfigurationError: If a numeric variable cannot be parsed
    """
    load_dotenv(dotenv_path=env_file)
    config = base or create_default_config()
    env = os.environ

    try:
        if "CLOUDFLARE_API_KEY" in env:
            config.cloudflare.api_token = env["CLOUDFLARE_API_KEY"]
        if "CLOUDFLARE_ZONE_ID" in env:
            config.cloudflare.zone_id = env["CLOUDFLARE_ZONE_ID"]
        if "CLOUDFLARE_FETCH_LIMIT" in env:
            config.cloudflare.fetch_limit = int(env["CLOUDFLARE_FETCH_LIMIT"])

        if "ABUSEIPDB_API_KEY" in env:
            config.abuseipdb.api_key = env["ABUSEIPDB_API_KEY"]
        if "ABUSEIPDB_CATEGORIES" in env:
            config.abuseipdb.default_categories = [
                int(c) for c in _str_list(env["ABUSEIPDB_CATEGORIES"])
            ]

        if "IP_REPORT_COOLDOWN_HOURS" in env:
            config.reporting.cooldown_hours = float(env["IP_REPORT_COOLDOWN_HOURS"])
        if "MAX_URL_LENGTH" in env:
            config.reporting.max_url_length = int(env["MAX_URL_LENGTH"])
        if "BULK_BUFFER_CAPACITY" in env:
            config.reporting.buffer_capacity = int(env["BULK_BUFFER_CAPACITY"])
        if "SUCCESS_COOLDOWN_SECONDS" in env:
            config.reporting.success_cooldown_seconds = float(env["SUCCESS_COOLDOWN_SECONDS"])
        if "REPORT_SCHEDULE" in env:
            config.reporting.report_schedule = env["REPORT_SCHEDULE"]
        if "RUN_ON_START" in env:
            config.reporting.run_on_start = _bool(env["RUN_ON_START"])
        if "FORCE_BUFFERING" in env:
            config.reporting.force_buffering = _bool(env["FORCE_BUFFERING"])
        if "SERVER_IPS" in env:
            config.reporting.server_ips = _str_list(env["SERVER_IPS"])

        if "STATE_DIR" in env:
            state_dir = Path(env["STATE_DIR"])
            config.persistence.history_file_path = state_dir / "reported_ips.csv"
            config.persistence.buffer_file_path = state_dir / "bulk_buffer.json"
        if "STATE_HMAC_SECRET" in env:
            config.persistence.hmac_secret = env["STATE_HMAC_SECRET"]

        if "SECONDARY_API_URL" in env:
            config.forwarder.url = env["SECONDARY_API_URL"]
        if "SECONDARY_API_SECRET_TOKEN" in env:
            config.forwarder.secret_token = env["SECONDARY_API_SECRET_TOKEN"]
        if "SECONDARY_API_SCHEDULE" in env:
            config.forwarder.schedule = env["SECONDARY_API_SCHEDULE"]
        if "SECONDARY_API_REPORTING" in env:
            config.forwarder.enabled = _bool(env["SECONDARY_API_REPORTING"])

        if "LOG_LEVEL" in env:
            config.logging.level = env["LOG_LEVEL"].lower()
        if "LOG_FILE" in env:
            config.logging.log_file = Path(env["LOG_FILE"])
    except ValueError as e:
        raise ConfigurationError(
            code="invalid_env",
            message=f"Invalid environment value: {e}",
        ) from e

    return config


def load_config_from_file(config_path: Path) -> SystemConfig:
    """
    Load configuration from a JSON file.

    Missing sections fall back to defaults.

    Raises:
        ConfigurationError: If the file cannot be read or has invalid content
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(
            code="not_found",
            message=f"Configuration file not found: {config_path}",
        ) from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            code="parse_error",
            message=f"Failed to read configuration file: {e}",
            details={"config_path": str(config_path)},
        ) from e

    try:
        persistence_data = dict(data.get("persistence", {}))
        defaults = _default_persistence()
        persistence = PersistenceConfig(
            history_file_path=Path(
                persistence_data.get("history_file_path", defaults.history_file_path)
            ),
            buffer_file_path=Path(
                persistence_data.get("buffer_file_path", defaults.buffer_file_path)
            ),
            hmac_secret=persistence_data.get("hmac_secret", defaults.hmac_secret),
            max_history_bytes=persistence_data.get(
                "max_history_bytes", defaults.max_history_bytes
            ),
        )

        logging_data = dict(data.get("logging", {}))
        log_file = logging_data.get("log_file")
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
            log_file=Path(log_file) if log_file else None,
        )

        return SystemConfig(
            cloudflare=CloudflareConfig(**data.get("cloudflare", {"api_token": "", "zone_id": ""})),
            abuseipdb=AbuseIPDBConfig(**data.get("abuseipdb", {"api_key": ""})),
            reporting=ReportingConfig(**data.get("reporting", {})),
            whitelist=WhitelistConfig(**data.get("whitelist", {})),
            persistence=persistence,
            forwarder=ForwarderConfig(**data.get("forwarder", {})),
            logging=logging_config,
            simulation_mode=data.get("simulation_mode", False),
            startup_self_test=data.get("startup_self_test", False),
            shutdown_grace_seconds=data.get("shutdown_grace_seconds", 5.0),
        )
    except (TypeError, AttributeError) as e:
        raise ConfigurationError(
            code="invalid_config",
            message=f"Invalid configuration: {e}",
            details={"config_path": str(config_path)},
        ) from e


def config_to_dict(config: SystemConfig) -> dict:
    """Convert a configuration to JSON-serializable primitives."""
    data = asdict(config)
    for key in ("history_file_path", "buffer_file_path"):
        data["persistence"][key] = str(data["persistence"][key])
    if data["logging"]["log_file"] is not None:
        data["logging"]["log_file"] = str(data["logging"]["log_file"])
    return data


def save_config_to_file(config: SystemConfig, config_path: Path) -> None:
    """
    Save configuration to a JSON file.

    Raises:
        ConfigurationError: If the file cannot be written
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config_to_dict(config), f, indent=2, ensure_ascii=False)
    except OSError as e:
        raise ConfigurationError(
            code="io_error",
            message=f"Failed to write configuration file: {e}",
            details={"config_path": str(config_path)},
        ) from e
