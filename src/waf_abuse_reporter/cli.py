"""
Command-line interface for the WAF abuse reporter.

This module provides the main CLI entry point with commands for:
- run: Long-running service (startup flush, scheduled cycles, forwarding)
- cycle: Run one reporting cycle and print its statistics
- flush: Flush the persisted bulk buffer now
- forward: Run one secondary API forwarding pass
- status: Show quota state, buffer and history summary
- self-test: Validate configuration and endpoint connectivity
- config: Configuration management
"""

import argparse
import asyncio
import dataclasses
import json
import signal
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .audit_logger import AuditLogger
from .config import (
    DEFAULT_STATE_DIR,
    SystemConfig,
    config_to_dict,
    create_default_config,
    load_config_from_env,
    load_config_from_file,
    save_config_to_file,
)
from .enums import LogLevel
from .exceptions import ConfigurationError, ForwardingError, PersistenceError
from .orchestrator import CycleOrchestrator
from .scheduler import Scheduler
from .self_test import SelfTest, run_self_test


DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.json"


def resolve_config(args: argparse.Namespace) -> SystemConfig:
    """
    Build the effective configuration for a command.

    A JSON file (``--config``) is read first when given; environment
    variables and a local .env file override it; ``--dry-run`` forces
    simulation mode.

    Raises:
        ConfigurationError: If the file or environment is invalid
    """
    base = load_config_from_file(Path(args.config)) if getattr(args, "config", None) else None
    config = load_config_from_env(base=base)
    if getattr(args, "dry_run", False):
        config = dataclasses.replace(config, simulation_mode=True)
    return config


def create_logger(config: SystemConfig, verbose: bool = False) -> AuditLogger:
    return AuditLogger.from_config(config.logging, verbose=verbose)


async def run_service(config: SystemConfig, verbose: bool = False) -> int:
    """
    Run the reporter until SIGINT/SIGTERM.

    Order: optional self-test, startup buffer flush, optional first cycle,
    then the scheduler loop. On shutdown the buffer is persisted within
    the configured grace period.
    """
    logger = create_logger(config, verbose)

    if config.startup_self_test:
        result = await SelfTest(config).run()
        if not result.success:
            for error in result.config_validation.errors:
                logger.log(LogLevel.ERROR, "cli", f"Self-test: {error}")
            for endpoint in result.failed_endpoints:
                logger.log(
                    LogLevel.ERROR,
                    "cli",
                    f"Self-test: {endpoint.endpoint_type} unreachable: {endpoint.error}",
                )
            return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; KeyboardInterrupt still ends the loop
            pass

    async with CycleOrchestrator(config, logger=logger) as orchestrator:
        try:
            await orchestrator.startup()
        except PersistenceError as e:
            logger.log_error("cli", "Cannot prepare persistence; exiting", error=e)
            return 1

        scheduler = Scheduler(logger=logger)
        scheduler.schedule("report", config.reporting.report_schedule, orchestrator.run_cycle)
        if orchestrator.forwarder.enabled:
            scheduler.schedule("forward", config.forwarder.schedule, orchestrator.forwarder.forward)

        logger.log(
            LogLevel.INFO,
            "cli",
            "All set! "
            + ("Starting first cycle shortly" if config.reporting.run_on_start else "Waiting for the first scheduled cycle")
            + "...",
            {"version": __version__, "simulation_mode": config.simulation_mode},
        )

        async def serve() -> None:
            if config.reporting.run_on_start:
                await orchestrator.run_cycle()
            await scheduler.run(stop_event)

        await orchestrator.run_until_stopped(serve(), stop_event)

    return 0


async def run_one_cycle(config: SystemConfig, verbose: bool = False) -> int:
    logger = create_logger(config, verbose)
    async with CycleOrchestrator(config, logger=logger) as orchestrator:
        await orchestrator.startup()
        stats = await orchestrator.run_cycle()
        await orchestrator.shutdown()
    if stats is None:
        return 1
    print(json.dumps(stats.to_dict(), indent=2))
    return 0


async def run_flush(config: SystemConfig, verbose: bool = False) -> int:
    logger = create_logger(config, verbose)
    async with CycleOrchestrator(config, logger=logger) as orchestrator:
        result = await orchestrator.flush()
    print(json.dumps(dataclasses.asdict(result), indent=2))
    return 1 if result.interrupted else 0


async def run_forward(config: SystemConfig, verbose: bool = False) -> int:
    logger = create_logger(config, verbose)
    async with CycleOrchestrator(config, logger=logger) as orchestrator:
        if not orchestrator.forwarder.enabled:
            print("Secondary API forwarding is not enabled", file=sys.stderr)
            return 1
        try:
            count = await orchestrator.forwarder.forward()
        except ForwardingError as e:
            logger.log_error("cli", "Forwarding failed", error=e)
            return 1
    print(f"Forwarded {count} report(s)")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    return asyncio.run(run_service(resolve_config(args), verbose=args.verbose))


def cmd_cycle(args: argparse.Namespace) -> int:
    """Handle the 'cycle' command."""
    return asyncio.run(run_one_cycle(resolve_config(args), verbose=args.verbose))


def cmd_flush(args: argparse.Namespace) -> int:
    """Handle the 'flush' command."""
    return asyncio.run(run_flush(resolve_config(args), verbose=args.verbose))


def cmd_forward(args: argparse.Namespace) -> int:
    """Handle the 'forward' command."""
    return asyncio.run(run_forward(resolve_config(args), verbose=args.verbose))


def cmd_status(args: argparse.Namespace) -> int:
    """Handle the 'status' command."""
    config = resolve_config(args)
    orchestrator = CycleOrchestrator(config, logger=create_logger(config, args.verbose))
    orchestrator.gate.load_buffer()
    print(json.dumps(orchestrator.status(), indent=2))
    return 0


def cmd_self_test(args: argparse.Namespace) -> int:
    """Handle the 'self-test' command."""
    result = asyncio.run(run_self_test(resolve_config(args), print_output=True))
    return 0 if result.success else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_env(base=load_config_from_file(config_path))
        masked = AuditLogger().mask_sensitive_data(config_to_dict(config))
        print(f"Configuration from: {config_path}")
        print(json.dumps(masked, indent=2))
        return 0

    if args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1
        save_config_to_file(create_default_config(), config_path)
        print(f"Configuration created at: {config_path}")
        return 0

    if args.action == "validate":
        config = load_config_from_file(config_path)
        result = SelfTest(config).validate_config()
        for warning in result.warnings:
            print(f"Warning: {warning}")
        if not result.valid:
            for error in result.errors:
                print(f"Error: {error}", file=sys.stderr)
            return 1
        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="waf-abuse-reporter",
        description="Report IPs blocked by the Cloudflare WAF to AbuseIPDB",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config", "-c",
        help="Path to configuration file (environment variables override it)",
    )
    common.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulation mode - no real network submissions",
    )
    common.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    commands = [
        ("run", "Run the reporter on its schedule until interrupted", cmd_run),
        ("cycle", "Run one reporting cycle", cmd_cycle),
        ("flush", "Flush the bulk report buffer now", cmd_flush),
        ("forward", "Forward reported IPs to the secondary API once", cmd_forward),
        ("status", "Show rate limit, buffer and history status", cmd_status),
        ("self-test", "Validate configuration and endpoint connectivity", cmd_self_test),
    ]
    for name, help_text, func in commands:
        sub = subparsers.add_parser(name, help=help_text, parents=[common])
        sub.set_defaults(func=func)

    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 1
    except PersistenceError as e:
        print(f"Persistence error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
