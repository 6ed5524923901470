#!/usr/bin/env python3
"""
Outage Monitor - Entry Point

Runs three independent loops in one process:
- Power monitor: detects mains loss, records incidents, sends probes
- Event syncer: uploads finished incidents (at-least-once)
- Restart guard: periodic supervisor reboot (optional)

Usage:
    outage-monitor                     # Start with default config search
    outage-monitor --config my.yaml    # Use custom config file
    outage-monitor --dry-run           # Validate config and exit
    outage-monitor --verbose           # Enable debug logging
"""

import argparse
import asyncio
import sys

from . import __version__
from .common.config import find_config_path, load_config_file
from .common.exceptions import ConfigError, MonitorError
from .common.logging_setup import configure_all, get_service_logger
from .services.daemon import Daemon


def print_startup_banner(config) -> None:
    device = config.monitor

    print()
    print("=" * 60)
    print("  POWER OUTAGE MONITOR")
    print("=" * 60)
    print()
    print(f"  Monitor ID: {device.id}")
    print(f"  Location: {device.state}, {device.city}, {device.municipality}, {device.parish}")
    print(f"  Publisher: {config.publisher.kind.value}")
    print(f"  Open events: {config.storage.events_dir}")
    print(f"  Finished events: {config.storage.finished_events_dir}")
    print(f"  Restart guard: {'enabled' if config.watchdog.enabled else 'disabled'}")
    if config.health.port:
        print(f"  Health: http://{config.health.host}:{config.health.port}/health")
    print()
    print("=" * 60)
    print()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Power outage monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    outage-monitor                     # Start with default config
    outage-monitor --config my.yaml    # Use custom config file
    outage-monitor --dry-run           # Validate config and exit
    outage-monitor -v                  # Enable debug logging

Environment:
    MYSQL_DSN                   Overrides publisher.dsn
    BALENA_SUPERVISOR_ADDRESS   Overrides watchdog.supervisor_address
    BALENA_SUPERVISOR_API_KEY   Overrides watchdog.api_key
    OUTAGE_MONITOR_LOG_LEVEL    DEBUG, INFO, WARNING, ERROR
    OUTAGE_MONITOR_LOG_FORMAT   json or text
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: first of ./config.yaml, "
             "/etc/c4v/poweroutage/config.yaml, /etc/outage-monitor/config.yaml)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"outage-monitor {__version__}"
    )

    args = parser.parse_args(argv)

    if args.verbose:
        # Plain text in verbose/debug mode
        configure_all("DEBUG", json_format=False)

    config_path = args.config or find_config_path()
    try:
        config = load_config_file(config_path)
    except ConfigError as e:
        print(e.message)
        for problem in e.problems:
            print(f"  - {problem}")
        return 1

    print_startup_banner(config)

    if args.dry_run:
        print("Dry run mode - configuration valid")
        return 0

    logger = get_service_logger("main")
    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except MonitorError as e:
        logger.critical(f"Fatal error: {e.message}")
        return 1

    return 0


async def _run(config) -> None:
    daemon = Daemon(config)
    await daemon.run()


if __name__ == "__main__":
    sys.exit(main())
