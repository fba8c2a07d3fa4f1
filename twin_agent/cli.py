"""Command-line interface for twin-agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import TwinAgentApp
from .auth import ConnectionString
from .config import AgentConfig, ConfigurationError, load_config, require_connection_string
from .hub import IotHubLink, LinkError
from .logging import configure_logging
from .telemetry import CadenceController
from .twin import StateSyncHandler

LOGGER = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Simulated environment device synchronised with a device twin",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Run the telemetry agent until interrupted")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )
    connectivity_parser = subparsers.add_parser(
        "report-connectivity", help="Send the connectivity reported property once"
    )
    connectivity_parser.add_argument(
        "--type",
        dest="connectivity_type",
        default=None,
        help="Connectivity type to report (default: value from config)",
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)

        if args.command == "start":
            return TwinAgentApp.start_service(config)

        if args.command == "show-config":
            _print_config(config)
            return 0

        if args.command == "report-connectivity":
            configure_logging(config.logging)
            connectivity_type = args.connectivity_type or config.hub.connectivity_type
            return asyncio.run(_report_connectivity(config, connectivity_type))
    except ConfigurationError as exc:
        LOGGER.error("Configuration error: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    LOGGER.error("Unknown command: %s", args.command)
    return 1


async def _report_connectivity(config: AgentConfig, connectivity_type: str) -> int:
    credentials = ConnectionString.parse(require_connection_string(config))
    link = IotHubLink(credentials, config.hub, resilience=config.resilience)
    handler = StateSyncHandler(
        link, CadenceController(config.telemetry.default_refresh_rate_seconds)
    )
    try:
        await link.connect()
    except LinkError as exc:
        LOGGER.error("Could not connect to hub: %s", exc)
        await link.close()
        return 1
    try:
        reported = await handler.report_connectivity(connectivity_type)
    finally:
        await link.close()
    return 0 if reported else 1


def _print_config(config: AgentConfig) -> None:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            if key == "connection_string":
                value = _redact(value)
            print(f"{key} = {value}")
        print()

    if config.hub.connection_string:
        source = "environment" if os.environ.get(constants.CONNECTION_STRING_ENV) else "config file"
        print(f"connection string ({source}): {_redact(config.hub.connection_string)}")
    else:
        print(f"connection string: missing (set {constants.CONNECTION_STRING_ENV})")


def _redact(value: str) -> str:
    try:
        return ConnectionString.parse(value).redacted()
    except ConfigurationError:
        return "***"


if __name__ == "__main__":
    sys.exit(main())
