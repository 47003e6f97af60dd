#!/usr/bin/env python3
"""
Modbus Gateway - Main Entry Point

Loads the connection record and runs the acquisition service until
SIGINT/SIGTERM.

Usage:
    python -m modbus_gateway.main                        # record from MODBUS_GATEWAY_CONFIG
    python -m modbus_gateway.main --config conns.yaml    # custom record file
    python -m modbus_gateway.main --dry-run              # print the record and exit
    python -m modbus_gateway.main --log-level DEBUG --text-logs
"""

import argparse
import asyncio
import sys

import yaml

from modbus_gateway.common.config import dump_gateway_config, load_settings
from modbus_gateway.common.exceptions import ConfigError
from modbus_gateway.common.logging_setup import get_service_logger, setup_logging
from modbus_gateway.services.gateway.service import GatewayService
from modbus_gateway.services.gateway.store import ConfigStore

logger = get_service_logger("main")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Modbus master gateway")
    parser.add_argument(
        "--config",
        "-c",
        help="Path to the connection record (YAML)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Load and print the connection record, then exit",
    )
    parser.add_argument(
        "--no-health",
        action="store_true",
        help="Do not start the health HTTP server",
    )
    parser.add_argument(
        "--log-level",
        help="Override MODBUS_GATEWAY_LOG_LEVEL (DEBUG, INFO, WARNING, ...)",
    )
    parser.add_argument(
        "--text-logs",
        action="store_true",
        help="Plain text log lines instead of JSON",
    )
    return parser.parse_args(argv)


def print_record(store: ConfigStore) -> None:
    """Print the record as it will be restored (defaults filled, invalid entries dropped)"""
    connections = store.load()
    print(yaml.safe_dump(dump_gateway_config(connections), default_flow_style=False, sort_keys=False))

    device_count = sum(len(c.devices) for c in connections.values())
    point_count = sum(
        len(d.points) for c in connections.values() for d in c.devices.values()
    )
    print(f"{len(connections)} connections, {device_count} devices, {point_count} points")


async def run(settings, health_server: bool = True) -> None:
    service = GatewayService(settings=settings)

    try:
        await service.run(health_server=health_server)
    finally:
        await service.stop()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.log_level or args.text_logs:
        setup_logging(args.log_level or "INFO", json_format=not args.text_logs)
    settings = load_settings()
    if args.config:
        settings.config_path = args.config

    if args.dry_run:
        try:
            print_record(ConfigStore(settings.config_path))
        except ConfigError as e:
            logger.error(e.message)
            return 1
        return 0

    try:
        asyncio.run(run(settings, health_server=not args.no_health))
    except ConfigError as e:
        logger.error(e.message)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
