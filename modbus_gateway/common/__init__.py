"""
Common Utilities

Shared modules used by the gateway:
- config.py - Configuration dataclasses, validation, record load/dump
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Per-connection task scheduler
"""

from .config import (
    TransportKind,
    Parity,
    RegisterKind,
    PointDataType,
    IpParams,
    SerialParams,
    TransportConfig,
    TuningConfig,
    PointConfig,
    DeviceConfig,
    ConnectionConfig,
    GatewaySettings,
    load_gateway_config,
    dump_gateway_config,
    load_settings,
)
from .exceptions import (
    GatewayError,
    ConfigError,
    TransportError,
    DeviceError,
    WriteError,
    SchedulerClosedError,
)
from .logging_setup import setup_logging, get_service_logger
from .scheduler import ScheduledTask, TaskScheduler

__all__ = [
    # Config
    "TransportKind",
    "Parity",
    "RegisterKind",
    "PointDataType",
    "IpParams",
    "SerialParams",
    "TransportConfig",
    "TuningConfig",
    "PointConfig",
    "DeviceConfig",
    "ConnectionConfig",
    "GatewaySettings",
    "load_gateway_config",
    "dump_gateway_config",
    "load_settings",
    # Exceptions
    "GatewayError",
    "ConfigError",
    "TransportError",
    "DeviceError",
    "WriteError",
    "SchedulerClosedError",
    # Logging
    "setup_logging",
    "get_service_logger",
    # Scheduler
    "ScheduledTask",
    "TaskScheduler",
]
