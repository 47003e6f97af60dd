"""
Structured Logging Setup

All gateway components log through children of the "modbus_gateway"
logger. One stdout handler is installed on that parent, JSON by default,
plain text when MODBUS_GATEWAY_LOG_FORMAT=text.

Every record carries the component name ("service"); connection, device
and point context is passed as extras and lands as top-level JSON keys.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ROOT_LOGGER = "modbus_gateway"

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """One JSON object per line; extras become top-level keys"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            log_data[key] = value.value if isinstance(value, Enum) else value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Adds the component name to every record, keeping caller extras"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(kwargs.get("extra") or {})
        extra["service"] = self.extra["service"]
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> logging.Logger:
    """
    (Re)configure the gateway's parent logger.

    Safe to call repeatedly: the previous handler is replaced, so component
    loggers created earlier pick up the new level and format.
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(numeric_level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    root.addHandler(handler)

    # Don't propagate to the host application's root logger
    root.propagate = False
    return root


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Logger for one gateway component (e.g. "connection", "device").

    The parent logger is configured from MODBUS_GATEWAY_LOG_LEVEL and
    MODBUS_GATEWAY_LOG_FORMAT ("json" or "text") the first time it is needed.
    """
    if not logging.getLogger(ROOT_LOGGER).handlers:
        setup_logging(
            os.environ.get("MODBUS_GATEWAY_LOG_LEVEL", "INFO"),
            os.environ.get("MODBUS_GATEWAY_LOG_FORMAT", "json").lower() == "json",
        )
    logger = logging.getLogger(f"{ROOT_LOGGER}.{service_name}")
    return ServiceLoggerAdapter(logger, {"service": service_name})


def log_status_change(
    logger: logging.LoggerAdapter,
    kind: str,
    name: str,
    old: Enum,
    new: Enum,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """Log a connection or device status transition"""
    logger.log(
        level,
        f"{kind.capitalize()} {name}: {old.value} -> {new.value}",
        extra={kind: name, "status": new.value, "previous_status": old.value, **context},
    )


def log_point_read(
    logger: logging.LoggerAdapter,
    connection: str,
    device: str,
    point: str,
    value: Any = None,
    error: str | None = None,
) -> None:
    """Log a decoded point value, or a decode failure at INFO"""
    context = {"connection": connection, "device": device, "point": point}
    if error is None:
        logger.debug(f"Read {device}.{point} = {value}", extra={**context, "value": value})
    else:
        logger.info(f"Failed to read {device}.{point}: {error}", extra={**context, "error": error})


def log_point_write(
    logger: logging.LoggerAdapter,
    connection: str,
    device: str,
    point: str,
    value: Any,
    error: str | None = None,
) -> None:
    """Log an operator write; failures at ERROR"""
    context = {"connection": connection, "device": device, "point": point, "value": value}
    if error is None:
        logger.info(f"Write {device}.{point} = {value}", extra=context)
    else:
        logger.error(f"Failed to write {device}.{point} = {value}: {error}", extra={**context, "error": error})
