from __future__ import annotations

import json
import logging
import sys

import pytest

from modbus_gateway.common.logging_setup import (
    ROOT_LOGGER,
    JsonFormatter,
    get_service_logger,
    log_point_read,
    log_point_write,
    log_status_change,
)
from modbus_gateway.services.gateway.connection import ConnectionStatus


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def captured():
    adapter = get_service_logger("connection")
    handler = _Capture()
    adapter.logger.addHandler(handler)
    adapter.logger.setLevel(logging.INFO)
    yield adapter, handler
    adapter.logger.removeHandler(handler)
    adapter.logger.setLevel(logging.NOTSET)


def _as_json(record: logging.LogRecord) -> dict:
    return json.loads(JsonFormatter().format(record))


def test_component_loggers_share_one_handler() -> None:
    connection_logger = get_service_logger("connection")
    device_logger = get_service_logger("device")

    assert connection_logger.logger.name == "modbus_gateway.connection"
    assert device_logger.logger.parent is logging.getLogger(ROOT_LOGGER)
    assert len(logging.getLogger(ROOT_LOGGER).handlers) == 1
    assert connection_logger.logger.handlers == []


def test_status_change_carries_connection_context(captured) -> None:
    adapter, handler = captured
    log_status_change(
        adapter,
        "connection",
        "plant",
        ConnectionStatus.CONNECTED,
        ConnectionStatus.PING_FAILED,
        retry_delay=3,
    )

    (record,) = handler.records
    data = _as_json(record)
    assert data["level"] == "INFO"
    assert data["service"] == "connection"
    assert data["message"] == "Connection plant: Connected -> Device ping failed"
    assert data["connection"] == "plant"
    assert data["status"] == "Device ping failed"
    assert data["previous_status"] == "Connected"
    assert data["retry_delay"] == 3


def test_point_logs_levels_and_fields(captured) -> None:
    adapter, handler = captured
    log_point_read(adapter, "plant", "meter", "p1", 10)
    log_point_read(adapter, "plant", "meter", "p2", error="register count mismatch")
    log_point_write(adapter, "plant", "meter", "setpoint", 55, error="timeout")

    assert [r.levelno for r in handler.records] == [logging.INFO, logging.ERROR]
    read, write = (_as_json(r) for r in handler.records)
    assert read["device"] == "meter"
    assert read["point"] == "p2"
    assert read["error"] == "register count mismatch"
    assert "value" not in read
    assert write["value"] == 55
    assert write["connection"] == "plant"


def test_formatter_includes_exception_text() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "modbus_gateway.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )

    data = _as_json(record)
    assert data["service"] == "unknown"
    assert data["message"] == "failed"
    assert "ValueError: boom" in data["exception"]
