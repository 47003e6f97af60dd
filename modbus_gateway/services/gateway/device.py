"""
Device Polling

A Device is one Modbus slave on a connection. It owns its points, a
periodic poll task on the connection's scheduler, and the logic that turns
its points into read requests and applies the responses.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from modbus_gateway.common.config import DeviceConfig, PointConfig, RegisterKind
from modbus_gateway.common.exceptions import (
    ConfigError,
    DeviceError,
    TransportError,
    WriteError,
)
from modbus_gateway.common.logging_setup import (
    get_service_logger,
    log_point_read,
    log_point_write,
    log_status_change,
)
from modbus_gateway.common.scheduler import ScheduledTask
from .batching import ReadBatch, plan_batches, plan_single_reads
from .points import Point, PointValue, decode_value, encode_value

if TYPE_CHECKING:
    from .connection import Connection

logger = get_service_logger("device")


class DeviceStatus(str, Enum):
    """Device status labels shown to operators"""
    READY = "Ready"
    NOT_READY = "Not Ready"


class Device:
    """
    A polled slave device.

    All methods except write_point() are expected to run on the owning
    connection's scheduler.
    """

    def __init__(self, connection: "Connection", config: DeviceConfig):
        self.connection = connection
        self.config = config
        self.status = DeviceStatus.NOT_READY
        self.points: dict[str, Point] = {
            name: Point(point_config) for name, point_config in config.points.items()
        }

        self.poll_count = 0
        self.failed_poll_count = 0
        self.last_poll_at: datetime | None = None
        self._poll_task: ScheduledTask | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def slave_id(self) -> int:
        return self.config.slave_id

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done

    def set_status(self, status: DeviceStatus) -> None:
        if status != self.status:
            log_status_change(
                logger, "device", self.name, self.status, status,
                level=logging.DEBUG, connection=self.connection.name,
            )
        self.status = status

    def start_polling(self) -> None:
        """Schedule the recurring poll (no-op if already polling)"""
        if self.polling:
            return
        self._poll_task = self.connection.scheduler.run_periodically(
            self.config.polling_interval,
            self.poll,
            name=f"poll:{self.name}",
        )

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def apply_config(self, config: DeviceConfig) -> None:
        """Replace configuration, keeping values of points whose definition is unchanged"""
        old_points = self.points
        self.config = config
        self.points = {}
        for name, point_config in config.points.items():
            old = old_points.get(name)
            self.points[name] = old if old is not None and old.config == point_config else Point(point_config)

        if self.polling:
            self.stop_polling()
            self.start_polling()

    def add_point(self, point_config: PointConfig) -> Point:
        if point_config.name in self.points:
            raise ConfigError(
                f"point '{point_config.name}' already exists on {self.name}",
                field="name",
            )
        self.config.points[point_config.name] = point_config
        point = Point(point_config)
        self.points[point_config.name] = point
        return point

    def remove_point(self, name: str) -> None:
        if name not in self.points:
            raise DeviceError(f"unknown point '{name}'", device_name=self.name)
        del self.points[name]
        self.config.points.pop(name, None)

    def plan_requests(self) -> list[ReadBatch]:
        """Read requests for one poll cycle"""
        points = list(self.points.values())
        if not self.config.use_batch_polling:
            return plan_single_reads(points)

        tuning = self.connection.config.tuning
        return plan_batches(
            points,
            max_bit_count=tuning.max_read_bit_count,
            max_register_count=tuning.max_read_register_count,
            contiguous_only=self.config.contiguous_batch_requests_only,
        )

    async def poll(self) -> bool:
        """
        Run one poll cycle.

        Returns:
            True if every request succeeded (device Ready)
        """
        self.poll_count += 1
        self.last_poll_at = datetime.now(timezone.utc)
        batches = self.plan_requests()
        handle = self.connection.live_handle

        if handle is None:
            for batch in batches:
                self._fail_batch(batch, "connection not available")
            self.failed_poll_count += 1
            self.set_status(DeviceStatus.NOT_READY)
            return False

        transport = self.connection.transport
        all_ok = True
        lost_runs = 0

        for batch in batches:
            try:
                if batch.kind.is_bit:
                    raw = await transport.read_bits(
                        handle, self.slave_id, batch.kind, batch.start, batch.count
                    )
                else:
                    raw = await transport.read_registers(
                        handle, self.slave_id, batch.kind, batch.start, batch.count
                    )
            except TransportError as e:
                logger.info(
                    f"Read {batch.kind.value} [{batch.start}-{batch.end}] "
                    f"from {self.name} failed: {e.message}",
                    extra={"device": self.name, "slave_id": self.slave_id},
                )
                self._fail_batch(batch, e.message)
                all_ok = False
                lost_runs += 1
                continue

            for point in batch.points:
                try:
                    value = point.update(batch.slice_for(point, raw))
                except ValueError as e:
                    point.mark_failed(str(e), zero=self.config.zero_on_failed_poll)
                    log_point_read(logger, self.connection.name, self.name, point.name, error=str(e))
                    all_ok = False
                    continue
                log_point_read(logger, self.connection.name, self.name, point.name, value)

        if not all_ok:
            self.failed_poll_count += 1
        self.set_status(DeviceStatus.READY if all_ok else DeviceStatus.NOT_READY)
        if batches and lost_runs == len(batches):
            # Link looks down, let the connection re-check and retry
            self.connection.request_check()
        return all_ok

    async def write_point(self, name: str, value: PointValue) -> PointValue:
        """
        Write a point immediately, outside the poll cycle.

        Runs on the connection scheduler so it never overlaps a poll.

        Returns:
            The value as stored on the device (after scaling/rounding)

        Raises:
            WriteError: if the point is not writable or the write fails
        """
        return await self.connection.scheduler.call(lambda: self._write(name, value))

    async def _write(self, name: str, value: PointValue) -> PointValue:
        point = self.points.get(name)
        if point is None:
            raise WriteError(f"unknown point '{name}'", device_name=self.name, point=name)
        if not point.config.writable or not point.kind.is_writable:
            raise WriteError(
                f"point '{name}' is not writable",
                device_name=self.name,
                point=name,
                value=value,
            )

        try:
            raw = encode_value(point.config.datatype, value, point.config.scale)
        except (TypeError, ValueError) as e:
            raise WriteError(str(e), device_name=self.name, point=name, value=value)

        tuning = self.connection.config.tuning
        if len(raw) > tuning.max_write_register_count:
            raise WriteError(
                f"write of {len(raw)} registers exceeds max write register count "
                f"({tuning.max_write_register_count})",
                device_name=self.name,
                point=name,
                value=value,
            )

        handle = self.connection.live_handle
        if handle is None:
            raise WriteError(
                "connection not available",
                device_name=self.name,
                point=name,
                value=value,
            )

        transport = self.connection.transport
        force_multiple = tuning.use_multiple_write_commands_only
        try:
            if point.kind == RegisterKind.COIL:
                await transport.write_coils(handle, self.slave_id, point.address, raw, force_multiple)
            else:
                await transport.write_registers(handle, self.slave_id, point.address, raw, force_multiple)
        except TransportError as e:
            log_point_write(logger, self.connection.name, self.name, name, value, error=e.message)
            raise WriteError(e.message, device_name=self.name, point=name, value=value) from e

        if tuning.discard_data_delay_ms > 0:
            await asyncio.sleep(tuning.discard_data_delay_ms / 1000)

        point.value = decode_value(point.config.datatype, raw, point.config.scale)
        point.last_updated = datetime.now(timezone.utc)
        point.last_error = None
        log_point_write(logger, self.connection.name, self.name, name, point.value)
        return point.value

    def _fail_batch(self, batch: ReadBatch, error: str) -> None:
        for point in batch.points:
            point.mark_failed(error, zero=self.config.zero_on_failed_poll)

    def to_dict(self) -> dict:
        return {
            "slave_id": self.slave_id,
            "status": self.status.value,
            "polling": self.polling,
            "poll_count": self.poll_count,
            "failed_poll_count": self.failed_poll_count,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "points": {name: point.to_dict() for name, point in self.points.items()},
        }
