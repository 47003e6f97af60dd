"""
Connection Lifecycle

A Connection owns at most one transport handle, the devices polled
through it and a private TaskScheduler. It keeps the handle alive with a
connectivity check (ping of one device) and a reconnection loop whose delay
grows by a fixed step up to a ceiling.

Status transitions:
    SettingUp           -> Connected | PingFailed | EstablishmentFailed
    PingFailed/EstFail  -> (retry_delay) -> Connecting -> Connected | ...
    any                 -> Stopped (stop), SettingUp (restart/edit)

Every state change happens on the connection's scheduler worker; external
callers go through the public coroutines, which submit their work with
TaskScheduler.call().
"""

from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from modbus_gateway.common.config import (
    ConnectionConfig,
    DeviceConfig,
    PointConfig,
    TransportConfig,
    TuningConfig,
)
from modbus_gateway.common.exceptions import ConfigError, DeviceError, GatewayError
from modbus_gateway.common.logging_setup import get_service_logger, log_status_change
from modbus_gateway.common.scheduler import ScheduledTask, TaskScheduler
from .device import Device, DeviceStatus
from .transport import MasterHandle, TransportAdapter

logger = get_service_logger("connection")


class ConnectionStatus(str, Enum):
    """Connection status labels shown to operators"""
    SETTING_UP = "Setting up connection"
    CONNECTING = "connecting to device"
    CONNECTED = "Connected"
    PING_FAILED = "Device ping failed"
    ESTABLISHMENT_FAILED = "Could not establish connection"
    STOPPED = "Stopped"


class Connection:
    """
    One Modbus master connection and its slave devices.

    Invariants:
    - at most one handle exists at any time
    - a handle is live (usable for polls) only while status is Connected
    - at most one reconnection attempt is pending
    """

    RETRY_DELAY_MIN = 1
    RETRY_DELAY_MAX = 60
    RETRY_DELAY_STEP = 2

    def __init__(self, config: ConnectionConfig, transport: TransportAdapter):
        self.config = config
        self.transport = transport
        self.status = ConnectionStatus.SETTING_UP
        self.status_changed_at = datetime.now(timezone.utc)
        self.retry_delay = self.RETRY_DELAY_MIN
        self.devices: dict[str, Device] = {}
        self.scheduler = TaskScheduler(config.name)

        self._handle: MasterHandle | None = None
        self._reconnect_task: ScheduledTask | None = None
        self._check_task: ScheduledTask | None = None
        self._removed = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def handle(self) -> MasterHandle | None:
        return self._handle

    @property
    def live_handle(self) -> MasterHandle | None:
        """The handle, if it may be used for requests right now"""
        if (
            self._handle is not None
            and self._handle.connected
            and self.status == ConnectionStatus.CONNECTED
        ):
            return self._handle
        return None

    @property
    def removed(self) -> bool:
        return self._removed

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done

    # Lifecycle (external entry points)

    async def start(self) -> None:
        """Start the scheduler, restore devices from config and check connectivity"""
        self._ensure_active()
        self.scheduler.start()
        await self.scheduler.call(self._restore)
        logger.info(
            f"Connection {self.name} started ({len(self.devices)} devices)",
            extra={"connection": self.name, "device_count": len(self.devices)},
        )

    async def stop(self) -> None:
        """
        Stop polling and reconnection, release the handle and halt the scheduler.

        Waits for the job in progress (e.g. a poll cycle) to finish first.
        """
        if self.scheduler.running:
            await self.scheduler.call(self._stop)
            await self.scheduler.shutdown()
        else:
            await self._stop()
        logger.info(f"Connection {self.name} stopped", extra={"connection": self.name})

    async def restart(self) -> None:
        """Stop, then rebuild devices from config with a fresh scheduler"""
        self._ensure_active()
        await self.stop()
        self.retry_delay = self.RETRY_DELAY_MIN
        self.scheduler = TaskScheduler(self.name)
        await self.start()

    async def edit(self, transport: TransportConfig, tuning: TuningConfig) -> None:
        """
        Apply new transport/tuning settings.

        Any handle is destroyed; a running connection re-checks immediately.
        The device set is not touched.
        """
        self._ensure_active()

        async def _edit() -> None:
            await self._release_handle()
            self.config.transport = transport
            self.config.tuning = tuning
            if self.status != ConnectionStatus.STOPPED:
                self._cancel_reconnect()
                self._propagate_device_status(DeviceStatus.NOT_READY)
                self._set_status(ConnectionStatus.SETTING_UP)
                self.scheduler.run_now(self._check_connection, name="check")

        await self._run_action(_edit)

    async def remove(self) -> None:
        """Stop and discard all runtime state; the connection cannot be reused"""
        if self._removed:
            return
        await self.stop()
        for device in self.devices.values():
            device.stop_polling()
        self.devices.clear()
        self._removed = True
        logger.info(f"Connection {self.name} removed", extra={"connection": self.name})

    # Device management (external entry points)

    async def add_device(self, config: DeviceConfig) -> Device:
        self._ensure_active()

        async def _add() -> Device:
            if config.name in self.devices:
                raise ConfigError(f"device '{config.name}' already exists on {self.name}", field="name")
            device = Device(self, config)
            self.devices[config.name] = device
            self.config.devices[config.name] = config

            if self.status == ConnectionStatus.CONNECTED:
                device.start_polling()
            elif self.status == ConnectionStatus.SETTING_UP:
                # First device gives the connectivity check something to ping
                self.scheduler.run_now(self._check_connection, name="check")
            return device

        return await self._run_action(_add)

    async def edit_device(self, name: str, config: DeviceConfig) -> Device:
        """
        Apply new device settings; a different config.name renames the device.

        Points are managed with add_point/remove_point, so the device keeps
        its current point map whatever config.points holds.
        """
        self._ensure_active()

        async def _edit() -> Device:
            device = self._get_device(name)
            settings = replace(config, points=device.config.points)
            if config.name != name:
                if config.name in self.devices:
                    raise ConfigError(f"device '{config.name}' already exists on {self.name}", field="name")
                # The ping probe may change after a rename
                del self.devices[name]
                del self.config.devices[name]
                self.devices[config.name] = device
            device.apply_config(settings)
            self.config.devices[settings.name] = settings
            return device

        return await self._run_action(_edit)

    async def remove_device(self, name: str) -> None:
        self._ensure_active()

        async def _remove() -> None:
            device = self._get_device(name)
            device.stop_polling()
            device.set_status(DeviceStatus.NOT_READY)
            del self.devices[name]
            self.config.devices.pop(name, None)
            if not self.devices:
                await self._reset_to_setting_up()

        await self._run_action(_remove)

    async def add_point(self, device_name: str, config: PointConfig) -> None:
        self._ensure_active()

        async def _add() -> None:
            self._get_device(device_name).add_point(config)

        await self._run_action(_add)

    async def remove_point(self, device_name: str, point_name: str) -> None:
        self._ensure_active()

        async def _remove() -> None:
            self._get_device(device_name).remove_point(point_name)

        await self._run_action(_remove)

    def get_device(self, name: str) -> Device:
        return self._get_device(name)

    def request_check(self) -> None:
        """
        Queue a connectivity check after a poll cycle lost every run.

        Called from the worker. Only a Connected connection is re-checked;
        the other states already have a check or a retry on the way.
        """
        if self.status != ConnectionStatus.CONNECTED:
            return
        if self._check_task is not None and not self._check_task.done:
            return
        logger.info(
            f"Every poll request on {self.name} failed, checking connectivity",
            extra={"connection": self.name},
        )
        self._check_task = self.scheduler.run_now(self._check_connection, name="check")

    # Scheduler jobs

    async def _restore(self) -> None:
        self._set_status(ConnectionStatus.SETTING_UP)
        self.devices = {
            name: Device(self, device_config)
            for name, device_config in self.config.devices.items()
        }
        self.scheduler.run_now(self._check_connection, name="check")

    async def _check_connection(self) -> None:
        """Ping one device to decide whether the connection is usable"""
        if self.status == ConnectionStatus.STOPPED:
            return
        if not self.devices:
            await self._reset_to_setting_up()
            return

        probe = next(iter(self.devices.values()))

        if self._handle is None:
            self._handle = await self._open_handle()

        connected = False
        if self._handle is not None:
            try:
                logger.debug(f"Pinging slave {probe.slave_id} on {self.name} to test connectivity")
                connected = await self.transport.ping(self._handle, probe.slave_id)
            except Exception as e:
                logger.debug(f"Error during device ping on {self.name}: {e}")
            self._handle.connected = connected

        if connected:
            self._cancel_reconnect()
            self._set_status(ConnectionStatus.CONNECTED)
            self.retry_delay = self.RETRY_DELAY_MIN
            self._propagate_device_status(DeviceStatus.READY)
            for device in self.devices.values():
                device.start_polling()
            return

        self._set_status(
            ConnectionStatus.PING_FAILED
            if self._handle is not None
            else ConnectionStatus.ESTABLISHMENT_FAILED
        )
        self._propagate_device_status(DeviceStatus.NOT_READY)
        self._schedule_reconnect()

    async def _reconnect(self) -> None:
        """Scheduled reconnection attempt; stale if an action already superseded it"""
        self._reconnect_task = None
        if self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.SETTING_UP, ConnectionStatus.STOPPED):
            logger.debug(f"Discarding stale reconnection attempt on {self.name} ({self.status.value})")
            return

        await self._release_handle()
        self._set_status(ConnectionStatus.CONNECTING)
        self._handle = await self._open_handle()
        await self._check_connection()

    async def _stop(self) -> None:
        self._cancel_reconnect()
        for device in self.devices.values():
            device.stop_polling()
        self.scheduler.cancel_pending()
        await self._release_handle()
        self._propagate_device_status(DeviceStatus.NOT_READY)
        self._set_status(ConnectionStatus.STOPPED)

    # Helpers

    async def _run_action(self, action: Callable[[], Awaitable]):
        """Run an operator action on the scheduler, or inline when it is halted"""
        if self.scheduler.running:
            return await self.scheduler.call(action)
        return await action()

    async def _open_handle(self) -> MasterHandle | None:
        try:
            handle = await self.transport.open(self.config.transport, self.config.tuning)
        except GatewayError as e:
            logger.info(f"Could not establish connection {self.name}: {e.message}")
            return None
        except Exception as e:
            logger.warning(f"Error creating master for {self.name}: {e}")
            return None
        return handle

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        handle.connected = False
        try:
            await self.transport.close(handle)
        except Exception as e:
            logger.debug(f"Error destroying last master of {self.name}: {e}")

    async def _reset_to_setting_up(self) -> None:
        """Park an emptied connection: no handle, no retry, wait for a device"""
        if self.status in (ConnectionStatus.SETTING_UP, ConnectionStatus.STOPPED):
            return
        self._cancel_reconnect()
        await self._release_handle()
        self._set_status(ConnectionStatus.SETTING_UP)

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        self._reconnect_task = self.scheduler.run_later(
            self.retry_delay,
            self._reconnect,
            name="reconnect",
        )
        logger.info(
            f"Connection {self.name} {self.status.value.lower()}, retrying in {self.retry_delay}s",
            extra={"connection": self.name, "retry_delay": self.retry_delay},
        )
        self.retry_delay = min(self.retry_delay + self.RETRY_DELAY_STEP, self.RETRY_DELAY_MAX)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    def _set_status(self, status: ConnectionStatus) -> None:
        if status != self.status:
            log_status_change(logger, "connection", self.name, self.status, status)
            self.status_changed_at = datetime.now(timezone.utc)
        self.status = status

    def _propagate_device_status(self, status: DeviceStatus) -> None:
        for device in self.devices.values():
            device.set_status(status)

    def _get_device(self, name: str) -> Device:
        device = self.devices.get(name)
        if device is None:
            raise DeviceError(f"unknown device '{name}' on {self.name}", device_name=name)
        return device

    def _ensure_active(self) -> None:
        if self._removed:
            raise GatewayError(f"connection {self.name} has been removed", recoverable=False)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "status_changed_at": self.status_changed_at.isoformat(),
            "retry_delay": self.retry_delay,
            "reconnect_pending": self.reconnect_pending,
            "handle": self._handle.description if self._handle else None,
            "scheduler": self.scheduler.get_stats(),
            "devices": {name: device.to_dict() for name, device in self.devices.items()},
        }
