"""
Gateway Service - Modbus Acquisition

Responsible for:
- Restoring connections from the persisted record
- Configuration actions (add/edit/stop/restart/remove/duplicate connections,
  add/edit/remove devices and points, point writes)
- Persisting the record after every change
- Health/status HTTP endpoints
"""

import asyncio
import signal
from dataclasses import replace
from datetime import datetime, timezone

from aiohttp import web

from modbus_gateway.common.config import (
    ConnectionConfig,
    DeviceConfig,
    GatewaySettings,
    PointConfig,
    TransportConfig,
    TuningConfig,
    validate_device,
    validate_point,
    validate_transport,
    validate_tuning,
)
from modbus_gateway.common.exceptions import ConfigError
from modbus_gateway.common.logging_setup import get_service_logger
from .connection import Connection, ConnectionStatus
from .device import Device
from .points import PointValue
from .store import ConfigStore
from .transport import PymodbusTransport, TransportAdapter

logger = get_service_logger("gateway")


class GatewayService:
    """
    Gateway Service

    Owns every Connection and the record store. All configuration actions
    are coroutines; invalid input raises ConfigError before any state
    changes.
    """

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        transport: TransportAdapter | None = None,
        store: ConfigStore | None = None,
    ):
        self.settings = settings or GatewaySettings()
        self.transport = transport or PymodbusTransport()
        self.store = store or ConfigStore(self.settings.config_path)

        self.connections: dict[str, Connection] = {}
        self._start_time = datetime.now(timezone.utc)

        # Health server
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self, health_server: bool = True) -> None:
        """Restore and start every connection in the record"""
        logger.info("Starting Gateway Service")
        self._running = True

        for name, config in self.store.load().items():
            connection = Connection(config, self.transport)
            self.connections[name] = connection
            await connection.start()

        if health_server:
            await self._start_health_server()

        logger.info(
            f"Gateway Service started ({len(self.connections)} connections)",
            extra={"connection_count": len(self.connections)},
        )

    async def run(self, health_server: bool = True) -> None:
        """Start, then wait for SIGINT/SIGTERM"""
        await self.start(health_server=health_server)
        self._setup_signal_handlers()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop every connection and the health server"""
        logger.info("Stopping Gateway Service")
        self._running = False

        for connection in self.connections.values():
            await connection.stop()

        await self._stop_health_server()
        logger.info("Gateway Service stopped")

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # Connection actions

    async def add_connection(self, config: ConnectionConfig) -> Connection:
        if not config.name:
            raise ConfigError("connection name is required", field="name")
        if config.name in self.connections:
            raise ConfigError(f"connection '{config.name}' already exists", field="name")
        validate_transport(config.transport)
        validate_tuning(config.tuning)
        for device in config.devices.values():
            self._validate_device(device)

        connection = Connection(config, self.transport)
        self.connections[config.name] = connection
        await connection.start()
        self.save()
        return connection

    async def edit_connection(
        self,
        name: str,
        transport: TransportConfig | None = None,
        tuning: TuningConfig | None = None,
        new_name: str | None = None,
    ) -> Connection:
        """
        Edit transport/tuning settings and/or rename a connection.

        A rename deep-copies the connection (devices and points included)
        under the new name, stops the original, starts the copy if the
        original was running (otherwise it stays Stopped) and then removes
        the original.
        """
        connection = self._get_connection(name)
        transport = transport or connection.config.transport
        tuning = tuning or connection.config.tuning
        validate_transport(transport)
        validate_tuning(tuning)

        if new_name and new_name != name:
            if new_name in self.connections:
                raise ConfigError(f"connection '{new_name}' already exists", field="name")
            connection = await self._rename(connection, new_name, transport, tuning)
        else:
            await connection.edit(transport, tuning)

        self.save()
        return connection

    async def stop_connection(self, name: str) -> None:
        await self._get_connection(name).stop()

    async def restart_connection(self, name: str) -> None:
        await self._get_connection(name).restart()

    async def remove_connection(self, name: str) -> None:
        connection = self._get_connection(name)
        await connection.remove()
        del self.connections[name]
        self.save()
        logger.info(f"Removed connection {name}")

    async def duplicate_connection(self, name: str, new_name: str) -> Connection:
        """Start a copy of a connection under a new name; the original keeps running"""
        source = self._get_connection(name)
        if not new_name:
            raise ConfigError("connection name is required", field="name")
        if new_name in self.connections:
            raise ConfigError(f"connection '{new_name}' already exists", field="name")

        connection = Connection(source.config.copy(new_name), self.transport)
        self.connections[new_name] = connection
        await connection.start()
        self.save()
        return connection

    async def _rename(
        self,
        connection: Connection,
        new_name: str,
        transport: TransportConfig,
        tuning: TuningConfig,
    ) -> Connection:
        old_name = connection.name
        was_running = connection.status != ConnectionStatus.STOPPED

        config = connection.config.copy(new_name)
        config.transport = transport.copy()
        config.tuning = replace(tuning)
        renamed = Connection(config, self.transport)

        # The original releases its handle before the copy opens one
        await connection.stop()
        self.connections[new_name] = renamed
        if was_running:
            await renamed.start()
        else:
            await renamed.stop()

        await connection.remove()
        del self.connections[old_name]
        logger.info(f"Renamed connection {old_name} -> {new_name}")
        return renamed

    # Device actions

    async def add_device(self, connection_name: str, config: DeviceConfig) -> Device:
        connection = self._get_connection(connection_name)
        self._validate_device(config)
        device = await connection.add_device(config)
        self.save()
        return device

    async def edit_device(self, connection_name: str, device_name: str, config: DeviceConfig) -> Device:
        connection = self._get_connection(connection_name)
        self._validate_device(config)
        device = await connection.edit_device(device_name, config)
        self.save()
        return device

    async def remove_device(self, connection_name: str, device_name: str) -> None:
        await self._get_connection(connection_name).remove_device(device_name)
        self.save()

    async def add_point(self, connection_name: str, device_name: str, config: PointConfig) -> None:
        connection = self._get_connection(connection_name)
        validate_point(config)
        await connection.add_point(device_name, config)
        self.save()

    async def remove_point(self, connection_name: str, device_name: str, point_name: str) -> None:
        await self._get_connection(connection_name).remove_point(device_name, point_name)
        self.save()

    async def write_point(
        self,
        connection_name: str,
        device_name: str,
        point_name: str,
        value: PointValue,
    ) -> PointValue:
        device = self._get_connection(connection_name).get_device(device_name)
        return await device.write_point(point_name, value)

    # Status

    def get_status(self) -> dict:
        return {name: connection.to_dict() for name, connection in self.connections.items()}

    def get_point_values(self) -> dict:
        return {
            conn_name: {
                dev_name: {name: point.value for name, point in device.points.items()}
                for dev_name, device in connection.devices.items()
            }
            for conn_name, connection in self.connections.items()
        }

    def save(self) -> None:
        self.store.save({name: connection.config for name, connection in self.connections.items()})

    # Helpers

    def _get_connection(self, name: str) -> Connection:
        connection = self.connections.get(name)
        if connection is None:
            raise ConfigError(f"unknown connection '{name}'", field="name")
        return connection

    def _validate_device(self, config: DeviceConfig) -> None:
        validate_device(config)
        for point in config.points.values():
            validate_point(point)

    # Health server

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_app = web.Application()
        self._health_app.router.add_get("/health", self._health_handler)
        self._health_app.router.add_get("/status", self._status_handler)
        self._health_app.router.add_get("/points", self._points_handler)

        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, self.settings.health_host, self.settings.health_port)
        await site.start()

        logger.info(f"Health server started on port {self.settings.health_port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        connected = sum(
            1 for connection in self.connections.values()
            if connection.status == ConnectionStatus.CONNECTED
        )

        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "gateway",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "connections": len(self.connections),
            "connected": connected,
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.get_status())

    async def _points_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.get_point_values())
