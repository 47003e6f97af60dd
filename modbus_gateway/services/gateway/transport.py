"""
Modbus Transport Adapter

The seam between the acquisition core and the Modbus wire library.
TransportAdapter defines the calls a connection and its devices make;
PymodbusTransport implements them over pymodbus async clients for TCP,
UDP, serial RTU and serial ASCII.

Every call either returns a result or raises TransportError.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pymodbus import FramerType
from pymodbus.client import AsyncModbusSerialClient, AsyncModbusTcpClient, AsyncModbusUdpClient
from pymodbus.exceptions import ModbusException

from modbus_gateway.common.config import (
    IpParams,
    Parity,
    RegisterKind,
    SerialParams,
    TransportConfig,
    TransportKind,
    TuningConfig,
)
from modbus_gateway.common.exceptions import ConfigError, TransportError
from modbus_gateway.common.logging_setup import get_service_logger

logger = get_service_logger("transport")

# Register read to probe a slave; any reply, even an exception response, means it is alive
PING_REGISTER = 0

_PARITY_CODES = {
    Parity.NONE: "N",
    Parity.ODD: "O",
    Parity.EVEN: "E",
    Parity.MARK: "M",
    Parity.SPACE: "S",
}


@dataclass
class MasterHandle:
    """An opened master for one connection"""
    transport: TransportConfig
    tuning: TuningConfig
    client: Any
    connected: bool = False
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_request_at: float = 0.0

    @property
    def description(self) -> str:
        params = self.transport.params
        if isinstance(params, SerialParams):
            return f"{self.transport.kind.value}:{params.port}@{params.baud_rate}"
        return f"{self.transport.kind.value}:{params.host}:{params.port}"


class TransportAdapter(ABC):
    """Operations the acquisition core needs from a Modbus master"""

    @abstractmethod
    async def open(self, transport: TransportConfig, tuning: TuningConfig) -> MasterHandle:
        """Open a master; raises TransportError if it cannot be established"""

    @abstractmethod
    async def close(self, handle: MasterHandle) -> None:
        """Release a master"""

    @abstractmethod
    async def ping(self, handle: MasterHandle, slave_id: int) -> bool:
        """Return True if the slave answers"""

    @abstractmethod
    async def read_bits(
        self,
        handle: MasterHandle,
        slave_id: int,
        kind: RegisterKind,
        start: int,
        count: int,
    ) -> list[bool]:
        """Read coils or discrete inputs"""

    @abstractmethod
    async def read_registers(
        self,
        handle: MasterHandle,
        slave_id: int,
        kind: RegisterKind,
        start: int,
        count: int,
    ) -> list[int]:
        """Read holding or input registers"""

    @abstractmethod
    async def write_registers(
        self,
        handle: MasterHandle,
        slave_id: int,
        start: int,
        values: list[int],
        force_multiple: bool = False,
    ) -> None:
        """Write holding registers"""

    @abstractmethod
    async def write_coils(
        self,
        handle: MasterHandle,
        slave_id: int,
        start: int,
        values: list[bool],
        force_multiple: bool = False,
    ) -> None:
        """Write coils"""


class PymodbusTransport(TransportAdapter):
    """
    Transport adapter over pymodbus async clients.

    Handles:
    - Modbus TCP and UDP
    - Serial RTU and ASCII (pyserial)
    - Custom message frame spacing on serial lines
    """

    async def open(self, transport: TransportConfig, tuning: TuningConfig) -> MasterHandle:
        client = self._create_client(transport, tuning)
        handle = MasterHandle(transport=transport, tuning=tuning, client=client)

        try:
            await client.connect()
        except (ModbusException, OSError) as e:
            client.close()
            raise TransportError(f"could not open {handle.description}: {e}")

        if not client.connected:
            client.close()
            raise TransportError(f"could not open {handle.description}")

        logger.debug(f"Opened master {handle.description}")
        return handle

    async def close(self, handle: MasterHandle) -> None:
        handle.connected = False
        handle.client.close()
        logger.debug(f"Closed master {handle.description}")

    async def ping(self, handle: MasterHandle, slave_id: int) -> bool:
        await self._await_spacing(handle)
        try:
            await handle.client.read_holding_registers(
                address=PING_REGISTER,
                count=1,
                device_id=slave_id,
            )
        except (ModbusException, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Ping of slave {slave_id} via {handle.description} failed: {e}")
            return False
        finally:
            handle.last_request_at = asyncio.get_running_loop().time()
        return True

    async def read_bits(
        self,
        handle: MasterHandle,
        slave_id: int,
        kind: RegisterKind,
        start: int,
        count: int,
    ) -> list[bool]:
        if kind == RegisterKind.COIL:
            method = handle.client.read_coils
        elif kind == RegisterKind.DISCRETE_INPUT:
            method = handle.client.read_discrete_inputs
        else:
            raise ValueError(f"{kind.value} is not a bit table")

        response = await self._request(handle, slave_id, method, address=start, count=count)
        return list(response.bits[:count])

    async def read_registers(
        self,
        handle: MasterHandle,
        slave_id: int,
        kind: RegisterKind,
        start: int,
        count: int,
    ) -> list[int]:
        if kind == RegisterKind.HOLDING_REGISTER:
            method = handle.client.read_holding_registers
        elif kind == RegisterKind.INPUT_REGISTER:
            method = handle.client.read_input_registers
        else:
            raise ValueError(f"{kind.value} is not a register table")

        response = await self._request(handle, slave_id, method, address=start, count=count)
        registers = list(response.registers)
        if len(registers) < count:
            raise TransportError(
                f"short response: expected {count} registers, got {len(registers)}",
                slave_id=slave_id,
            )
        return registers[:count]

    async def write_registers(
        self,
        handle: MasterHandle,
        slave_id: int,
        start: int,
        values: list[int],
        force_multiple: bool = False,
    ) -> None:
        if len(values) == 1 and not force_multiple:
            await self._request(
                handle, slave_id, handle.client.write_register, address=start, value=values[0]
            )
        else:
            await self._request(
                handle, slave_id, handle.client.write_registers, address=start, values=values
            )

    async def write_coils(
        self,
        handle: MasterHandle,
        slave_id: int,
        start: int,
        values: list[bool],
        force_multiple: bool = False,
    ) -> None:
        if len(values) == 1 and not force_multiple:
            await self._request(
                handle, slave_id, handle.client.write_coil, address=start, value=values[0]
            )
        else:
            await self._request(
                handle, slave_id, handle.client.write_coils, address=start, values=values
            )

    def _create_client(self, transport: TransportConfig, tuning: TuningConfig) -> Any:
        """Build the pymodbus client for the transport kind"""
        timeout = tuning.timeout_ms / 1000
        params = transport.params

        if transport.kind in (TransportKind.TCP, TransportKind.UDP):
            if not isinstance(params, IpParams):
                raise ConfigError(f"{transport.kind.value} transport requires host/port parameters")
            client_cls = AsyncModbusTcpClient if transport.kind == TransportKind.TCP else AsyncModbusUdpClient
            return client_cls(
                host=params.host,
                port=params.port,
                framer=FramerType.SOCKET,
                timeout=timeout,
                retries=tuning.retries,
            )

        if transport.kind in (TransportKind.RTU, TransportKind.ASCII):
            if not isinstance(params, SerialParams):
                raise ConfigError(f"{transport.kind.value} transport requires serial parameters")
            if params.send_requests_all_at_once:
                logger.debug(f"Serial port {params.port}: requests are always sent as one write")
            if params.use_custom_spacing and params.character_spacing:
                logger.debug(
                    f"Serial port {params.port}: character spacing is managed by the serial driver"
                )
            return AsyncModbusSerialClient(
                port=params.port,
                framer=FramerType.RTU if transport.kind == TransportKind.RTU else FramerType.ASCII,
                baudrate=params.baud_rate,
                bytesize=params.data_bits,
                stopbits=params.stop_bits,
                parity=_PARITY_CODES[params.parity],
                timeout=timeout,
                retries=tuning.retries,
            )

        raise ConfigError(f"unsupported transport type '{transport.kind}'")

    async def _await_spacing(self, handle: MasterHandle) -> None:
        """Honor a custom message frame spacing between serial requests"""
        params = handle.transport.params
        if not isinstance(params, SerialParams):
            return
        if not params.use_custom_spacing or params.message_frame_spacing <= 0:
            return

        loop = asyncio.get_running_loop()
        wait = handle.last_request_at + params.message_frame_spacing / 1_000_000 - loop.time()
        if wait > 0:
            await asyncio.sleep(wait)

    async def _request(self, handle: MasterHandle, slave_id: int, method, **kwargs) -> Any:
        """Issue one request, mapping every failure to TransportError"""
        await self._await_spacing(handle)
        try:
            response = await method(device_id=slave_id, **kwargs)
        except ModbusException as e:
            raise TransportError(f"Modbus exception: {e}", slave_id=slave_id)
        except asyncio.TimeoutError:
            raise TransportError("request timeout", slave_id=slave_id)
        except OSError as e:
            raise TransportError(str(e), slave_id=slave_id)
        finally:
            handle.last_request_at = asyncio.get_running_loop().time()

        if response.isError():
            raise TransportError(f"Modbus error: {response}", slave_id=slave_id)
        return response
