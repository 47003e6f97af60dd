from __future__ import annotations

import asyncio

import pytest

from modbus_gateway.common.config import DeviceConfig, PointConfig, PointDataType, RegisterKind
from modbus_gateway.common.exceptions import WriteError
from modbus_gateway.services.gateway.connection import Connection, ConnectionStatus
from modbus_gateway.services.gateway.device import DeviceStatus
from fakes import FakeTransport, holding, make_connection, make_device, wait_for

REGISTERS = {1: 10, 2: 20, 3: 30, 7: 70, 8: 80}


async def _settle(connection: Connection) -> None:
    await connection.scheduler.call(lambda: asyncio.sleep(0))


async def _start(transport: FakeTransport, device: DeviceConfig, **tuning) -> Connection:
    connection = Connection(make_connection(devices=[device], **tuning), transport)
    await connection.start()
    await _settle(connection)
    if connection.status == ConnectionStatus.CONNECTED:
        await wait_for(lambda: connection.devices[device.name].poll_count >= 1)
        await _settle(connection)
    return connection


def _values(connection: Connection, device: str = "meter") -> dict:
    return {name: point.value for name, point in connection.devices[device].points.items()}


def _with_writable_points(device: DeviceConfig) -> DeviceConfig:
    device.points["setpoint"] = holding("setpoint", 100, writable=True)
    device.points["limit"] = holding("limit", 102, datatype=PointDataType.FLOAT32, writable=True)
    device.points["enable"] = PointConfig(
        name="enable",
        address=5,
        kind=RegisterKind.COIL,
        datatype=PointDataType.BOOL,
        writable=True,
    )
    return device


def test_poll_reads_contiguous_batches() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.registers.update(REGISTERS)
        connection = await _start(transport, make_device())

        assert transport.reads == [
            (RegisterKind.HOLDING_REGISTER, 1, 3),
            (RegisterKind.HOLDING_REGISTER, 7, 2),
        ]
        assert _values(connection) == {"p1": 10, "p2": 20, "p3": 30, "p7": 70, "p8": 80}
        assert connection.devices["meter"].status == DeviceStatus.READY
        await connection.stop()

    asyncio.run(scenario())


def test_poll_bridges_gaps_when_not_contiguous_only() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.registers.update(REGISTERS)
        connection = await _start(transport, make_device(contiguous_batch_requests_only=False))

        assert transport.reads == [(RegisterKind.HOLDING_REGISTER, 1, 8)]
        assert _values(connection)["p8"] == 80
        await connection.stop()

    asyncio.run(scenario())


def test_poll_without_batching_reads_each_point() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.registers.update(REGISTERS)
        connection = await _start(transport, make_device(use_batch_polling=False))

        assert len(transport.reads) == 5
        assert all(count == 1 for _, _, count in transport.reads)
        await connection.stop()

    asyncio.run(scenario())


def test_failed_run_zeroes_points_when_configured() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.registers.update(REGISTERS)
        transport.fail_reads_at = {7}
        connection = await _start(transport, make_device(zero_on_failed_poll=True))
        device = connection.devices["meter"]

        assert _values(connection) == {"p1": 10, "p2": 20, "p3": 30, "p7": 0, "p8": 0}
        assert device.points["p7"].last_error is not None
        assert device.status == DeviceStatus.NOT_READY
        assert device.failed_poll_count == 1
        assert connection.status == ConnectionStatus.CONNECTED
        await connection.stop()

    asyncio.run(scenario())


def test_failed_run_keeps_last_values() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.registers.update(REGISTERS)
        connection = await _start(transport, make_device())
        device = connection.devices["meter"]

        transport.registers.update({1: 11, 7: 71})
        transport.fail_reads_at = {1}
        assert await connection.scheduler.call(device.poll) is False

        values = _values(connection)
        assert values["p1"] == 10
        assert values["p7"] == 71
        assert device.status == DeviceStatus.NOT_READY
        assert connection.status == ConnectionStatus.CONNECTED
        assert not connection.reconnect_pending

        transport.fail_reads_at = set()
        assert await connection.scheduler.call(device.poll) is True
        assert _values(connection)["p1"] == 11
        assert device.status == DeviceStatus.READY
        await connection.stop()

    asyncio.run(scenario())


def test_poll_without_live_handle_fails_immediately() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.ping_ok = False
        connection = await _start(transport, make_device(zero_on_failed_poll=True))
        device = connection.devices["meter"]

        assert connection.status == ConnectionStatus.PING_FAILED
        assert await connection.scheduler.call(device.poll) is False
        assert transport.reads == []
        assert set(_values(connection).values()) == {0}
        assert device.status == DeviceStatus.NOT_READY
        await connection.stop()

    asyncio.run(scenario())


def test_write_point_encodes_and_updates_value() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        connection = await _start(transport, _with_writable_points(make_device()))
        device = connection.devices["meter"]

        assert await device.write_point("setpoint", 55) == 55
        assert await device.write_point("limit", 1.5) == 1.5
        assert await device.write_point("enable", True) is True

        assert transport.writes == [
            ("registers", 100, [55], False),
            ("registers", 102, [0x3FC0, 0x0000], False),
            ("coils", 5, [True], False),
        ]
        assert transport.registers[100] == 55
        assert device.points["setpoint"].value == 55
        await connection.stop()

    asyncio.run(scenario())


def test_write_uses_multiple_commands_when_configured() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        connection = await _start(
            transport,
            _with_writable_points(make_device()),
            use_multiple_write_commands_only=True,
        )

        await connection.devices["meter"].write_point("setpoint", 7)
        assert transport.writes == [("registers", 100, [7], True)]
        await connection.stop()

    asyncio.run(scenario())


def test_write_waits_discard_delay() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        connection = await _start(
            transport,
            _with_writable_points(make_device()),
            discard_data_delay_ms=30,
        )
        loop = asyncio.get_running_loop()

        started = loop.time()
        await connection.devices["meter"].write_point("setpoint", 1)
        assert loop.time() - started >= 0.025
        await connection.stop()

    asyncio.run(scenario())


def test_rejected_writes() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        connection = await _start(
            transport,
            _with_writable_points(make_device()),
            max_write_register_count=1,
        )
        device = connection.devices["meter"]

        with pytest.raises(WriteError):
            await device.write_point("p1", 5)
        with pytest.raises(WriteError):
            await device.write_point("missing", 5)
        with pytest.raises(WriteError):
            await device.write_point("setpoint", 70000)
        with pytest.raises(WriteError):
            await device.write_point("limit", 1.5)

        assert transport.writes == []
        await connection.stop()

    asyncio.run(scenario())


def test_write_requires_live_connection() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.open_fails = True
        connection = await _start(transport, _with_writable_points(make_device()))

        assert connection.status == ConnectionStatus.ESTABLISHMENT_FAILED
        with pytest.raises(WriteError):
            await connection.devices["meter"].write_point("setpoint", 1)
        await connection.stop()

    asyncio.run(scenario())


def test_losing_every_run_hands_over_to_reconnection() -> None:
    async def scenario() -> None:
        transport = FakeTransport()
        transport.registers.update(REGISTERS)
        connection = await _start(transport, make_device())
        device = connection.devices["meter"]
        assert connection.status == ConnectionStatus.CONNECTED

        transport.fail_reads_at = {1, 7}
        transport.ping_ok = False
        assert await connection.scheduler.call(device.poll) is False
        await _settle(connection)

        assert connection.status == ConnectionStatus.PING_FAILED
        assert connection.live_handle is None
        assert connection.reconnect_pending
        assert device.status == DeviceStatus.NOT_READY

        transport.fail_reads_at = set()
        transport.ping_ok = True
        await connection.scheduler.call(connection._reconnect)
        assert connection.status == ConnectionStatus.CONNECTED
        assert await connection.scheduler.call(device.poll) is True
        await connection.stop()

    asyncio.run(scenario())
