"""
Configuration Dataclasses

Type-safe configuration structures for connections, devices and points.
The persisted record is a nested dict (connections -> devices -> points);
the load_* helpers turn it into dataclasses, filling defaults for any
attribute missing from older records.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .exceptions import ConfigError
from .logging_setup import get_service_logger

logger = get_service_logger("config")

# Protocol limits (Modbus application protocol v1.1b3)
MAX_SLAVE_ID = 247
MAX_ADDRESS = 65535
MAX_READ_BIT_COUNT = 2000
MAX_READ_REGISTER_COUNT = 125
MAX_WRITE_REGISTER_COUNT = 123


class TransportKind(str, Enum):
    """Supported transports"""
    TCP = "tcp"
    UDP = "udp"
    RTU = "rtu"
    ASCII = "ascii"

    @property
    def is_serial(self) -> bool:
        return self in (TransportKind.RTU, TransportKind.ASCII)


class Parity(str, Enum):
    """Serial parity"""
    NONE = "NONE"
    ODD = "ODD"
    EVEN = "EVEN"
    MARK = "MARK"
    SPACE = "SPACE"


class RegisterKind(str, Enum):
    """Modbus data tables"""
    COIL = "coil"
    DISCRETE_INPUT = "discrete_input"
    HOLDING_REGISTER = "holding_register"
    INPUT_REGISTER = "input_register"

    @property
    def is_bit(self) -> bool:
        return self in (RegisterKind.COIL, RegisterKind.DISCRETE_INPUT)

    @property
    def is_writable(self) -> bool:
        return self in (RegisterKind.COIL, RegisterKind.HOLDING_REGISTER)


class PointDataType(str, Enum):
    """Point value types"""
    BOOL = "bool"
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @property
    def register_count(self) -> int:
        """Number of 16-bit registers (or bits, for BOOL) a value occupies"""
        return {
            PointDataType.BOOL: 1,
            PointDataType.UINT16: 1,
            PointDataType.INT16: 1,
            PointDataType.UINT32: 2,
            PointDataType.INT32: 2,
            PointDataType.FLOAT32: 2,
            PointDataType.FLOAT64: 4,
        }[self]


@dataclass
class IpParams:
    """TCP/UDP endpoint"""
    host: str
    port: int = 502


@dataclass
class SerialParams:
    """Serial line settings (RTU and ASCII)"""
    port: str
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: Parity = Parity.NONE
    send_requests_all_at_once: bool = False
    use_custom_spacing: bool = False
    message_frame_spacing: int = 0  # microseconds
    character_spacing: int = 0  # microseconds


@dataclass
class TransportConfig:
    """Tagged transport variant: kind selects which params apply"""
    kind: TransportKind
    params: IpParams | SerialParams

    def copy(self) -> "TransportConfig":
        return TransportConfig(kind=self.kind, params=replace(self.params))


@dataclass
class TuningConfig:
    """Master tuning shared by all transports"""
    timeout_ms: int = 500
    retries: int = 2
    max_read_bit_count: int = MAX_READ_BIT_COUNT
    max_read_register_count: int = MAX_READ_REGISTER_COUNT
    max_write_register_count: int = 120
    discard_data_delay_ms: int = 0
    use_multiple_write_commands_only: bool = False


@dataclass
class PointConfig:
    """A single register or bit mapped to an application point"""
    name: str
    address: int
    kind: RegisterKind = RegisterKind.HOLDING_REGISTER
    datatype: PointDataType = PointDataType.UINT16
    scale: float = 1.0
    writable: bool = False

    @property
    def register_count(self) -> int:
        return self.datatype.register_count

    def copy(self) -> "PointConfig":
        return replace(self)


@dataclass
class DeviceConfig:
    """Slave device configuration"""
    name: str
    slave_id: int = 1
    polling_interval: float = 5
    zero_on_failed_poll: bool = False
    use_batch_polling: bool = True
    contiguous_batch_requests_only: bool = True
    points: dict[str, PointConfig] = field(default_factory=dict)

    def copy(self, name: str | None = None) -> "DeviceConfig":
        return replace(
            self,
            name=name or self.name,
            points={key: point.copy() for key, point in self.points.items()},
        )


@dataclass
class ConnectionConfig:
    """Connection configuration including its devices"""
    name: str
    transport: TransportConfig
    tuning: TuningConfig = field(default_factory=TuningConfig)
    devices: dict[str, DeviceConfig] = field(default_factory=dict)

    def copy(self, name: str | None = None) -> "ConnectionConfig":
        """Deep copy, optionally under a new name"""
        return ConnectionConfig(
            name=name or self.name,
            transport=self.transport.copy(),
            tuning=replace(self.tuning),
            devices={key: device.copy() for key, device in self.devices.items()},
        )


@dataclass
class GatewaySettings:
    """Process-level settings (environment driven)"""
    config_path: str = "/etc/modbus-gateway/connections.yaml"
    health_host: str = "127.0.0.1"
    health_port: int = 8090
    log_level: str = "INFO"


# Validation helpers

def _require_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a number", field=field_name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{field_name} must be a number, got {value!r}", field=field_name)


def _require_range(value: int, low: int, high: int, field_name: str) -> int:
    if not low <= value <= high:
        raise ConfigError(
            f"{field_name} must be between {low} and {high}, got {value}",
            field=field_name,
        )
    return value


def _require_enum(enum_cls: type[Enum], value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower() if enum_cls is not Parity else str(value).upper())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigError(
            f"invalid {field_name} '{value}' (expected one of: {allowed})",
            field=field_name,
        )


def validate_transport(transport: TransportConfig) -> None:
    """Check that params match the transport kind and are in range"""
    if transport.kind.is_serial:
        if not isinstance(transport.params, SerialParams):
            raise ConfigError(f"{transport.kind.value} transport requires serial parameters")
        params = transport.params
        if not params.port:
            raise ConfigError("comm port id is required", field="port")
        if params.baud_rate <= 0:
            raise ConfigError("baud rate must be positive", field="baud_rate")
        _require_range(params.data_bits, 5, 8, "data_bits")
        _require_range(params.stop_bits, 1, 2, "stop_bits")
        if params.message_frame_spacing < 0 or params.character_spacing < 0:
            raise ConfigError("spacing must not be negative")
    else:
        if not isinstance(transport.params, IpParams):
            raise ConfigError(f"{transport.kind.value} transport requires host/port parameters")
        if not transport.params.host:
            raise ConfigError("host is required", field="host")
        _require_range(transport.params.port, 1, 65535, "port")


def validate_tuning(tuning: TuningConfig) -> None:
    if tuning.timeout_ms <= 0:
        raise ConfigError("timeout must be positive", field="timeout_ms")
    if tuning.retries < 0:
        raise ConfigError("retries must not be negative", field="retries")
    _require_range(tuning.max_read_bit_count, 1, MAX_READ_BIT_COUNT, "max_read_bit_count")
    _require_range(
        tuning.max_read_register_count, 1, MAX_READ_REGISTER_COUNT, "max_read_register_count"
    )
    _require_range(
        tuning.max_write_register_count, 1, MAX_WRITE_REGISTER_COUNT, "max_write_register_count"
    )
    if tuning.discard_data_delay_ms < 0:
        raise ConfigError("discard data delay must not be negative", field="discard_data_delay_ms")


def validate_device(device: DeviceConfig) -> None:
    if not device.name:
        raise ConfigError("device name is required", field="name")
    _require_range(device.slave_id, 1, MAX_SLAVE_ID, "slave_id")
    if device.polling_interval <= 0:
        raise ConfigError("polling interval must be positive", field="polling_interval")


def validate_point(point: PointConfig) -> None:
    if not point.name:
        raise ConfigError("point name is required", field="name")
    _require_range(point.address, 0, MAX_ADDRESS, "address")
    if point.kind.is_bit != (point.datatype == PointDataType.BOOL):
        raise ConfigError(
            f"datatype {point.datatype.value} is not valid for {point.kind.value}",
            field="datatype",
        )
    if point.address + point.register_count - 1 > MAX_ADDRESS:
        raise ConfigError("point extends past the end of the address space", field="address")
    if point.writable and not point.kind.is_writable:
        raise ConfigError(f"{point.kind.value} points are read-only", field="writable")


# Loaders from the persisted record

def load_transport_config(data: dict) -> TransportConfig:
    """Load the transport variant; raises ConfigError on invalid input"""
    kind = _require_enum(TransportKind, data.get("kind"), "transport type")

    if kind.is_serial:
        params = SerialParams(
            port=str(data.get("port", "")),
            baud_rate=_require_int(data.get("baud_rate", 9600), "baud_rate"),
            data_bits=_require_int(data.get("data_bits", 8), "data_bits"),
            stop_bits=_require_int(data.get("stop_bits", 1), "stop_bits"),
            parity=_require_enum(Parity, data.get("parity", "NONE"), "parity"),
            send_requests_all_at_once=bool(data.get("send_requests_all_at_once", False)),
            use_custom_spacing=bool(data.get("use_custom_spacing", False)),
            message_frame_spacing=_require_int(
                data.get("message_frame_spacing", 0), "message_frame_spacing"
            ),
            character_spacing=_require_int(data.get("character_spacing", 0), "character_spacing"),
        )
    else:
        params = IpParams(
            host=str(data.get("host", "")),
            port=_require_int(data.get("port", 502), "port"),
        )

    transport = TransportConfig(kind=kind, params=params)
    validate_transport(transport)
    return transport


def load_tuning_config(data: dict) -> TuningConfig:
    defaults = TuningConfig()
    tuning = TuningConfig(
        timeout_ms=_require_int(data.get("timeout_ms", defaults.timeout_ms), "timeout_ms"),
        retries=_require_int(data.get("retries", defaults.retries), "retries"),
        max_read_bit_count=_require_int(
            data.get("max_read_bit_count", defaults.max_read_bit_count), "max_read_bit_count"
        ),
        max_read_register_count=_require_int(
            data.get("max_read_register_count", defaults.max_read_register_count),
            "max_read_register_count",
        ),
        max_write_register_count=_require_int(
            data.get("max_write_register_count", defaults.max_write_register_count),
            "max_write_register_count",
        ),
        discard_data_delay_ms=_require_int(
            data.get("discard_data_delay_ms", defaults.discard_data_delay_ms),
            "discard_data_delay_ms",
        ),
        use_multiple_write_commands_only=bool(
            data.get("use_multiple_write_commands_only", defaults.use_multiple_write_commands_only)
        ),
    )
    validate_tuning(tuning)
    return tuning


def load_point_config(name: str, data: dict) -> PointConfig:
    kind = _require_enum(RegisterKind, data.get("kind", "holding_register"), "kind")
    default_type = PointDataType.BOOL if kind.is_bit else PointDataType.UINT16
    point = PointConfig(
        name=name,
        address=_require_int(data.get("address"), "address"),
        kind=kind,
        datatype=_require_enum(PointDataType, data.get("datatype", default_type), "datatype"),
        scale=float(data.get("scale", 1.0)),
        writable=bool(data.get("writable", False)),
    )
    validate_point(point)
    return point


def load_device_config(name: str, data: dict) -> DeviceConfig:
    """Load a device record; invalid points are dropped with a warning"""
    points: dict[str, PointConfig] = {}
    for point_name, point_data in (data.get("points") or {}).items():
        try:
            points[point_name] = load_point_config(point_name, point_data or {})
        except ConfigError as e:
            logger.warning(f"Skipping point {name}.{point_name}: {e.message}")

    try:
        polling_interval = float(data.get("polling_interval", 5))
    except (TypeError, ValueError):
        raise ConfigError("polling interval must be a number", field="polling_interval")

    device = DeviceConfig(
        name=name,
        slave_id=_require_int(data.get("slave_id", 1), "slave_id"),
        polling_interval=polling_interval,
        zero_on_failed_poll=bool(data.get("zero_on_failed_poll", False)),
        use_batch_polling=bool(data.get("use_batch_polling", True)),
        contiguous_batch_requests_only=bool(data.get("contiguous_batch_requests_only", True)),
        points=points,
    )
    validate_device(device)
    return device


def load_connection_config(name: str, data: dict) -> ConnectionConfig:
    """
    Load a connection record with its devices.

    Device records missing a slave id or polling interval are dropped,
    as are records that fail validation; the connection itself must be
    valid or ConfigError is raised.
    """
    transport = load_transport_config(data.get("transport") or {})
    tuning = load_tuning_config(data)

    devices: dict[str, DeviceConfig] = {}
    for device_name, device_data in (data.get("devices") or {}).items():
        device_data = device_data or {}
        if "slave_id" not in device_data or "polling_interval" not in device_data:
            logger.warning(f"Dropping incomplete device record {name}.{device_name}")
            continue
        try:
            devices[device_name] = load_device_config(device_name, device_data)
        except ConfigError as e:
            logger.warning(f"Dropping device {name}.{device_name}: {e.message}")

    return ConnectionConfig(name=name, transport=transport, tuning=tuning, devices=devices)


def load_gateway_config(data: dict | None) -> dict[str, ConnectionConfig]:
    """Load every connection in the persisted record, skipping invalid ones"""
    connections: dict[str, ConnectionConfig] = {}
    for name, conn_data in ((data or {}).get("connections") or {}).items():
        try:
            connections[name] = load_connection_config(name, conn_data or {})
        except ConfigError as e:
            logger.error(f"Skipping connection {name}: {e.message}")
    return connections


# Dumpers to the persisted record

def dump_transport_config(transport: TransportConfig) -> dict:
    params = transport.params
    if isinstance(params, SerialParams):
        return {
            "kind": transport.kind.value,
            "port": params.port,
            "baud_rate": params.baud_rate,
            "data_bits": params.data_bits,
            "stop_bits": params.stop_bits,
            "parity": params.parity.value,
            "send_requests_all_at_once": params.send_requests_all_at_once,
            "use_custom_spacing": params.use_custom_spacing,
            "message_frame_spacing": params.message_frame_spacing,
            "character_spacing": params.character_spacing,
        }
    return {"kind": transport.kind.value, "host": params.host, "port": params.port}


def dump_device_config(device: DeviceConfig) -> dict:
    return {
        "slave_id": device.slave_id,
        "polling_interval": device.polling_interval,
        "zero_on_failed_poll": device.zero_on_failed_poll,
        "use_batch_polling": device.use_batch_polling,
        "contiguous_batch_requests_only": device.contiguous_batch_requests_only,
        "points": {
            name: {
                "address": point.address,
                "kind": point.kind.value,
                "datatype": point.datatype.value,
                "scale": point.scale,
                "writable": point.writable,
            }
            for name, point in device.points.items()
        },
    }


def dump_connection_config(connection: ConnectionConfig) -> dict:
    tuning = connection.tuning
    return {
        "transport": dump_transport_config(connection.transport),
        "timeout_ms": tuning.timeout_ms,
        "retries": tuning.retries,
        "max_read_bit_count": tuning.max_read_bit_count,
        "max_read_register_count": tuning.max_read_register_count,
        "max_write_register_count": tuning.max_write_register_count,
        "discard_data_delay_ms": tuning.discard_data_delay_ms,
        "use_multiple_write_commands_only": tuning.use_multiple_write_commands_only,
        "devices": {
            name: dump_device_config(device)
            for name, device in connection.devices.items()
        },
    }


def dump_gateway_config(connections: dict[str, ConnectionConfig]) -> dict:
    return {
        "connections": {
            name: dump_connection_config(connection)
            for name, connection in connections.items()
        }
    }


def load_settings() -> GatewaySettings:
    """Read process settings from the environment"""
    defaults = GatewaySettings()
    return GatewaySettings(
        config_path=os.environ.get("MODBUS_GATEWAY_CONFIG", defaults.config_path),
        health_host=os.environ.get("MODBUS_GATEWAY_HEALTH_HOST", defaults.health_host),
        health_port=_require_int(
            os.environ.get("MODBUS_GATEWAY_HEALTH_PORT", defaults.health_port), "health_port"
        ),
        log_level=os.environ.get("MODBUS_GATEWAY_LOG_LEVEL", defaults.log_level),
    )
