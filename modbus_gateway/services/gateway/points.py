"""
Points

Runtime state of a configured point plus conversion between raw
register/bit values and typed point values. Multi-register values use
big-endian word order (high word first).
"""

import struct
from dataclasses import dataclass
from datetime import datetime, timezone

from modbus_gateway.common.config import PointConfig, PointDataType, RegisterKind

PointValue = bool | int | float

_STRUCT_FORMATS = {
    PointDataType.UINT16: ">H",
    PointDataType.INT16: ">h",
    PointDataType.UINT32: ">I",
    PointDataType.INT32: ">i",
    PointDataType.FLOAT32: ">f",
    PointDataType.FLOAT64: ">d",
}


def zero_value(datatype: PointDataType) -> PointValue:
    """Value written to a point when a poll fails and zero-on-failed-poll is set"""
    if datatype == PointDataType.BOOL:
        return False
    if datatype in (PointDataType.FLOAT32, PointDataType.FLOAT64):
        return 0.0
    return 0


def decode_value(datatype: PointDataType, raw: list, scale: float = 1.0) -> PointValue:
    """
    Convert raw registers (or bits) to a typed value.

    Raises:
        ValueError: if raw holds fewer words than the datatype needs
    """
    count = datatype.register_count
    if len(raw) < count:
        raise ValueError(f"{datatype.value} needs {count} values, got {len(raw)}")

    if datatype == PointDataType.BOOL:
        return bool(raw[0])

    packed = b"".join(int(word).to_bytes(2, byteorder="big") for word in raw[:count])
    value = struct.unpack(_STRUCT_FORMATS[datatype], packed)[0]

    if scale != 1.0:
        return value * scale
    return value


def encode_value(datatype: PointDataType, value: PointValue, scale: float = 1.0) -> list:
    """
    Convert a typed value to raw registers (or a single bit).

    Raises:
        ValueError: if the value does not fit the datatype
    """
    if datatype == PointDataType.BOOL:
        return [bool(value)]

    raw_value = value / scale if scale not in (0, 1.0) else value

    if datatype in (PointDataType.FLOAT32, PointDataType.FLOAT64):
        packed = struct.pack(_STRUCT_FORMATS[datatype], float(raw_value))
    else:
        try:
            packed = struct.pack(_STRUCT_FORMATS[datatype], int(round(raw_value)))
        except struct.error:
            raise ValueError(f"{value} out of range for {datatype.value}")

    return [
        int.from_bytes(packed[i:i + 2], byteorder="big")
        for i in range(0, len(packed), 2)
    ]


@dataclass
class Point:
    """A point owned by exactly one device"""
    config: PointConfig
    value: PointValue | None = None
    last_updated: datetime | None = None
    last_error: str | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def address(self) -> int:
        return self.config.address

    @property
    def kind(self) -> RegisterKind:
        return self.config.kind

    @property
    def register_count(self) -> int:
        return self.config.register_count

    @property
    def end_address(self) -> int:
        """Last address occupied by this point (inclusive)"""
        return self.config.address + self.config.register_count - 1

    def update(self, raw: list) -> PointValue:
        self.value = decode_value(self.config.datatype, raw, self.config.scale)
        self.last_updated = datetime.now(timezone.utc)
        self.last_error = None
        return self.value

    def mark_failed(self, error: str, zero: bool) -> None:
        """Record a failed read; the last value is kept unless zero is set"""
        self.last_error = error
        if zero:
            self.value = zero_value(self.config.datatype)
            self.last_updated = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "kind": self.kind.value,
            "datatype": self.config.datatype.value,
            "value": self.value,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "last_error": self.last_error,
        }
