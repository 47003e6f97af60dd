from __future__ import annotations

import pytest

from modbus_gateway.common.config import PointConfig, PointDataType, RegisterKind
from modbus_gateway.services.gateway.points import Point, decode_value, encode_value, zero_value


def test_decode_integer_types() -> None:
    assert decode_value(PointDataType.UINT16, [0xFFFF]) == 65535
    assert decode_value(PointDataType.INT16, [0xFFFF]) == -1
    assert decode_value(PointDataType.UINT32, [0x0001, 0x0000]) == 65536
    assert decode_value(PointDataType.INT32, [0xFFFF, 0xFFFE]) == -2


def test_decode_floats_high_word_first() -> None:
    assert decode_value(PointDataType.FLOAT32, [0x3FC0, 0x0000]) == 1.5
    assert decode_value(PointDataType.FLOAT64, [0x4000, 0, 0, 0]) == 2.0


def test_decode_applies_scale() -> None:
    assert decode_value(PointDataType.UINT16, [123], scale=0.1) == pytest.approx(12.3)


def test_decode_bool() -> None:
    assert decode_value(PointDataType.BOOL, [True]) is True
    assert decode_value(PointDataType.BOOL, [0]) is False


def test_decode_short_response_raises() -> None:
    with pytest.raises(ValueError):
        decode_value(PointDataType.FLOAT32, [0x3FC0])


def test_encode_values() -> None:
    assert encode_value(PointDataType.FLOAT32, 1.5) == [0x3FC0, 0x0000]
    assert encode_value(PointDataType.INT16, -1) == [0xFFFF]
    assert encode_value(PointDataType.UINT16, 12.3, scale=0.1) == [123]
    assert encode_value(PointDataType.BOOL, 1) == [True]


def test_encode_out_of_range_raises() -> None:
    with pytest.raises(ValueError):
        encode_value(PointDataType.UINT16, 70000)
    with pytest.raises(ValueError):
        encode_value(PointDataType.UINT16, -1)


def test_zero_values() -> None:
    assert zero_value(PointDataType.BOOL) is False
    assert zero_value(PointDataType.INT32) == 0
    assert zero_value(PointDataType.FLOAT32) == 0.0


def test_mark_failed_keeps_last_value_unless_zeroing() -> None:
    point = Point(PointConfig(name="power", address=0, datatype=PointDataType.FLOAT32))
    point.update([0x3FC0, 0x0000])

    point.mark_failed("timeout", zero=False)
    assert point.value == 1.5
    assert point.last_error == "timeout"

    point.mark_failed("timeout", zero=True)
    assert point.value == 0.0

    point.update([0x4000, 0x0000])
    assert point.value == 2.0
    assert point.last_error is None


def test_point_geometry() -> None:
    point = Point(
        PointConfig(name="coil", address=9, kind=RegisterKind.COIL, datatype=PointDataType.BOOL)
    )
    assert point.register_count == 1
    assert point.end_address == 9

    point = Point(PointConfig(name="energy", address=100, datatype=PointDataType.FLOAT64))
    assert point.end_address == 103
