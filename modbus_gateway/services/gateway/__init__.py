"""
Gateway Service - Modbus Acquisition

Responsibilities:
- Keep each connection alive (connectivity check, reconnection with backoff)
- Poll slave devices, coalescing points into batch reads
- Execute point writes between polls
- Apply configuration actions and persist the connection record
"""

from .connection import Connection, ConnectionStatus
from .device import Device, DeviceStatus
from .service import GatewayService

__all__ = [
    "Connection",
    "ConnectionStatus",
    "Device",
    "DeviceStatus",
    "GatewayService",
]
