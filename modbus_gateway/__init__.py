"""
Modbus Gateway

Acquisition core of a Modbus master gateway:
- common/ - Configuration, exceptions, logging, per-connection scheduler
- services/gateway/ - Connections, devices, batch polling, record store
"""

__version__ = "1.0.0"
