"""
Custom Exception Classes for the Modbus Gateway

Hierarchical exception structure shared by the connection, device
and transport layers.
"""


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(GatewayError):
    """Invalid configuration supplied to an add/edit action"""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(f"Config Error: {message}", recoverable=True)


class TransportError(GatewayError):
    """Modbus transport failure (connect, I/O timeout, malformed response)"""

    def __init__(
        self,
        message: str,
        connection: str | None = None,
        slave_id: int | None = None,
    ):
        self.connection = connection
        self.slave_id = slave_id
        super().__init__(f"Transport Error: {message}", recoverable=True)


class DeviceError(GatewayError):
    """Device-level errors (unknown point, device without connection)"""

    def __init__(
        self,
        message: str,
        device_name: str | None = None,
        recoverable: bool = True,
    ):
        self.device_name = device_name
        super().__init__(f"Device Error: {message}", recoverable)


class WriteError(DeviceError):
    """Point write rejected or failed"""

    def __init__(
        self,
        message: str,
        device_name: str | None = None,
        point: str | None = None,
        value: object = None,
    ):
        self.point = point
        self.value = value
        super().__init__(message, device_name, recoverable=True)


class SchedulerClosedError(GatewayError):
    """Work submitted to a scheduler that has been shut down"""

    def __init__(self, scheduler_name: str):
        self.scheduler_name = scheduler_name
        super().__init__(
            f"Scheduler '{scheduler_name}' is not running",
            recoverable=False,
        )
