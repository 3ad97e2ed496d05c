"""
Error taxonomy for robot operations.

Every error carries a user-facing message; the API layer maps each type
to an HTTP status.
"""

from typing import Optional


class BarBotError(Exception):
    """Base class for all robot control errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RobotConnectionError(BarBotError, ConnectionError):
    """Transport failure: refused, timed out, unreachable, or retry cap reached."""


class RobotBusyError(BarBotError):
    """The robot is not waiting for a recipe."""

    def __init__(self, message: str = "Robot is busy preparing another drink. Please wait."):
        super().__init__(message)


# Modbus exception codes 1-4
PROTOCOL_MESSAGES = {
    1: "Modbus function not supported. The device may not support coils.",
    2: "Invalid address. The device doesn't have a coil at this address.",
    3: "Invalid data value in Modbus request.",
    4: "Device failure while processing the request.",
}


class ProtocolError(BarBotError):
    """The device rejected a function, address or value."""

    def __init__(self, code: Optional[int], address: Optional[int] = None, message: Optional[str] = None):
        if message is None:
            message = PROTOCOL_MESSAGES.get(code, f"Modbus exception code {code}")
            if address is not None:
                message = f"{message} (address {address})"
        super().__init__(message)
        self.code = code
        self.address = address


class ValidationError(BarBotError):
    """Bad caller input; ``status`` is 400 for bad payloads, 404 for unknown ids."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status
