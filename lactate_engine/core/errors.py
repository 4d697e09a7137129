"""Error kinds raised by the test execution engine and its collaborators."""

from __future__ import annotations


class LactateEngineError(Exception):
    """Base class for engine errors."""


class ProtocolValidationError(LactateEngineError, ValueError):
    """Raised when protocol parameters or an edit are invalid."""


class ProtocolParseError(ProtocolValidationError):
    """Raised when a protocol file is invalid."""


class DeviceParseError(LactateEngineError, ValueError):
    """Raised when a GATT payload is malformed or too short."""


class DeviceConnectionError(LactateEngineError):
    """Raised when a telemetry adapter fails to connect or disconnect."""

    def __init__(self, device_type: str, message: str) -> None:
        super().__init__(f"{device_type}: {message}")
        self.device_type = device_type


class ControllerCommandError(LactateEngineError):
    """Raised when a trainer control command fails."""


class InvalidLactateValue(LactateEngineError, ValueError):
    """Raised when a lactate (or BORG) annotation is out of range."""
