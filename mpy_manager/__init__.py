"""MicroPython device manager - serial REPL engine with file transfer."""

from .config import EngineConfig
from .device.registry import DeviceRegistry
from .errors import (
    DeviceInUse,
    ErrorKind,
    HandshakeFailed,
    MpyManagerError,
    NotConnected,
    OperationTimeout,
    RemoteError,
    TransferVerificationFailed,
    TransportFailure,
    ValidationFailed,
)
from .models import DeviceInfo, DeviceState, FileEntry
from .protocol.control import ControlSequence
from .transport import SerialTransport, Transport

__all__ = [
    "EngineConfig",
    "DeviceRegistry",
    "DeviceInfo",
    "DeviceState",
    "FileEntry",
    "ControlSequence",
    "Transport",
    "SerialTransport",
    "ErrorKind",
    "MpyManagerError",
    "NotConnected",
    "OperationTimeout",
    "TransportFailure",
    "HandshakeFailed",
    "ValidationFailed",
    "TransferVerificationFailed",
    "RemoteError",
    "DeviceInUse",
]
