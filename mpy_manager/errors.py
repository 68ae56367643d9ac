"""Error taxonomy for the device communication engine.

Every public operation either returns a typed value or raises one of the
errors below. Each carries an ``ErrorKind`` so callers never need to inspect
raw protocol text to understand why something failed.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Optional, Sequence


class ErrorKind(Enum):
    """Kind of failure reported by the engine."""
    NOT_CONNECTED = "not_connected"
    TIMEOUT = "timeout"
    TRANSPORT_FAILURE = "transport_failure"
    HANDSHAKE_FAILED = "handshake_failed"
    VALIDATION_FAILED = "validation_failed"
    TRANSFER_VERIFICATION_FAILED = "transfer_verification_failed"
    REMOTE_ERROR = "remote_error"
    DEVICE_IN_USE = "device_in_use"


class MpyManagerError(Exception):
    """Base error for mpy_manager."""

    kind: ErrorKind


class NotConnected(MpyManagerError):
    """Operation targeted a device absent from the registry or mid-teardown."""

    kind = ErrorKind.NOT_CONNECTED


class OperationTimeout(MpyManagerError):
    """Deadline elapsed while awaiting a prompt or sentinel."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, partial_output: str = ""):
        super().__init__(message)
        self.partial_output = partial_output


class TransportFailure(MpyManagerError):
    """OS-level serial I/O error."""

    kind = ErrorKind.TRANSPORT_FAILURE


class HandshakeFailed(MpyManagerError):
    """No candidate baud rate produced a recognizable interpreter signature."""

    kind = ErrorKind.HANDSHAKE_FAILED

    def __init__(self, message: str, attempted_baudrates: Sequence[int] = ()):
        super().__init__(message)
        self.attempted_baudrates = tuple(attempted_baudrates)


class ValidationFailed(MpyManagerError):
    """Capability probe pass ratio was not met."""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, issues: Sequence[str]):
        super().__init__(message)
        self.issues: List[str] = list(issues)


class TransferVerificationFailed(MpyManagerError):
    """Post-upload existence (or size) check failed."""

    kind = ErrorKind.TRANSFER_VERIFICATION_FAILED


class RemoteError(MpyManagerError):
    """The interpreter itself reported an exception."""

    kind = ErrorKind.REMOTE_ERROR

    def __init__(self, message: str, remote_message: Optional[str] = None):
        super().__init__(message)
        self.remote_message = remote_message if remote_message is not None else message


class DeviceInUse(MpyManagerError):
    """A connect attempt for the same port is already in progress."""

    kind = ErrorKind.DEVICE_IN_USE
