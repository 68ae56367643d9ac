"""Immutable data models shared by the registry, queue and file layers.

All records handed to callers are frozen dataclasses; the mutable Device
aggregate stays inside the registry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class DeviceState(Enum):
    """Connection lifecycle of one device."""
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    VALIDATING = "validating"
    READY = "ready"
    BUSY = "busy"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# BUSY is derived from queue activity and never stored.
ALLOWED_TRANSITIONS: Dict[DeviceState, FrozenSet[DeviceState]] = {
    DeviceState.DISCOVERED: frozenset({DeviceState.CONNECTING, DeviceState.DISCONNECTED}),
    DeviceState.CONNECTING: frozenset({
        DeviceState.VALIDATING, DeviceState.ERROR, DeviceState.DISCONNECTED,
    }),
    DeviceState.VALIDATING: frozenset({
        DeviceState.READY, DeviceState.ERROR, DeviceState.DISCONNECTED,
    }),
    DeviceState.READY: frozenset({DeviceState.ERROR, DeviceState.DISCONNECTED}),
    DeviceState.ERROR: frozenset({DeviceState.DISCONNECTED}),
    DeviceState.DISCONNECTED: frozenset(),
}


def can_transition(current: DeviceState, target: DeviceState) -> bool:
    """Check whether the lifecycle allows moving from ``current`` to ``target``."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class DeviceInfo:
    """Immutable snapshot of a device record.

    Attributes:
        id: Stable identifier derived from the port path
        name: Display name
        port: Serial port path
        baudrate: Active baud rate (None until a candidate succeeded)
        state: Connection state at snapshot time
        version: Interpreter version reported by the handshake
        last_activity: Unix timestamp of the last byte sent or received
        issues: Failed validation probe descriptions from the last connect
    """
    id: str
    name: str
    port: str
    baudrate: Optional[int]
    state: DeviceState
    version: Optional[str] = None
    last_activity: float = 0.0
    issues: Tuple[str, ...] = ()

    @property
    def is_connected(self) -> bool:
        return self.state in (DeviceState.READY, DeviceState.BUSY)


@dataclass(frozen=True)
class FileEntry:
    """One entry of a remote directory listing.

    Attributes:
        name: Entry name within its directory
        path: Absolute remote path
        is_directory: True for directories
        size: Size in bytes (None for directories)
        device_id: Device the entry was listed from
    """
    name: str
    path: str
    is_directory: bool
    size: Optional[int]
    device_id: str


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one validation probe."""
    description: str
    passed: bool
    output: str = ""


@dataclass(frozen=True)
class ValidationReport:
    """Outcome of the validation battery.

    Attributes:
        results: Every probe result in execution order
        pass_ratio: Minimum fraction of probes that had to pass
    """
    results: Tuple[ProbeResult, ...] = field(default_factory=tuple)
    pass_ratio: float = 0.6

    @property
    def passed_count(self) -> int:
        return sum(1 for result in self.results if result.passed)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def issues(self) -> Tuple[str, ...]:
        return tuple(result.description for result in self.results if not result.passed)

    @property
    def is_valid(self) -> bool:
        if not self.results:
            return False
        return self.passed_count / self.total >= self.pass_ratio
