from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional

from serial.tools import list_ports as serial_list_ports

logger = logging.getLogger(__name__)

# USB-to-UART bridges and native USB stacks commonly found on MicroPython boards
LIKELY_VENDOR_IDS = {
    0x10C4: "Silicon Labs",
    0x1A86: "QinHeng",
    0x0403: "FTDI",
    0x303A: "Espressif",
    0x2E8A: "Raspberry Pi",
}
LIKELY_PORT_MARKERS = ("ttyUSB", "ttyACM", "cu.usbserial", "cu.usbmodem", "cu.SLAB", "cu.wchusbserial")


@dataclass(frozen=True)
class PortInfo:
    """
    One serial port as seen by pyserial.

    Attributes:
        port: Port name to open with pyserial (e.g. 'COM3', '/dev/ttyUSB0').
        description: Human readable description from the OS.
        vid: USB Vendor ID (integer) or None if unknown.
        pid: USB Product ID (integer) or None if unknown.
        manufacturer: USB manufacturer string, if available.
        serial_number: USB serial string, if available.
        hwid: Raw hardware ID string from pyserial (for debugging).
    """
    port: str
    description: str = ""
    vid: Optional[int] = None
    pid: Optional[int] = None
    manufacturer: Optional[str] = None
    serial_number: Optional[str] = None
    hwid: str = ""

    @property
    def vendor(self) -> Optional[str]:
        """Known bridge vendor name, if the VID is one of the usual suspects."""
        if self.vid is None:
            return None
        return LIKELY_VENDOR_IDS.get(self.vid)


def _port_to_info(port) -> PortInfo:
    """Convert pyserial's ListPortInfo to PortInfo."""
    return PortInfo(
        port=port.device,
        description=port.description or "",
        vid=port.vid,
        pid=port.pid,
        manufacturer=port.manufacturer,
        serial_number=port.serial_number,
        hwid=port.hwid or "",
    )


def is_likely_micropython(info: PortInfo) -> bool:
    """
    Guess whether a port belongs to a MicroPython-capable board.

    Only a hint for sorting and filtering; the handshake is what actually
    identifies the interpreter.
    """
    if info.vid is not None and info.vid in LIKELY_VENDOR_IDS:
        return True
    return any(marker in info.port for marker in LIKELY_PORT_MARKERS)


def list_ports(
    only_likely: bool = False,
    *,
    matcher: Optional[Callable[[PortInfo], bool]] = None,
) -> List[PortInfo]:
    """
    Enumerate the serial ports visible to this machine.

    Args:
        only_likely: Keep only ports that look like MicroPython boards.
        matcher: Custom predicate; overrides ``only_likely`` when given.

    Returns:
        List of PortInfo objects, likely boards first.
    """
    predicate = matcher
    if predicate is None and only_likely:
        predicate = is_likely_micropython

    results: List[PortInfo] = []
    for port in serial_list_ports.comports():
        info = _port_to_info(port)
        if predicate is None or predicate(info):
            results.append(info)

    results.sort(key=lambda info: (not is_likely_micropython(info), info.port))
    logger.debug(f"Found {len(results)} serial port(s)")
    return results


def is_port_available(port: str) -> bool:
    """Check if ``port`` is physically present and recognized by the OS.

    Symlinks such as /dev/serial/by-id/... are matched by their target.
    """
    names = {port, os.path.realpath(port)}
    return any(p.device in names for p in serial_list_ports.comports())
