"""Device layer for MicroPython boards.

This module provides:
- The per-device aggregate owning its communication stack (Device)
- Strictly FIFO per-device work serialization (TransactionQueue)
- Serial port discovery utilities (list_ports, is_likely_micropython)

The DeviceRegistry lives in ``mpy_manager.device.registry``.
"""

from .device import Device, device_id_for
from .port_finder import PortInfo, is_likely_micropython, is_port_available, list_ports
from .transaction_queue import QueueEntry, Step, TransactionQueue

__all__ = [
    # Device
    'Device',
    'device_id_for',

    # Queue
    'QueueEntry',
    'Step',
    'TransactionQueue',

    # Finder
    'PortInfo',
    'is_likely_micropython',
    'is_port_available',
    'list_ports',
]
