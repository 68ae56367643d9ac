"""Transport layer for serial communication with MicroPython boards."""

from .base import Transport
from .serial import SerialTransport

__all__ = ["Transport", "SerialTransport"]
