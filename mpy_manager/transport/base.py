"""Abstract base class for the byte transport.

A Transport owns exactly one open OS handle to a device and exposes:
- open/close lifecycle (open reserves exclusive access to the port)
- raw byte writes
- a pub/sub feed of raw byte chunks
- asynchronous error and closed notifications

Transports do not interpret bytes. Line splitting belongs to the
LineParser, and request/response matching belongs to the TransactionQueue.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable


class Transport(ABC):
    """Abstract raw byte transport to one device."""

    @property
    @abstractmethod
    def port(self) -> str:
        """Port path this transport talks to."""

    @property
    @abstractmethod
    def baudrate(self) -> int:
        """Baud rate the transport opens with."""

    @abstractmethod
    def open(self) -> None:
        """Open the underlying handle.

        Raises:
            TransportFailure: if the port cannot be opened. No handle is
                left open in that case.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the handle and release the port.

        Safe to call multiple times.
        """

    @abstractmethod
    def is_open(self) -> bool:
        """Check whether the handle is currently open."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write raw bytes.

        Raises:
            TransportFailure: if the transport is closed or the write fails.
        """

    @abstractmethod
    def subscribe_data(self, callback: Callable[[bytes], None]) -> Callable[[], None]:
        """Subscribe to raw byte chunks.

        Returns:
            Unsubscribe function to remove this callback
        """

    @abstractmethod
    def subscribe_error(self, callback: Callable[[Exception], None]) -> Callable[[], None]:
        """Subscribe to fatal errors raised after a successful open.

        Returns:
            Unsubscribe function to remove this callback
        """

    @abstractmethod
    def subscribe_closed(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Subscribe to the closed event.

        Returns:
            Unsubscribe function to remove this callback
        """

    def __enter__(self) -> Transport:
        """Context manager support - open on enter."""
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager support - close on exit."""
        self.close()
