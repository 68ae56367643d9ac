"""pyserial-backed transport.

Opens one serial port, runs a background reader thread and forwards raw
byte chunks to subscribers. A read or write failure after a successful open
is fatal: the port is closed and error subscribers are notified so the
owning device can be torn down. Nothing here reconnects automatically.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

import serial

from ..config import OPEN_ATTEMPTS, OPEN_BACKOFF, READ_CHUNK_SIZE, READ_TIMEOUT
from ..errors import TransportFailure
from .base import Transport

logger = logging.getLogger(__name__)


class SerialTransport(Transport):
    """Raw byte stream over a pyserial port.

    Example:
        >>> transport = SerialTransport("/dev/ttyUSB0", 115200)
        >>> transport.subscribe_data(lambda chunk: print(chunk))
        <function>
        >>> transport.open()
        >>> transport.write(b"print(1)\\r\\n")
        >>> transport.close()
    """

    def __init__(self,
                 port: str,
                 baudrate: int,
                 timeout: float = READ_TIMEOUT,
                 chunk_size: int = READ_CHUNK_SIZE,
                 open_attempts: int = OPEN_ATTEMPTS,
                 open_backoff: float = OPEN_BACKOFF):
        """Initialize serial transport.

        Args:
            port: Serial port path (e.g., '/dev/ttyUSB0', 'COM3')
            baudrate: Serial baud rate
            timeout: Read timeout in seconds
            chunk_size: Maximum bytes to read per chunk
            open_attempts: Attempts before an open is reported as failed
            open_backoff: Initial delay between attempts, doubled each retry
        """
        self._port = port
        self._baudrate = baudrate
        self._timeout = timeout
        self._chunk_size = chunk_size
        self._open_attempts = max(1, open_attempts)
        self._open_backoff = open_backoff

        self._serial: Optional[serial.Serial] = None
        self._active = False
        self._reader_thread: Optional[threading.Thread] = None

        self._data_callbacks: List[Callable[[bytes], None]] = []
        self._error_callbacks: List[Callable[[Exception], None]] = []
        self._closed_callbacks: List[Callable[[], None]] = []

        self._callback_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()

    @property
    def port(self) -> str:
        return self._port

    @property
    def baudrate(self) -> int:
        return self._baudrate

    def open(self) -> None:
        """Open the port, retrying a bounded number of times with backoff."""
        if self.is_open():
            logger.warning(f"{self._port} already open")
            return

        delay = self._open_backoff
        last_error: Optional[Exception] = None
        for attempt in range(1, self._open_attempts + 1):
            try:
                self._open_once()
                return
            except serial.SerialException as e:
                last_error = e
                logger.warning(
                    f"Open {self._port} @ {self._baudrate} failed "
                    f"(attempt {attempt}/{self._open_attempts}): {e}"
                )
            if attempt < self._open_attempts:
                time.sleep(delay)
                delay *= 2

        raise TransportFailure(
            f"Failed to open {self._port} @ {self._baudrate}: {last_error}"
        ) from last_error

    def _open_once(self) -> None:
        handle: Optional[serial.Serial] = None
        try:
            handle = serial.Serial(
                port=self._port,
                baudrate=self._baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self._timeout,
            )
            handle.reset_input_buffer()
            handle.reset_output_buffer()
        except serial.SerialException:
            # Partial open: never leave the handle dangling.
            if handle is not None:
                try:
                    handle.close()
                except serial.SerialException as close_error:
                    logger.debug(f"Error closing half-open {self._port}: {close_error}")
            raise

        with self._state_lock:
            self._serial = handle
            self._active = True
        logger.info(f"Opened {self._port} @ {self._baudrate} baud")
        self._start_reader_thread()

    def close(self) -> None:
        """Close the port and stop the reader thread."""
        with self._state_lock:
            handle = self._serial
            was_active = self._active
            self._active = False
            self._serial = None

        if handle is None and not was_active:
            return

        reader = self._reader_thread
        if (reader is not None and reader.is_alive()
                and reader is not threading.current_thread()):
            reader.join(timeout=1.0)
        self._reader_thread = None

        if handle is not None:
            try:
                handle.close()
            except serial.SerialException as e:
                logger.error(f"Error closing serial port {self._port}: {e}")

        logger.info(f"Closed {self._port}")
        self._notify_closed_callbacks()

    def is_open(self) -> bool:
        with self._state_lock:
            return self._active and self._serial is not None

    def write(self, data: bytes) -> None:
        with self._state_lock:
            handle = self._serial if self._active else None
        if handle is None:
            raise TransportFailure(f"Cannot write, {self._port} is not open")

        try:
            with self._write_lock:
                handle.write(data)
                handle.flush()
        except serial.SerialException as e:
            logger.error(f"Write error on {self._port}: {e}")
            self._handle_error(e)
            raise TransportFailure(f"Write to {self._port} failed: {e}") from e

    def subscribe_data(self, callback: Callable[[bytes], None]) -> Callable[[], None]:
        return self._subscribe(self._data_callbacks, callback)

    def subscribe_error(self, callback: Callable[[Exception], None]) -> Callable[[], None]:
        return self._subscribe(self._error_callbacks, callback)

    def subscribe_closed(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._subscribe(self._closed_callbacks, callback)

    def _subscribe(self, callbacks: list, callback: Callable) -> Callable[[], None]:
        with self._callback_lock:
            callbacks.append(callback)

        def unsubscribe():
            with self._callback_lock:
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    # Internal methods

    def _start_reader_thread(self) -> None:
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name=f"SerialReader-{self._port}"
        )
        self._reader_thread.start()

    def _reader_loop(self) -> None:
        """Read raw bytes and dispatch to data callbacks."""
        logger.debug(f"Reader thread for {self._port} started")

        while True:
            with self._state_lock:
                handle = self._serial if self._active else None
            if handle is None:
                break
            try:
                chunk = handle.read(self._chunk_size)
            except serial.SerialException as e:
                with self._state_lock:
                    still_active = self._active
                if still_active:
                    logger.error(f"Serial read error on {self._port}: {e}")
                    self._handle_error(e)
                break
            if chunk:
                self._notify_data_callbacks(chunk)

        logger.debug(f"Reader thread for {self._port} exiting")

    def _handle_error(self, error: Exception) -> None:
        """Close resources after a fatal error and notify subscribers.

        Runs on the reader thread in the read-failure case, so close() must
        not join the current thread.
        """
        with self._state_lock:
            if not self._active:
                return
        logger.warning(f"Fatal transport error on {self._port}: {error}")
        self._notify_error_callbacks(error)
        self.close()

    def _notify_data_callbacks(self, data: bytes) -> None:
        with self._callback_lock:
            callbacks = list(self._data_callbacks)

        for callback in callbacks:
            try:
                callback(data)
            except Exception as e:
                logger.error(f"Error in data callback: {e}")

    def _notify_error_callbacks(self, error: Exception) -> None:
        with self._callback_lock:
            callbacks = list(self._error_callbacks)

        for callback in callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error in error callback: {e}")

    def _notify_closed_callbacks(self) -> None:
        with self._callback_lock:
            callbacks = list(self._closed_callbacks)

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in closed callback: {e}")
