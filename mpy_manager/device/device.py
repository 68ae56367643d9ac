"""Device aggregate.

One object per physical unit holding its identity, lifecycle state and the
communication stack it exclusively owns (transport, line parser, transaction
queue). Replaces parallel per-id maps that could drift out of sync: every
lookup by id is a single aggregate fetch from the registry.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import Future
from typing import Callable, List, Optional, Sequence

from ..config import EngineConfig
from ..errors import MpyManagerError, NotConnected
from ..models import DeviceInfo, DeviceState, can_transition
from ..protocol.line_parser import LineParser
from ..transport.base import Transport
from .transaction_queue import QueueEntry, TransactionQueue

logger = logging.getLogger(__name__)

DEVICE_ID_PREFIX = "mpy_"


def device_id_for(port: str) -> str:
    """Stable device id derived from the port path."""
    return DEVICE_ID_PREFIX + re.sub(r"[^a-zA-Z0-9]", "_", port)


class Device:
    """Identity, lifecycle state and communication stack of one board."""

    def __init__(self, port: str, config: Optional[EngineConfig] = None, name: Optional[str] = None):
        self._id = device_id_for(port)
        self._port = port
        self._name = name or f"MicroPython ({port})"
        self._config = config or EngineConfig()

        self._state = DeviceState.DISCOVERED
        self._baudrate: Optional[int] = None
        self._version: Optional[str] = None
        self._issues: tuple = ()
        self._last_activity = 0.0

        self._transport: Optional[Transport] = None
        self._parser: Optional[LineParser] = None
        self._queue: Optional[TransactionQueue] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._retired = False

        self._output_callbacks: List[Callable[[str], None]] = []
        self._lock = threading.RLock()
        self._callback_lock = threading.Lock()

    # Identity

    @property
    def id(self) -> str:
        return self._id

    @property
    def port(self) -> str:
        return self._port

    @property
    def name(self) -> str:
        return self._name

    @property
    def baudrate(self) -> Optional[int]:
        return self._baudrate

    @property
    def version(self) -> Optional[str]:
        return self._version

    @version.setter
    def version(self, value: Optional[str]) -> None:
        self._version = value

    @property
    def issues(self) -> tuple:
        return self._issues

    @issues.setter
    def issues(self, value: Sequence[str]) -> None:
        self._issues = tuple(value)

    @property
    def last_activity(self) -> float:
        return self._last_activity

    # Lifecycle

    @property
    def state(self) -> DeviceState:
        """Current state. BUSY is derived from queue activity."""
        with self._lock:
            state = self._state
            queue = self._queue
        if state is DeviceState.READY and queue is not None and queue.busy:
            return DeviceState.BUSY
        return state

    def transition(self, target: DeviceState) -> DeviceState:
        """Move to ``target``.

        Returns:
            The previous stored state

        Raises:
            ValueError: if the lifecycle does not allow the move
        """
        with self._lock:
            previous = self._state
            if previous is target:
                return previous
            if not can_transition(previous, target):
                raise ValueError(f"Illegal transition {previous.value} -> {target.value} for {self._id}")
            self._state = target
        logger.info(f"{self._id}: {previous.value} -> {target.value}")
        return previous

    def snapshot(self) -> DeviceInfo:
        return DeviceInfo(
            id=self._id,
            name=self._name,
            port=self._port,
            baudrate=self._baudrate,
            state=self.state,
            version=self._version,
            last_activity=self._last_activity,
            issues=self._issues,
        )

    # Communication stack

    def bind(self, transport: Transport, on_fault: Optional[Callable[[Exception], None]] = None) -> None:
        """Open ``transport`` and build the parser and queue on top of it.

        Raises:
            TransportFailure: if the transport cannot be opened
        """
        with self._lock:
            if self._retired:
                raise NotConnected(f"{self._id} was disconnected")
            if self._transport is not None:
                raise RuntimeError(f"{self._id} already has an open transport")

            parser = LineParser(delimiter=self._config.delimiter)
            queue = TransactionQueue(
                transport,
                parser,
                name=self._id,
                default_timeout=self._config.command_timeout,
                settle_time=self._config.settle_time,
                on_write=self._on_write,
            )
            unsubscribers = [
                parser.subscribe(self._on_chunk),
                transport.subscribe_data(parser.feed),
            ]
            if on_fault is not None:
                unsubscribers.append(transport.subscribe_error(on_fault))

            try:
                transport.open()
            except MpyManagerError:
                for unsubscribe in unsubscribers:
                    unsubscribe()
                queue.close()
                raise

            self._transport = transport
            self._parser = parser
            self._queue = queue
            self._unsubscribers = unsubscribers
            self._baudrate = transport.baudrate
            self.touch()

    def unbind(self, error: Optional[MpyManagerError] = None) -> None:
        """Reject pending work and close the transport. Idempotent."""
        with self._lock:
            transport, queue = self._transport, self._queue
            unsubscribers = self._unsubscribers
            self._transport = None
            self._parser = None
            self._queue = None
            self._unsubscribers = []

        if queue is not None:
            queue.close(error)
        for unsubscribe in unsubscribers:
            unsubscribe()
        if transport is not None:
            transport.close()

    def retire(self, error: Optional[MpyManagerError] = None) -> None:
        """Unbind for good; later bind attempts raise NotConnected."""
        with self._lock:
            self._retired = True
        self.unbind(error)

    @property
    def is_bound(self) -> bool:
        with self._lock:
            return self._transport is not None

    @property
    def queue(self) -> TransactionQueue:
        with self._lock:
            queue = self._queue
        if queue is None or queue.closed:
            raise NotConnected(f"{self._id} is not connected")
        return queue

    def submit(self, entry: QueueEntry) -> Future:
        return self.queue.submit(entry)

    # Activity and output feed

    def touch(self) -> None:
        """Record activity; never moves the timestamp backwards."""
        now = time.time()
        with self._lock:
            if now > self._last_activity:
                self._last_activity = now

    def _on_write(self, payload: bytes) -> None:
        self.touch()

    def _on_chunk(self, chunk: str) -> None:
        self.touch()
        logger.debug(f"{self._id} -> {chunk!r}")
        with self._callback_lock:
            callbacks = list(self._output_callbacks)
        for callback in callbacks:
            try:
                callback(chunk)
            except Exception as e:
                logger.error(f"Error in output callback: {e}")

    def subscribe_output(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to the raw text feed (informational only).

        Returns:
            Unsubscribe function
        """
        with self._callback_lock:
            self._output_callbacks.append(callback)

        def unsubscribe():
            with self._callback_lock:
                if callback in self._output_callbacks:
                    self._output_callbacks.remove(callback)

        return unsubscribe

    def __repr__(self) -> str:
        return f"Device(id={self._id!r}, state={self.state.value}, baudrate={self._baudrate})"
