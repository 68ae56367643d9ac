"""Per-device transaction queue.

The serial line has no multiplexing, so every write to a device funnels
through exactly one drain loop. Entries run strictly FIFO; each entry is one
or more steps (payload + capture) executed back to back while the entry
owns the output stream. A failed entry is rejected and the loop moves on, so
a timeout never blocks or poisons the entries behind it.

Completion detection reads from a single-consumer channel fed by the line
parser. The channel is subscribed once for the lifetime of the queue rather
than per transaction.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional, Sequence

from ..config import COMMAND_TIMEOUT, SETTLE_TIME
from ..errors import MpyManagerError, NotConnected, OperationTimeout
from ..protocol.capture import Capture, PromptCapture, is_prompt
from ..protocol.line_parser import LineParser
from ..transport.base import Transport

logger = logging.getLogger(__name__)

_CLOSED = object()  # channel wake-up marker


@dataclass(frozen=True)
class Step:
    """One write plus the capture that recognises its completion."""
    payload: bytes
    capture: Callable[[], Capture] = PromptCapture


def _last_output(outputs: List[Any]) -> Any:
    return outputs[-1]


class QueueEntry:
    """A unit of work against one device.

    Resolved exactly once, either with the collected step outputs or with
    the error that stopped it. The deadline is armed when the entry starts
    executing and covers all of its steps.
    """

    def __init__(self,
                 steps: Sequence[Step],
                 timeout: float,
                 description: str = "",
                 collect: Callable[[List[Any]], Any] = _last_output):
        if not steps:
            raise ValueError("A queue entry needs at least one step")
        self.steps = tuple(steps)
        self.timeout = timeout
        self.description = description
        self.deadline: Optional[float] = None
        self.future: Future = Future()
        self._collect = collect
        self._lock = threading.Lock()

    def collect(self, outputs: List[Any]) -> Any:
        return self._collect(outputs)

    def resolve(self, value: Any) -> bool:
        with self._lock:
            if self.future.done():
                return False
            self.future.set_result(value)
            return True

    def reject(self, error: BaseException) -> bool:
        with self._lock:
            if self.future.done():
                return False
            self.future.set_exception(error)
            return True


def _describe(payload: bytes, limit: int = 20) -> str:
    text = payload.decode("utf-8", errors="replace").strip()
    return text if len(text) <= limit else text[:limit] + "..."


class TransactionQueue:
    """FIFO of pending entries for one device with a single drain loop."""

    def __init__(self,
                 transport: Transport,
                 parser: LineParser,
                 name: str = "",
                 default_timeout: float = COMMAND_TIMEOUT,
                 settle_time: float = SETTLE_TIME,
                 on_write: Optional[Callable[[bytes], None]] = None):
        """Initialize transaction queue.

        Args:
            transport: Transport the payloads are written to
            parser: Line parser whose chunks complete the entries
            name: Label used in logs and thread names
            default_timeout: Timeout for entries enqueued without one
            settle_time: Wait for the prompt trailing a sentinel capture
            on_write: Called with every payload after it was written
        """
        self._transport = transport
        self._name = name or transport.port
        self._default_timeout = default_timeout
        self._settle_time = settle_time
        self._on_write = on_write

        self._channel: queue.Queue = queue.Queue()
        self._unsubscribe = parser.subscribe(self._channel.put)

        self._entries: Deque[QueueEntry] = deque()
        self._lock = threading.Lock()
        self._draining = False
        self._closed_error: Optional[MpyManagerError] = None
        self._drain_thread: Optional[threading.Thread] = None

    def enqueue(self,
                payload: bytes,
                timeout: Optional[float] = None,
                capture: Callable[[], Capture] = PromptCapture,
                description: Optional[str] = None) -> Future:
        """Queue a single payload.

        Returns:
            Future resolving with the captured output
        """
        entry = QueueEntry(
            [Step(payload, capture)],
            timeout=timeout if timeout is not None else self._default_timeout,
            description=description or _describe(payload),
        )
        return self.submit(entry)

    def submit(self, entry: QueueEntry) -> Future:
        """Queue a (possibly multi-step) entry and start draining if idle."""
        with self._lock:
            if self._closed_error is not None:
                entry.reject(self._fresh_error())
                return entry.future
            self._entries.append(entry)
            if not self._draining:
                self._draining = True
                self._drain_thread = threading.Thread(
                    target=self._drain_loop,
                    daemon=True,
                    name=f"TransactionQueue-{self._name}"
                )
                self._drain_thread.start()
        return entry.future

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._draining or bool(self._entries)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed_error is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self, error: Optional[MpyManagerError] = None) -> None:
        """Reject every queued entry (and the one in flight) and stop draining.

        Args:
            error: Error used for the rejections, NotConnected by default
        """
        with self._lock:
            if self._closed_error is not None:
                return
            self._closed_error = error or NotConnected(f"{self._name} disconnected")
            pending = list(self._entries)
            self._entries.clear()
            drain_thread = self._drain_thread

        self._unsubscribe()
        self._channel.put(_CLOSED)

        for entry in pending:
            entry.reject(self._fresh_error())
        if pending:
            logger.info(f"{self._name}: rejected {len(pending)} queued entries")

        if (drain_thread is not None and drain_thread.is_alive()
                and drain_thread is not threading.current_thread()):
            drain_thread.join(timeout=1.0)

    def _fresh_error(self) -> MpyManagerError:
        error = self._closed_error
        if error is None:
            return NotConnected(f"{self._name} disconnected")
        return type(error)(str(error))

    # Drain loop

    def _drain_loop(self) -> None:
        while True:
            with self._lock:
                if self._closed_error is not None or not self._entries:
                    self._draining = False
                    return
                entry = self._entries.popleft()
            self._execute(entry)

    def _execute(self, entry: QueueEntry) -> None:
        entry.deadline = time.monotonic() + entry.timeout
        outputs: List[Any] = []
        try:
            for step in entry.steps:
                outputs.append(self._run_step(entry, step))
            value = entry.collect(outputs)
        except MpyManagerError as e:
            logger.warning(f"{self._name}: '{entry.description}' failed: {e}")
            entry.reject(e)
        except Exception as e:
            logger.error(f"{self._name}: unexpected error in '{entry.description}': {e}")
            entry.reject(e)
        else:
            entry.resolve(value)

    def _run_step(self, entry: QueueEntry, step: Step) -> Any:
        if self.closed:
            raise self._fresh_error()
        self._discard_stale_chunks()
        capture = step.capture()

        self._transport.write(step.payload)
        if self._on_write is not None:
            self._on_write(step.payload)
        logger.debug(f"{self._name} <- {step.payload!r}")

        while True:
            chunk = self._next_chunk(entry.deadline)
            if chunk is None:
                raise OperationTimeout(
                    f"Timeout of {entry.timeout:g}s waiting for '{entry.description}'",
                    partial_output=capture.partial(),
                )
            if capture.feed(chunk):
                break

        if capture.settles:
            self._settle(entry.deadline)
        return capture.result()

    def _next_chunk(self, deadline: float) -> Optional[str]:
        """Block for the next chunk; None once the deadline passed."""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                chunk = self._channel.get(timeout=remaining)
            except queue.Empty:
                continue
            if chunk is _CLOSED:
                self._channel.put(_CLOSED)
                raise self._fresh_error()
            return chunk

    def _discard_stale_chunks(self) -> None:
        """Drop output left over from a previous (possibly timed out) entry."""
        while True:
            try:
                chunk = self._channel.get_nowait()
            except queue.Empty:
                return
            if chunk is _CLOSED:
                self._channel.put(_CLOSED)
                raise self._fresh_error()
            logger.debug(f"{self._name}: discarding stale chunk {chunk!r}")

    def _settle(self, deadline: float) -> None:
        """Swallow the prompt that trails a sentinel so it cannot complete
        the next entry."""
        settle_deadline = min(deadline, time.monotonic() + self._settle_time)
        while True:
            try:
                chunk = self._next_chunk(settle_deadline)
            except MpyManagerError:
                return
            if chunk is None or is_prompt(chunk):
                return
