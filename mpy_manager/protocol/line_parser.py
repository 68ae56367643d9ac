"""Line parser that turns the raw byte feed into text chunks.

The parser subscribes to a Transport's raw byte stream and maintains an
internal buffer. Every time the delimiter is found, the bytes before it are
decoded and broadcast as one chunk. The interpreter never terminates its
prompts, so an unterminated tail that ends with an idle prompt token is
flushed as a chunk of its own, tagged as a PromptChunk. A delimited line
that merely reads like a prompt stays a plain str.

Chunk boundaries do not align with "one response". Higher layers accumulate
across chunks.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Sequence

from ..config import DEFAULT_DELIMITER

logger = logging.getLogger(__name__)

PROMPT_FLUSH_TOKENS = (b">>> ", b"... ", b"=== ")
LINE_PARSER_MAX_BUFFER_SIZE = 1024 * 1024  # 1MB


class PromptChunk(str):
    """Unterminated tail flushed because it ends with a prompt token."""


class LineParser:
    """Delimiter-based chunker with a subscribable text feed.

    Subscriber delivery iterates a snapshot of the subscriber list, so a
    subscriber removed while a chunk is being delivered still receives that
    chunk.
    """

    MAX_BUFFER_SIZE = LINE_PARSER_MAX_BUFFER_SIZE

    def __init__(self,
                 delimiter: bytes = DEFAULT_DELIMITER,
                 flush_tokens: Sequence[bytes] = PROMPT_FLUSH_TOKENS,
                 encoding: str = "utf-8"):
        """Initialize line parser.

        Args:
            delimiter: Byte sequence that terminates a chunk
            flush_tokens: Unterminated tails ending with one of these are
                emitted immediately
            encoding: Text encoding of the stream
        """
        if not delimiter:
            raise ValueError("Delimiter must not be empty")
        self._delimiter = delimiter
        self._flush_tokens = tuple(flush_tokens)
        self._encoding = encoding

        self._buffer = bytearray()
        self._subscribers: List[Callable[[str], None]] = []

        self._buffer_lock = threading.Lock()
        self._callback_lock = threading.Lock()

        self._detach: Optional[Callable[[], None]] = None

    @property
    def delimiter(self) -> bytes:
        return self._delimiter

    def attach(self, subscribe_data: Callable[[Callable[[bytes], None]], Callable[[], None]]) -> None:
        """Attach to a raw byte feed (e.g. ``transport.subscribe_data``)."""
        self.detach()
        self._detach = subscribe_data(self.feed)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def feed(self, data: bytes) -> None:
        """Consume raw bytes and emit every complete chunk."""
        if not data:
            return

        with self._buffer_lock:
            self._buffer.extend(data)
            chunks = self._extract_chunks()
            self._trim_buffer()

        for chunk in chunks:
            self._notify_subscribers(chunk)

    def _extract_chunks(self) -> List[str]:
        chunks: List[str] = []
        while True:
            idx = self._buffer.find(self._delimiter)
            if idx == -1:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[:idx + len(self._delimiter)]
            chunks.append(self._decode(raw))

        if self._buffer and bytes(self._buffer).endswith(self._flush_tokens):
            chunks.append(PromptChunk(self._decode(bytes(self._buffer))))
            self._buffer.clear()
        return chunks

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self._encoding, errors="replace")

    def _trim_buffer(self) -> None:
        """Drop the oldest bytes when an unterminated line grows too large."""
        if len(self._buffer) <= self.MAX_BUFFER_SIZE:
            return
        drop_count = len(self._buffer) - self.MAX_BUFFER_SIZE
        del self._buffer[:drop_count]
        logger.warning(f"Line buffer overflow: dropped {drop_count} bytes of old data")

    def pending(self) -> bytes:
        """Bytes received but not yet emitted as a chunk."""
        with self._buffer_lock:
            return bytes(self._buffer)

    def clear(self) -> None:
        with self._buffer_lock:
            self._buffer.clear()

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to decoded chunks.

        Returns:
            Unsubscribe function
        """
        with self._callback_lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._callback_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify_subscribers(self, chunk: str) -> None:
        with self._callback_lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(chunk)
            except Exception as e:
                logger.error(f"Error in chunk subscriber: {e}")
