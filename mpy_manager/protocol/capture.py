"""Completion detectors fed by the transaction queue.

A capture receives the decoded chunks that arrive after a payload is
written and decides when the exchange is complete. The queue owns the
deadline; captures only look at text.

Three strategies cover every exchange with the interpreter:
- PromptCapture: done when the REPL shows its primary or continuation prompt
- MarkerCapture: done when a chunk matches a pattern (handshake, mode banners)
- SentinelCapture: done when a host-chosen sentinel line appears; the shared
  "bounded capture" used by every file operation
"""
from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence, Union

from ..errors import RemoteError
from .line_parser import PromptChunk

PRIMARY_PROMPT = ">>>"
CONTINUATION_PROMPT = "..."
PASTE_PROMPT = "==="
PRIMARY_PROMPT_TOKEN = PRIMARY_PROMPT + " "
CONTINUATION_PROMPT_TOKEN = CONTINUATION_PROMPT + " "
ERROR_MARKERS = ("Traceback (most recent call last)", "Error:")


def is_prompt(chunk: str) -> bool:
    """Check whether a chunk is the interpreter's idle prompt.

    Only tails the line parser flushed unterminated qualify; a printed line
    that reads ``>>>`` or ``...`` is program output.
    """
    if not isinstance(chunk, PromptChunk):
        return False
    return chunk.endswith(PRIMARY_PROMPT_TOKEN) or chunk == CONTINUATION_PROMPT_TOKEN


def has_error_marker(text: str) -> bool:
    return any(marker in text for marker in ERROR_MARKERS)


class Capture(ABC):
    """Accumulates chunks for one exchange and detects its completion."""

    #: Whether the queue should swallow the prompt that trails completion.
    settles = False

    def __init__(self):
        self._lines: List[str] = []

    @abstractmethod
    def feed(self, chunk: str) -> bool:
        """Consume one chunk.

        Returns:
            True once the exchange is complete
        """

    def result(self):
        """Captured output once complete. May raise a MpyManagerError."""
        return "\n".join(self._lines)

    def partial(self) -> str:
        """Whatever was accumulated so far (timeout diagnostics)."""
        return "\n".join(self._lines)


class PromptCapture(Capture):
    """Completes on the primary (``>>>``) or continuation (``...``) prompt.

    Args:
        echo: Command text the REPL will echo back; dropped from the output
    """

    def __init__(self, echo: Optional[str] = None):
        super().__init__()
        self._echo = echo.strip() if echo else None
        self._saw_output = False

    def feed(self, chunk: str) -> bool:
        if not is_prompt(chunk):
            self._keep(chunk)
            return False
        if chunk.endswith(PRIMARY_PROMPT_TOKEN):
            head = chunk[:-len(PRIMARY_PROMPT_TOKEN)]
            if head.strip():
                self._keep(head)
        return True

    def _keep(self, chunk: str) -> None:
        if not self._saw_output:
            candidate = chunk.strip()
            if not candidate:
                return
            self._saw_output = True
            if self._echo is not None:
                if candidate.startswith(PRIMARY_PROMPT):
                    candidate = candidate[len(PRIMARY_PROMPT):].strip()
                if candidate == self._echo:
                    return
        self._lines.append(chunk)


class WakeCapture(PromptCapture):
    """Prompt capture that also swallows the second prompt a wake
    sequence (interrupt + empty line) produces."""

    settles = True


class PasteCapture(PromptCapture):
    """Prompt capture for the tail of a paste mode exchange.

    Paste mode echoes every source line (the first without the ``=== ``
    prefix, since the banner's prompt was already consumed) and then a bare
    ``=== `` for the final line ending. Exactly that many echo lines are
    dropped; everything after them is output, even when it starts with
    ``===``.

    Args:
        source_lines: Lines of the pasted source, without line endings
    """

    def __init__(self, source_lines: Sequence[str]):
        super().__init__()
        self._source_lines = list(source_lines)
        self._echoed = 0
        self._in_output = False

    def _keep(self, chunk: str) -> None:
        if self._in_output:
            super()._keep(chunk)
            return
        line = chunk.rstrip("\r")
        if not line.strip():
            return
        prefixed = line.startswith(PASTE_PROMPT)
        bare = prefixed and not line[len(PASTE_PROMPT):].strip()
        if self._echoed == len(self._source_lines):
            # Anything here is the terminator; a stray line is output
            self._in_output = True
            if not bare:
                super()._keep(chunk)
            return
        if bare and self._source_lines[self._echoed].strip():
            # Prompt flushed apart from the line it prefixes
            return
        self._echoed += 1


class MarkerCapture(Capture):
    """Completes on the first chunk matching ``pattern``.

    Args:
        pattern: Regex (or plain substring) to look for
        settle: Whether a ``>>>`` prompt is expected after the marker
    """

    def __init__(self, pattern: Union[str, Pattern[str]], settle: bool = True):
        super().__init__()
        self._pattern = re.compile(re.escape(pattern)) if isinstance(pattern, str) else pattern
        self.settles = settle

    def feed(self, chunk: str) -> bool:
        self._lines.append(chunk)
        return self._pattern.search(chunk) is not None


@dataclass(frozen=True)
class Sentinels:
    """Namespaced start/end/error marker lines for one session."""
    start: str
    end: str
    error: str

    @classmethod
    def for_operation(cls, operation: str) -> Sentinels:
        nonce = uuid.uuid4().hex[:8]
        base = f"__MPYMGR_{operation.upper()}_{nonce}"
        return cls(start=f"{base}_START__", end=f"{base}_END__", error=f"{base}_ERROR__")


class SentinelCapture(Capture):
    """Bounded capture between a start and an end sentinel line.

    Sentinels only match whole lines, so the echoed command (which contains
    the sentinel text inside a string literal) never matches. An error
    sentinel line completes the capture and makes ``result()`` raise
    RemoteError carrying the remote exception text.
    """

    settles = True

    def __init__(self, sentinels: Sentinels):
        super().__init__()
        self._sentinels = sentinels
        self._capturing = False
        self._remote_error: Optional[str] = None

    @property
    def sentinels(self) -> Sentinels:
        return self._sentinels

    def feed(self, chunk: str) -> bool:
        line = chunk.strip()
        if line.startswith(self._sentinels.error):
            self._remote_error = line[len(self._sentinels.error):].strip()
            return True
        if not self._capturing:
            if line == self._sentinels.start:
                self._capturing = True
            return False
        if line == self._sentinels.end:
            return True
        self._lines.append(chunk)
        return False

    def result(self) -> str:
        if self._remote_error is not None:
            raise RemoteError(
                f"Remote error: {self._remote_error}",
                remote_message=self._remote_error,
            )
        return "\n".join(self._lines)
