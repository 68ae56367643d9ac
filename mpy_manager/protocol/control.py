"""Wire vocabulary of the MicroPython REPL.

Control sequences are single bytes submitted through the same transaction
queue as ordinary commands, so they can never race ahead of or behind queued
user commands. Each carries the capture that recognises the interpreter's
reply to it.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Callable, Dict

from .capture import Capture, MarkerCapture, PromptCapture

LINE_ENDING = "\r\n"

CTRL_A = b"\x01"  # enter raw REPL
CTRL_B = b"\x02"  # exit raw REPL (friendly REPL)
CTRL_C = b"\x03"  # interrupt
CTRL_D = b"\x04"  # soft reset / finish paste / execute in raw REPL
CTRL_E = b"\x05"  # enter paste mode

RAW_REPL_BANNER = re.compile(r"raw REPL; CTRL-B to exit")
PASTE_MODE_BANNER = re.compile(r"paste mode; Ctrl-C to cancel")


class ControlSequence(Enum):
    """Interpreter control payloads and the capture that ends each one."""
    INTERRUPT = "interrupt"
    ENTER_RAW = "enter_raw"
    EXIT_RAW = "exit_raw"
    ENTER_PASTE = "enter_paste"
    EXIT_PASTE = "exit_paste"
    SOFT_RESET = "soft_reset"

    @property
    def payload(self) -> bytes:
        return _PAYLOADS[self]

    def capture(self) -> Capture:
        return _CAPTURES[self]()


_PAYLOADS = {
    ControlSequence.INTERRUPT: CTRL_C,
    ControlSequence.ENTER_RAW: CTRL_A,
    ControlSequence.EXIT_RAW: CTRL_B,
    ControlSequence.ENTER_PASTE: CTRL_E,
    ControlSequence.EXIT_PASTE: CTRL_D,
    ControlSequence.SOFT_RESET: CTRL_D,
}

_CAPTURES: Dict[ControlSequence, Callable[[], Capture]] = {
    ControlSequence.INTERRUPT: PromptCapture,
    # The raw prompt is a bare ">" that is never line terminated.
    ControlSequence.ENTER_RAW: lambda: MarkerCapture(RAW_REPL_BANNER, settle=False),
    ControlSequence.EXIT_RAW: PromptCapture,
    ControlSequence.ENTER_PASTE: lambda: MarkerCapture(PASTE_MODE_BANNER, settle=False),
    ControlSequence.EXIT_PASTE: PromptCapture,
    ControlSequence.SOFT_RESET: PromptCapture,
}

WAKE_PAYLOAD = CTRL_C + LINE_ENDING.encode()
VERSION_PROBE = "import sys; print(sys.implementation)"
INTERPRETER_MARKER = re.compile(r"micropython", re.IGNORECASE)

_VERSION_TUPLE = re.compile(r"version=\((\d+),\s*(\d+),\s*(\d+)")
_VERSION_BANNER = re.compile(r"MicroPython v(\d+\.\d+\.\d+)")
UNKNOWN_VERSION = "unknown"


def extract_version(text: str) -> str:
    """Pull the interpreter version out of probe output or the boot banner."""
    match = _VERSION_TUPLE.search(text)
    if match:
        return ".".join(match.groups())
    match = _VERSION_BANNER.search(text)
    if match:
        return match.group(1)
    return UNKNOWN_VERSION


def python_literal(text: str) -> str:
    """Quote ``text`` as an ASCII-only string literal both CPython and
    MicroPython parse back to the same value (``\\xNN``, ``\\uNNNN`` and
    ``\\UNNNNNNNN`` escapes, never surrogate pairs)."""
    return ascii(text)


def exec_line(source: str) -> str:
    """Wrap multi-line source into a single REPL line."""
    return f"exec({python_literal(source)})"


def command_line(text: str) -> str:
    """Normalize user command text into exactly one REPL line.

    Single-line text is sent as-is; multi-line blocks are wrapped in
    ``exec()`` so one write yields exactly one prompt.
    """
    normalized = text.replace("\r\n", "\n").rstrip("\n")
    if "\n" in normalized:
        return exec_line(normalized)
    return normalized


def encode_line(line: str) -> bytes:
    return (line + LINE_ENDING).encode("utf-8")
