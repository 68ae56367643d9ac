"""Protocol layer: line parsing, completion captures, REPL control and handshake."""

from .capture import (
    Capture,
    MarkerCapture,
    PasteCapture,
    PromptCapture,
    SentinelCapture,
    Sentinels,
)
from .control import ControlSequence
from .handshake import VALIDATION_PROBES, Probe, negotiate, validate
from .line_parser import LineParser

__all__ = [
    "Capture",
    "MarkerCapture",
    "PasteCapture",
    "PromptCapture",
    "SentinelCapture",
    "Sentinels",
    "ControlSequence",
    "Probe",
    "VALIDATION_PROBES",
    "negotiate",
    "validate",
    "LineParser",
]
