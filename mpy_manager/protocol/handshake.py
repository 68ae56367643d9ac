"""Connect-time handshake and validation.

Connecting walks the candidate baud rates fast-first. For each one the
transport is opened, a wake sequence and a version probe go through the
transaction queue, and the output is searched for the interpreter's
self-identifying marker. The first rate that answers wins; every other
candidate is closed before the next is tried.

Validation then runs a fixed battery of capability probes over the queue.
Each probe is judged by its actual output (expected text present, no error
marker), never by how recently the device produced bytes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from ..config import EngineConfig
from ..errors import HandshakeFailed, MpyManagerError, OperationTimeout, TransportFailure
from ..models import ProbeResult, ValidationReport
from .capture import MarkerCapture, PromptCapture, WakeCapture, has_error_marker
from .control import INTERPRETER_MARKER, VERSION_PROBE, WAKE_PAYLOAD, encode_line, extract_version

if TYPE_CHECKING:
    from ..device.device import Device
    from ..device.transaction_queue import TransactionQueue
    from ..transport.base import Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, int, EngineConfig], "Transport"]


@dataclass(frozen=True)
class Probe:
    """One capability probe.

    Attributes:
        description: Issue reported when the probe fails
        command: REPL line to run
        expect: Output line that must be present, or None
    """
    description: str
    command: str
    expect: Optional[str] = None


VALIDATION_PROBES: Tuple[Probe, ...] = (
    Probe("Device is not responding to basic commands", ""),
    Probe("Interpreter is not evaluating arithmetic (1+1)", "1+1", expect="2"),
    Probe("Python import system is not working (import sys)", "import sys"),
    Probe("micropython module unavailable - may not be MicroPython", "import micropython"),
    Probe("machine module unavailable - no hardware access", "import machine"),
)


def probe_interpreter(queue: TransactionQueue, timeout: float) -> str:
    """Wake the REPL and ask it to identify itself.

    Returns:
        Interpreter version (``"unknown"`` if the marker had no version)

    Raises:
        OperationTimeout: if the marker did not show up in time
    """
    from ..device.transaction_queue import QueueEntry, Step

    entry = QueueEntry(
        [
            Step(WAKE_PAYLOAD, WakeCapture),
            Step(encode_line(VERSION_PROBE), lambda: MarkerCapture(INTERPRETER_MARKER)),
        ],
        timeout=timeout,
        description="handshake",
    )
    output = queue.submit(entry).result()
    return extract_version(output)


def negotiate(device: Device,
              transport_factory: TransportFactory,
              config: EngineConfig,
              baudrate: Optional[int] = None,
              on_fault: Optional[Callable[[Exception], None]] = None) -> Tuple[int, str]:
    """Find the first candidate baud rate at which the interpreter answers.

    On success the device stays bound to the winning transport.

    Returns:
        (baud rate, interpreter version)

    Raises:
        HandshakeFailed: once every candidate was tried
    """
    candidates = config.candidate_baudrates(baudrate)
    failures: List[str] = []

    for candidate in candidates:
        transport = transport_factory(device.port, candidate, config)
        try:
            device.bind(transport, on_fault=on_fault)
        except TransportFailure as e:
            logger.info(f"{device.port} @ {candidate}: open failed: {e}")
            failures.append(f"{candidate}: {e}")
            continue

        try:
            version = probe_interpreter(device.queue, config.handshake_timeout)
        except MpyManagerError as e:
            logger.info(f"{device.port} @ {candidate}: no interpreter signature ({e})")
            failures.append(f"{candidate}: {e}")
            device.unbind()
            continue

        logger.info(f"{device.port} @ {candidate}: MicroPython {version}")
        return candidate, version

    raise HandshakeFailed(
        f"No MicroPython interpreter found on {device.port} "
        f"(tried {', '.join(str(rate) for rate in candidates)}): {'; '.join(failures)}",
        attempted_baudrates=candidates,
    )


def run_probe(queue: TransactionQueue, probe: Probe, timeout: float) -> ProbeResult:
    """Run one probe; a timeout counts as a failure, transport faults propagate."""
    try:
        output = queue.enqueue(
            encode_line(probe.command),
            timeout=timeout,
            capture=lambda: PromptCapture(echo=probe.command),
            description=f"probe {probe.command!r}",
        ).result()
    except OperationTimeout as e:
        return ProbeResult(probe.description, passed=False, output=e.partial_output)

    passed = not has_error_marker(output)
    if passed and probe.expect is not None:
        passed = probe.expect in (line.strip() for line in output.splitlines())
    return ProbeResult(probe.description, passed=passed, output=output)


def validate(queue: TransactionQueue,
             config: EngineConfig,
             probes: Sequence[Probe] = VALIDATION_PROBES) -> ValidationReport:
    """Run the probe battery and judge it against the configured pass ratio."""
    results = []
    for probe in probes:
        result = run_probe(queue, probe, config.probe_timeout)
        if not result.passed:
            logger.warning(f"Validation probe failed: {probe.description}")
        results.append(result)

    report = ValidationReport(results=tuple(results), pass_ratio=config.validation_pass_ratio)
    logger.info(f"Validation: {report.passed_count}/{report.total} probes passed")
    return report
