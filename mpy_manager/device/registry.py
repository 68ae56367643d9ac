"""Device registry.

In-memory directory of the boards this process talks to. The registry owns
every Device aggregate; callers only ever see immutable DeviceInfo
snapshots and address devices by id.

Connecting drives the lifecycle CONNECTING -> VALIDATING -> READY. Any
failure on the way moves the device to ERROR, closes its transport and
removes it again, so a later connect to the same port starts from scratch.
A transport fault on a connected device does the same.
"""
from __future__ import annotations

import logging
import threading
from functools import partial
from typing import Callable, Dict, List, Optional

from ..config import EngineConfig
from ..errors import DeviceInUse, MpyManagerError, NotConnected, TransportFailure, ValidationFailed
from ..files.transfer import FileTransfer, format_memory_report
from ..models import DeviceInfo, DeviceState, FileEntry
from ..protocol.capture import PasteCapture, PromptCapture
from ..protocol.control import ControlSequence, command_line, encode_line, extract_version, UNKNOWN_VERSION
from ..protocol.handshake import TransportFactory, negotiate, validate
from ..transport.base import Transport
from ..transport.serial import SerialTransport
from .device import Device, device_id_for
from .port_finder import PortInfo, is_port_available, list_ports as find_ports
from .transaction_queue import QueueEntry, Step

logger = logging.getLogger(__name__)

StateCallback = Callable[[DeviceInfo], None]


def serial_transport_factory(port: str, baudrate: int, config: EngineConfig) -> Transport:
    """Default transport factory: a pyserial backed SerialTransport."""
    return SerialTransport(
        port,
        baudrate,
        timeout=config.read_timeout,
        chunk_size=config.read_chunk_size,
        open_attempts=config.open_attempts,
        open_backoff=config.open_backoff,
    )


class DeviceRegistry:
    """Connect, address and operate MicroPython boards by id.

    Example:
        >>> registry = DeviceRegistry()
        >>> info = registry.connect("/dev/ttyUSB0")
        >>> registry.run_command(info.id, "print('hi')")
        'hi'
        >>> registry.disconnect(info.id)
    """

    def __init__(self,
                 config: Optional[EngineConfig] = None,
                 transport_factory: Optional[TransportFactory] = None):
        """Initialize device registry.

        Args:
            config: Engine configuration, defaults to EngineConfig()
            transport_factory: Builds a Transport for (port, baudrate, config);
                defaults to pyserial
        """
        self._config = config or EngineConfig()
        self._transport_factory = transport_factory or serial_transport_factory

        self._devices: Dict[str, Device] = {}
        self._lock = threading.Lock()

        self._state_callbacks: List[StateCallback] = []
        self._callback_lock = threading.Lock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    # Discovery

    def list_ports(self, only_likely: bool = False) -> List[PortInfo]:
        """Enumerate serial ports on this machine."""
        return find_ports(only_likely=only_likely)

    # Lifecycle

    def connect(self, port: str, baudrate: Optional[int] = None) -> DeviceInfo:
        """Open, handshake and validate the board on ``port``.

        Args:
            port: Serial port path
            baudrate: Single baud rate to use instead of the candidate list

        Returns:
            Snapshot of the READY device

        Raises:
            NotConnected: if a serial port is not present on this machine
            DeviceInUse: if a connect for this port is already in progress
            HandshakeFailed: if no candidate baud rate answered
            ValidationFailed: if too many capability probes failed
        """
        if self._transport_factory is serial_transport_factory and not is_port_available(port):
            raise NotConnected(f"Serial port {port} not found")

        device_id = device_id_for(port)
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is not None:
                if existing.state in (DeviceState.READY, DeviceState.BUSY):
                    logger.info(f"{device_id} already connected")
                    return existing.snapshot()
                raise DeviceInUse(f"{port} is already being connected ({existing.state.value})")
            device = Device(port, self._config)
            self._devices[device_id] = device

        logger.info(f"Connecting to {port}")
        try:
            self._advance(device, DeviceState.CONNECTING)
            _, version = negotiate(
                device,
                self._transport_factory,
                self._config,
                baudrate=baudrate,
                on_fault=partial(self._on_transport_fault, device),
            )
            device.version = version

            self._advance(device, DeviceState.VALIDATING)
            report = validate(device.queue, self._config)
            device.issues = report.issues
            if not report.is_valid:
                raise ValidationFailed(
                    f"{port} failed validation ({report.passed_count}/{report.total} probes passed)",
                    report.issues,
                )

            self._advance(device, DeviceState.READY)
        except MpyManagerError as e:
            logger.error(f"Connecting to {port} failed: {e}")
            self._fail(device, e)
            raise

        info = device.snapshot()
        logger.info(f"{device_id} ready at {info.baudrate} baud (MicroPython {info.version})")
        return info

    def disconnect(self, device_id: str) -> None:
        """Close the device and reject everything still queued for it.

        Raises:
            NotConnected: if the id is unknown
        """
        with self._lock:
            device = self._devices.pop(device_id, None)
        if device is None:
            raise NotConnected(f"Unknown device {device_id}")

        device.retire()
        device.transition(DeviceState.DISCONNECTED)
        logger.info(f"Disconnected {device_id}")
        self._notify_state(device.snapshot())

    def disconnect_all(self) -> None:
        with self._lock:
            device_ids = list(self._devices)
        for device_id in device_ids:
            try:
                self.disconnect(device_id)
            except NotConnected:
                pass

    def _advance(self, device: Device, state: DeviceState) -> None:
        """Connect-time transition; fails if the device was disconnected meanwhile."""
        with self._lock:
            if self._devices.get(device.id) is not device:
                raise NotConnected(f"{device.id} was disconnected while connecting")
            device.transition(state)
        self._notify_state(device.snapshot())

    def _fail(self, device: Device, error: MpyManagerError) -> None:
        """Move to ERROR, tear down and remove. No-op if already removed."""
        with self._lock:
            if self._devices.get(device.id) is not device:
                return
            del self._devices[device.id]
            device.transition(DeviceState.ERROR)

        device.retire(error if isinstance(error, TransportFailure) else None)
        self._notify_state(device.snapshot())

    def _on_transport_fault(self, device: Device, error: Exception) -> None:
        logger.error(f"Transport fault on {device.id}: {error}")
        self._fail(device, TransportFailure(f"{device.port}: {error}"))

    # Lookup

    def _require(self, device_id: str) -> Device:
        with self._lock:
            device = self._devices.get(device_id)
        if device is None:
            raise NotConnected(f"Unknown device {device_id}")
        if device.state not in (DeviceState.READY, DeviceState.BUSY):
            raise NotConnected(f"{device_id} is not ready ({device.state.value})")
        return device

    def get_device(self, device_id: str) -> Optional[DeviceInfo]:
        with self._lock:
            device = self._devices.get(device_id)
        return device.snapshot() if device is not None else None

    def devices(self) -> List[DeviceInfo]:
        with self._lock:
            devices = list(self._devices.values())
        return [device.snapshot() for device in devices]

    # Commands

    def run_command(self, device_id: str, text: str, timeout: Optional[float] = None) -> str:
        """Run one REPL command and return its output (without the echo).

        Multi-line text is sent as a single ``exec()`` line.
        """
        device = self._require(device_id)
        line = command_line(text)
        future = device.queue.enqueue(
            encode_line(line),
            timeout=timeout,
            capture=lambda: PromptCapture(echo=line),
        )
        return future.result()

    def run_script(self, device_id: str, source: str, timeout: Optional[float] = None) -> str:
        """Run a block of source through paste mode as one queue entry."""
        device = self._require(device_id)
        lines = source.replace("\r\n", "\n").rstrip("\n").split("\n")
        while lines and not lines[0].strip():
            lines.pop(0)
        # Trailing line ending so the last echoed line is a bare "=== " prompt
        body = "".join(line + "\r\n" for line in lines)
        entry = QueueEntry(
            [
                Step(ControlSequence.ENTER_PASTE.payload, ControlSequence.ENTER_PASTE.capture),
                Step(body.encode("utf-8") + ControlSequence.EXIT_PASTE.payload, partial(PasteCapture, lines)),
            ],
            timeout=timeout if timeout is not None else self._config.command_timeout,
            description="paste script",
        )
        return device.submit(entry).result()

    def send_control(self, device_id: str, control: ControlSequence, timeout: Optional[float] = None) -> str:
        """Send one control sequence through the device's queue."""
        device = self._require(device_id)
        return device.queue.enqueue(
            control.payload,
            timeout=timeout,
            capture=control.capture,
            description=control.value,
        ).result()

    def interrupt(self, device_id: str) -> str:
        return self.send_control(device_id, ControlSequence.INTERRUPT)

    def reset_device(self, device_id: str) -> str:
        """Interrupt whatever runs, then soft reset.

        Returns:
            Boot output printed by the interpreter
        """
        device = self._require(device_id)
        entry = QueueEntry(
            [
                Step(ControlSequence.INTERRUPT.payload, ControlSequence.INTERRUPT.capture),
                Step(ControlSequence.SOFT_RESET.payload, ControlSequence.SOFT_RESET.capture),
            ],
            timeout=self._config.reset_timeout,
            description="soft reset",
        )
        output = device.submit(entry).result()
        version = extract_version(output)
        if version != UNKNOWN_VERSION:
            device.version = version
        logger.info(f"Soft reset {device_id}")
        return output

    # Files

    def upload_file(self, device_id: str, local_path: str, remote_name: Optional[str] = None) -> str:
        return FileTransfer(self._require(device_id), self._config).upload(local_path, remote_name)

    def download_file(self, device_id: str, remote_path: str, local_path: str) -> str:
        return FileTransfer(self._require(device_id), self._config).download(remote_path, local_path)

    def list_files(self, device_id: str, dir_path: str = "/") -> List[FileEntry]:
        return FileTransfer(self._require(device_id), self._config).list_files(dir_path)

    def delete_file(self, device_id: str, path: str, is_directory: bool = False) -> None:
        FileTransfer(self._require(device_id), self._config).delete(path, is_directory)

    def get_memory_info(self, device_id: str) -> str:
        info = FileTransfer(self._require(device_id), self._config).memory_info()
        return format_memory_report(info)

    # Notifications

    def subscribe_state(self, callback: StateCallback) -> Callable[[], None]:
        """Subscribe to device state changes.

        Returns:
            Unsubscribe function
        """
        with self._callback_lock:
            self._state_callbacks.append(callback)

        def unsubscribe():
            with self._callback_lock:
                if callback in self._state_callbacks:
                    self._state_callbacks.remove(callback)

        return unsubscribe

    def subscribe_output(self, device_id: str, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to a device's raw text feed (informational only)."""
        with self._lock:
            device = self._devices.get(device_id)
        if device is None:
            raise NotConnected(f"Unknown device {device_id}")
        return device.subscribe_output(callback)

    def _notify_state(self, info: DeviceInfo) -> None:
        with self._callback_lock:
            callbacks = list(self._state_callbacks)

        for callback in callbacks:
            try:
                callback(info)
            except Exception as e:
                logger.error(f"Error in state callback: {e}")

    def __enter__(self) -> DeviceRegistry:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect_all()
