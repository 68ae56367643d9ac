"""File operations over the transaction queue.

Every operation is one queue entry, so a transfer owns the device's output
stream from its first write to its closing sentinel and no other command can
interleave with it.
"""
from __future__ import annotations

import json
import logging
import os
from functools import partial
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..config import EngineConfig
from ..device.transaction_queue import QueueEntry, Step
from ..errors import RemoteError, TransferVerificationFailed
from ..models import FileEntry
from ..protocol.capture import SentinelCapture, Sentinels
from ..protocol.control import encode_line
from . import scripts

if TYPE_CHECKING:
    from ..device.device import Device

logger = logging.getLogger(__name__)

MEMORY_LABELS = (
    ("mem_free", "Free memory"),
    ("mem_alloc", "Allocated memory"),
    ("flash_total", "Flash total"),
    ("flash_free", "Flash free"),
)


def remote_path_for(name: str) -> str:
    """Absolute remote path for a bare file name."""
    return name if name.startswith("/") else "/" + name


def join_remote(directory: str, name: str) -> str:
    return directory.rstrip("/") + "/" + name


def chunk_text(text: str, size: int) -> List[str]:
    """Split ``text`` into pieces of at most ``size`` characters.

    Always returns at least one piece so an empty file is still created.
    """
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


class FileTransfer:
    """Upload, download, list and delete files on one device."""

    def __init__(self, device: Device, config: Optional[EngineConfig] = None):
        self._device = device
        self._config = config or EngineConfig()

    def _run(self, operation: str, lines: List[str], sentinels: Sentinels, timeout: float) -> Any:
        capture = partial(SentinelCapture, sentinels)
        entry = QueueEntry(
            [Step(encode_line(line), capture) for line in lines],
            timeout=timeout,
            description=operation,
        )
        return self._device.submit(entry).result()

    # Upload

    def upload(self, local_path: str, remote_name: Optional[str] = None) -> str:
        """Copy a local text file onto the device.

        Returns:
            Remote path written
        """
        with open(local_path, "r", encoding="utf-8", newline="") as f:
            content = f.read()
        remote_path = remote_path_for(remote_name or os.path.basename(local_path))
        self.upload_text(content, remote_path)
        return remote_path

    def upload_text(self, content: str, remote_path: str) -> None:
        """Write ``content`` to ``remote_path`` and verify it landed.

        Raises:
            TransferVerificationFailed: if the file is missing or has the
                wrong size afterwards
        """
        sentinels = Sentinels.for_operation("upload")
        pieces = chunk_text(content, self._config.upload_chunk_size)
        lines = [
            scripts.write_chunk(sentinels, remote_path, piece, append=index > 0)
            for index, piece in enumerate(pieces)
        ]
        lines.append(scripts.verify(sentinels, remote_path))

        output = self._run(f"upload {remote_path}", lines, sentinels, self._config.upload_timeout)

        expected = len(content.encode("utf-8"))
        try:
            present, size = json.loads(output.strip())
        except ValueError as e:
            raise TransferVerificationFailed(f"Unreadable verification result for {remote_path}: {output!r}") from e
        if not present:
            raise TransferVerificationFailed(f"{remote_path} not found on {self._device.id} after upload")
        if size != expected:
            raise TransferVerificationFailed(
                f"{remote_path} has {size} bytes on {self._device.id}, expected {expected}"
            )
        logger.info(f"Uploaded {expected} bytes to {self._device.id}:{remote_path} in {len(pieces)} chunk(s)")

    # Download

    def download(self, remote_path: str, local_path: str) -> str:
        """Copy a remote file to ``local_path``.

        The local file is only written once the whole content arrived.

        Returns:
            The downloaded content
        """
        content = self.read_text(remote_path)
        with open(local_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        logger.info(f"Downloaded {self._device.id}:{remote_path} to {local_path}")
        return content

    def read_text(self, remote_path: str) -> str:
        sentinels = Sentinels.for_operation("download")
        output = self._run(
            f"download {remote_path}",
            [scripts.read(sentinels, remote_path)],
            sentinels,
            self._config.download_timeout,
        )
        try:
            content = json.loads(output.strip())
        except ValueError as e:
            raise TransferVerificationFailed(f"Malformed download payload for {remote_path}") from e
        if not isinstance(content, str):
            raise TransferVerificationFailed(f"Malformed download payload for {remote_path}")
        return content

    # Listing

    def list_files(self, dir_path: str = "/") -> List[FileEntry]:
        """List one remote directory.

        A remote listing error or malformed output yields an empty list.
        """
        sentinels = Sentinels.for_operation("list")
        try:
            output = self._run(
                f"list {dir_path}",
                [scripts.list_dir(sentinels, dir_path)],
                sentinels,
                self._config.list_timeout,
            )
        except RemoteError as e:
            logger.warning(f"Listing {dir_path} on {self._device.id} failed: {e.remote_message}")
            return []

        try:
            rows = json.loads(output.strip())
            return [
                FileEntry(
                    name=name,
                    path=join_remote(dir_path, name),
                    is_directory=bool(is_dir),
                    size=None if is_dir else int(size),
                    device_id=self._device.id,
                )
                for name, is_dir, size in rows
            ]
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not parse listing of {dir_path} on {self._device.id}: {e}")
            return []

    # Delete

    def delete(self, path: str, is_directory: bool = False) -> None:
        """Remove a remote file (or empty directory).

        Raises:
            RemoteError: carrying the device's exception text
        """
        sentinels = Sentinels.for_operation("delete")
        self._run(
            f"delete {path}",
            [scripts.delete(sentinels, path, is_directory)],
            sentinels,
            self._config.delete_timeout,
        )
        logger.info(f"Deleted {self._device.id}:{path}")

    # Memory

    def memory_info(self) -> Dict[str, int]:
        sentinels = Sentinels.for_operation("memory")
        output = self._run("memory info", [scripts.memory(sentinels)], sentinels, self._config.command_timeout)
        try:
            info = json.loads(output.strip())
        except ValueError as e:
            raise RemoteError(f"Unreadable memory report: {output!r}") from e
        return {key: int(value) for key, value in info.items()}


def format_memory_report(info: Dict[str, int]) -> str:
    """Human readable memory report."""
    lines = [f"{label}: {info[key]} bytes" for key, label in MEMORY_LABELS if key in info]
    if "cpu_freq" in info:
        lines.append(f"CPU frequency: {info['cpu_freq'] // 1_000_000} MHz")
    return "\n".join(lines)
