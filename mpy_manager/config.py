"""Engine configuration.

Defaults: 10s per command, 30s per download,
15s per listing, baud candidates tried fast-first.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATES = (115200, 9600, 57600)
DEFAULT_DELIMITER = b"\r\n"

COMMAND_TIMEOUT = 10.0  # seconds
DOWNLOAD_TIMEOUT = 30.0
LIST_TIMEOUT = 15.0
UPLOAD_TIMEOUT = 30.0
DELETE_TIMEOUT = 10.0
RESET_TIMEOUT = 10.0
HANDSHAKE_TIMEOUT = 3.0
PROBE_TIMEOUT = 3.0

VALIDATION_PASS_RATIO = 0.6
UPLOAD_CHUNK_SIZE = 1024  # characters of file text per write step
SETTLE_TIME = 0.5  # wait for the prompt that trails a sentinel

READ_TIMEOUT = 0.1
READ_CHUNK_SIZE = 4096
OPEN_ATTEMPTS = 2
OPEN_BACKOFF = 0.2  # doubled after every failed attempt

ENV_PREFIX = "MPY_MANAGER_"


@dataclass(frozen=True)
class EngineConfig:
    """Tunable parameters for transports, queues and file transfers.

    Attributes:
        baudrates: Candidate baud rates tried in order when connecting
        delimiter: Line delimiter used by the line parser
        command_timeout: Deadline for plain commands and control sequences
        download_timeout: Deadline for a whole download session
        list_timeout: Deadline for a directory listing
        upload_timeout: Deadline for a whole upload session (all chunks)
        delete_timeout: Deadline for a delete
        reset_timeout: Deadline for interrupt + soft reset
        handshake_timeout: Bounded wait for the interpreter signature per baud
        probe_timeout: Deadline for each validation probe
        validation_pass_ratio: Minimum fraction of probes that must pass
        upload_chunk_size: Characters of file text per upload write step
        settle_time: How long to wait for the prompt trailing a sentinel
        read_timeout: pyserial read timeout used by the reader thread
        read_chunk_size: Maximum bytes per pyserial read
        open_attempts: Attempts to open a port before giving up on a baud
        open_backoff: Initial delay between open attempts
    """
    baudrates: Tuple[int, ...] = DEFAULT_BAUDRATES
    delimiter: bytes = DEFAULT_DELIMITER
    command_timeout: float = COMMAND_TIMEOUT
    download_timeout: float = DOWNLOAD_TIMEOUT
    list_timeout: float = LIST_TIMEOUT
    upload_timeout: float = UPLOAD_TIMEOUT
    delete_timeout: float = DELETE_TIMEOUT
    reset_timeout: float = RESET_TIMEOUT
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    probe_timeout: float = PROBE_TIMEOUT
    validation_pass_ratio: float = VALIDATION_PASS_RATIO
    upload_chunk_size: int = UPLOAD_CHUNK_SIZE
    settle_time: float = SETTLE_TIME
    read_timeout: float = READ_TIMEOUT
    read_chunk_size: int = READ_CHUNK_SIZE
    open_attempts: int = OPEN_ATTEMPTS
    open_backoff: float = OPEN_BACKOFF

    def __post_init__(self):
        if not self.baudrates:
            raise ValueError("At least one candidate baud rate is required")
        if not self.delimiter:
            raise ValueError("Delimiter must not be empty")
        if not 0.0 < self.validation_pass_ratio <= 1.0:
            raise ValueError("validation_pass_ratio must be in (0, 1]")
        if self.upload_chunk_size <= 0:
            raise ValueError("upload_chunk_size must be positive")
        if self.open_attempts < 1:
            raise ValueError("open_attempts must be at least 1")

    def candidate_baudrates(self, baudrate: Optional[int] = None) -> Tuple[int, ...]:
        """Baud rates to try: the caller's single rate, or the configured list."""
        if baudrate:
            return (baudrate,)
        return self.baudrates

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        """Build a config, overriding defaults from ``MPY_MANAGER_*`` variables.

        Recognized: ``MPY_MANAGER_BAUD`` (comma separated list),
        ``MPY_MANAGER_COMMAND_TIMEOUT``, ``MPY_MANAGER_DOWNLOAD_TIMEOUT``,
        ``MPY_MANAGER_LIST_TIMEOUT``, ``MPY_MANAGER_UPLOAD_TIMEOUT``,
        ``MPY_MANAGER_UPLOAD_CHUNK_SIZE``.
        """
        env = os.environ if environ is None else environ
        config = cls()

        baud = env.get(ENV_PREFIX + "BAUD")
        if baud:
            rates = tuple(int(part) for part in baud.split(",") if part.strip())
            config = replace(config, baudrates=rates)

        float_fields = {
            "COMMAND_TIMEOUT": "command_timeout",
            "DOWNLOAD_TIMEOUT": "download_timeout",
            "LIST_TIMEOUT": "list_timeout",
            "UPLOAD_TIMEOUT": "upload_timeout",
        }
        for suffix, field_name in float_fields.items():
            value = env.get(ENV_PREFIX + suffix)
            if value:
                config = replace(config, **{field_name: float(value)})

        chunk = env.get(ENV_PREFIX + "UPLOAD_CHUNK_SIZE")
        if chunk:
            config = replace(config, upload_chunk_size=int(chunk))

        logger.debug(f"Engine config: {config}")
        return config
