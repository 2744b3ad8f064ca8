"""Backend capability interface and the normalized progress event.

Every backend, in-process or external, implements FlashBackend and reports
progress as ProgressEvent values, so the orchestrator never sees how a
backend measures progress.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from aesir.types import BackendKind, DeviceCandidate, ProgressPhase

if TYPE_CHECKING:
    from aesir.firmware.models import FlashSource
    from aesir.privilege.manager import Elevation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one partition transfer.

    Attributes:
        partition: Partition being written.
        phase: Transfer to the device buffer, or device committing to flash.
        bytes_sent: Bytes of the partition's declared length accounted for.
        total_bytes: Declared length of the partition.
        percent: Partition percentage in [0, 100].
        sequence_index: Index of the current sequence (chunk).
        sequence_total: Number of sequences expected for the partition.
    """

    partition: str
    phase: ProgressPhase
    bytes_sent: int
    total_bytes: int
    percent: int
    sequence_index: int = 0
    sequence_total: int = 1

    @classmethod
    def from_bytes(
        cls,
        partition: str,
        phase: ProgressPhase,
        bytes_sent: int,
        total_bytes: int,
        sequence_index: int = 0,
        sequence_total: int = 1,
    ) -> ProgressEvent:
        """Build an event whose percent is floor(bytes_sent * 100 / total_bytes)."""
        if total_bytes > 0:
            percent = bytes_sent * 100 // total_bytes
        else:
            percent = 100
        return cls(
            partition=partition,
            phase=phase,
            bytes_sent=bytes_sent,
            total_bytes=total_bytes,
            percent=max(0, min(100, percent)),
            sequence_index=sequence_index,
            sequence_total=sequence_total,
        )


ProgressCallback = Callable[[ProgressEvent], None]
OutputCallback = Callable[[str], None]


class FlashBackend(ABC):
    """Capability set shared by all flashing backends.

    A backend instance represents one connection and protocol session with
    the device. It is owned by a single orchestrator session and released
    with disconnect().
    """

    name: ClassVar[str] = "backend"
    kind: ClassVar[BackendKind]
    supports_elevation: ClassVar[bool] = False

    def __init__(
        self,
        *,
        on_output: OutputCallback | None = None,
        requires_elevation: bool = False,
    ) -> None:
        self._on_output = on_output
        self.requires_elevation = requires_elevation
        self._elevation: Elevation | None = None

    @property
    def is_elevated(self) -> bool:
        return self._elevation is not None

    def elevate(self, elevation: Elevation) -> None:
        """Run subsequent invocations with elevated rights.

        Raises:
            NotImplementedError: The backend cannot be elevated.
        """
        if not self.supports_elevation:
            raise NotImplementedError(f"{self.name} cannot run with elevated rights")
        logger.debug("Backend %s will run elevated", self.name)
        self._elevation = elevation

    def emit_output(self, line: str) -> None:
        """Forward an opaque log line from the backend."""
        logger.info("[%s] %s", self.name, line)
        if self._on_output is not None:
            self._on_output(line)

    @abstractmethod
    def connect(self, device: DeviceCandidate | None) -> None:
        """Establish the connection to the device."""

    @abstractmethod
    def begin_session(self) -> None:
        """Open the protocol session."""

    @abstractmethod
    def dump_pit(self) -> bytes:
        """Return the raw PIT bytes of the attached device."""

    @abstractmethod
    def set_total_bytes(self, total_bytes: int) -> None:
        """Announce the aggregate size of everything about to be flashed."""

    @abstractmethod
    def flash_partition(
        self, source: FlashSource, on_progress: ProgressCallback
    ) -> None:
        """Write one source to its partition, consuming its stream."""

    @abstractmethod
    def end_session(self) -> None:
        """Close the protocol session."""

    @abstractmethod
    def reboot(self) -> None:
        """Reboot the device."""

    @abstractmethod
    def disconnect(self) -> None:
        """Release backend resources. Safe to call more than once."""


BackendFactory = Callable[[OutputCallback | None], FlashBackend]


__all__ = [
    "BackendFactory",
    "FlashBackend",
    "OutputCallback",
    "ProgressCallback",
    "ProgressEvent",
]
