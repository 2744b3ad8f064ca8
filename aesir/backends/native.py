"""In-process download-mode session backend.

The wire protocol itself is not implemented here. A DownloadProtocol object,
loaded from Settings.native_protocol, performs the individual protocol
steps; this backend drives those steps in order, splits each partition into
packets and sequences, and reports progress as ProgressEvent values.
"""

from __future__ import annotations

import logging
import lzma
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from aesir.backends.base import (
    FlashBackend,
    OutputCallback,
    ProgressCallback,
    ProgressEvent,
)
from aesir.errors import (
    AesirError,
    BackendLaunchError,
    DeviceIOError,
    FirmwareReadError,
    PermissionDeniedError,
)
from aesir.types import BackendKind, DeviceCandidate, ProgressPhase

if TYPE_CHECKING:
    from aesir.firmware.models import FlashSource
    from aesir.pit.models import PartitionEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PACKET_SIZE = 128 * 1024
DEFAULT_SEQUENCE_PACKETS = 800

# Errors a decompressing or archive-backed stream raises on bad input
STREAM_ERRORS = (OSError, EOFError, lzma.LZMAError, RuntimeError)


class DownloadProtocol(Protocol):
    """Steps of a download-mode protocol session.

    Implementations raise OSError (PermissionError for access problems) on
    transport failures.
    """

    def open(self, device: DeviceCandidate | None) -> None: ...

    def handshake(self) -> None: ...

    def begin_session(self) -> None: ...

    def send_total_bytes(self, total_bytes: int) -> None: ...

    def receive_pit(self) -> bytes: ...

    def begin_file_transfer(self, partition: PartitionEntry) -> None: ...

    def send_packet(self, data: bytes) -> None: ...

    def end_sequence(
        self, partition: PartitionEntry, sequence_bytes: int, is_last: bool
    ) -> None: ...

    def end_session(self) -> None: ...

    def reboot(self) -> None: ...

    def close(self) -> None: ...


class NativeSessionBackend(FlashBackend):
    """Drives a DownloadProtocol session in-process."""

    name = "native"
    kind = BackendKind.NATIVE
    supports_elevation = False

    def __init__(
        self,
        protocol_factory: Callable[[], DownloadProtocol],
        *,
        packet_size: int = DEFAULT_PACKET_SIZE,
        sequence_packets: int = DEFAULT_SEQUENCE_PACKETS,
        on_output: OutputCallback | None = None,
    ) -> None:
        super().__init__(on_output=on_output)
        self._protocol_factory = protocol_factory
        self.packet_size = packet_size
        self.sequence_packets = sequence_packets
        self._protocol: DownloadProtocol | None = None
        self._session_open = False

    @property
    def protocol(self) -> DownloadProtocol:
        if self._protocol is None:
            raise DeviceIOError("Native backend is not connected")
        return self._protocol

    def _call(self, step: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return func(*args)
        except AesirError:
            raise
        except PermissionError as e:
            raise PermissionDeniedError(f"{step}: {e}") from e
        except OSError as e:
            raise DeviceIOError(f"{step} failed: {e}") from e

    def _discard(self, protocol: DownloadProtocol) -> None:
        try:
            protocol.close()
        except OSError as e:
            logger.warning("Error closing unopened native session: %s", e)

    def connect(self, device: DeviceCandidate | None) -> None:
        try:
            protocol = self._protocol_factory()
        except (OSError, ImportError, RuntimeError, ValueError) as e:
            raise BackendLaunchError(self.name, str(e)) from e
        try:
            protocol.open(device)
        except PermissionError as e:
            self._discard(protocol)
            raise PermissionDeniedError(f"Opening device: {e}") from e
        except OSError as e:
            self._discard(protocol)
            raise BackendLaunchError(self.name, f"cannot open device: {e}") from e
        self._protocol = protocol
        logger.info(
            "Native session connected to %s",
            device.device_id if device else "default device",
        )
        self._call("Handshake", protocol.handshake)

    def begin_session(self) -> None:
        self._call("Begin session", self.protocol.begin_session)
        self._session_open = True

    def dump_pit(self) -> bytes:
        data = self._call("PIT receive", self.protocol.receive_pit)
        logger.debug("Received %d bytes of PIT data", len(data))
        return data

    def set_total_bytes(self, total_bytes: int) -> None:
        self._call("Total size", self.protocol.send_total_bytes, total_bytes)

    def _packets(self, source: FlashSource) -> Iterator[tuple[bytes, bool]]:
        """Yield (packet, is_last) pairs, reading one packet ahead."""

        def read() -> bytes:
            try:
                return source.stream.read(self.packet_size)
            except STREAM_ERRORS as e:
                raise FirmwareReadError(source.name, str(e)) from e

        chunk = read()
        if not chunk:
            raise FirmwareReadError(source.name, "source is empty")
        while chunk:
            following = read()
            yield chunk, not following
            chunk = following

    def _position(self, source: FlashSource, read_bytes: int, last: int) -> int:
        """Bytes of the declared length accounted for so far."""
        position = read_bytes
        if source.compressed and source.underlying is not None:
            try:
                position = source.underlying.tell()
            except (OSError, ValueError):
                position = last
        return max(last, min(position, source.length))

    def flash_partition(
        self, source: FlashSource, on_progress: ProgressCallback
    ) -> None:
        partition = source.partition
        sequence_size = self.packet_size * self.sequence_packets
        sequence_total = max(1, -(-source.length // sequence_size))
        logger.info(
            "Transferring %s to %s (%d bytes, %d sequences)",
            source.name,
            partition.name,
            source.length,
            sequence_total,
        )

        self._call("File transfer", self.protocol.begin_file_transfer, partition)

        read_bytes = 0
        position = 0
        sequence_index = 0
        sequence_bytes = 0
        packets_in_sequence = 0
        for packet, is_last in self._packets(source):
            self._call("Packet send", self.protocol.send_packet, packet)
            read_bytes += len(packet)
            sequence_bytes += len(packet)
            packets_in_sequence += 1
            position = self._position(source, read_bytes, position)
            if is_last:
                position = source.length
            on_progress(
                ProgressEvent.from_bytes(
                    partition.name,
                    ProgressPhase.TRANSFER,
                    position,
                    source.length,
                    sequence_index,
                    max(sequence_total, sequence_index + 1),
                )
            )

            if is_last or packets_in_sequence >= self.sequence_packets:
                self._call(
                    "Sequence commit",
                    self.protocol.end_sequence,
                    partition,
                    sequence_bytes,
                    is_last,
                )
                on_progress(
                    ProgressEvent.from_bytes(
                        partition.name,
                        ProgressPhase.COMMIT,
                        position,
                        source.length,
                        sequence_index,
                        max(sequence_total, sequence_index + 1),
                    )
                )
                sequence_index += 1
                sequence_bytes = 0
                packets_in_sequence = 0

        logger.debug("Sent %d bytes for %s", read_bytes, partition.name)

    def end_session(self) -> None:
        if self._session_open:
            self._call("End session", self.protocol.end_session)
            self._session_open = False

    def reboot(self) -> None:
        self._call("Reboot", self.protocol.reboot)

    def disconnect(self) -> None:
        protocol, self._protocol = self._protocol, None
        self._session_open = False
        if protocol is None:
            return
        try:
            protocol.close()
        except OSError as e:
            logger.warning("Error closing native session: %s", e)


__all__ = [
    "DEFAULT_PACKET_SIZE",
    "DEFAULT_SEQUENCE_PACKETS",
    "DownloadProtocol",
    "NativeSessionBackend",
]
