"""Resolved firmware units of work.

A FlashSource owns one single-use byte stream; a FlashPlan owns the sources
resolved from one user-selected file plus any archive handle they read from.
"""

import logging
import tarfile
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import IO, BinaryIO

from aesir.pit.models import PartitionEntry
from aesir.types import FirmwareSlot

logger = logging.getLogger(__name__)


@dataclass
class FlashSource:
    """One resolved partition write.

    Attributes:
        name: Logical file name (archive entry name or file base name).
        stream: Open, unread byte stream; decompressed when compressed is set.
        length: Declared length in bytes. For compressed sources this is the
            compressed length, so progress tracks compressed-byte position.
        partition: PIT entry this source is written to.
        slot: User slot the source was selected through.
        origin: File the source was resolved from.
        compressed: Whether the stream is wrapped in a decompressor.
        file_path: Path of a plain on-disk file holding exactly the bytes to
            write, when one exists (standalone uncompressed images).
    """

    name: str
    stream: BinaryIO
    length: int
    partition: PartitionEntry
    slot: FirmwareSlot | None = None
    origin: Path | None = None
    compressed: bool = False
    file_path: Path | None = None
    underlying: IO[bytes] | None = field(default=None, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the stream (and the raw stream under a decompressor)."""
        if self._closed:
            return
        self._closed = True
        try:
            self.stream.close()
        finally:
            if self.underlying is not None:
                self.underlying.close()


@dataclass
class FlashPlan:
    """Ordered FlashSource records resolved from one user-selected file."""

    source_path: Path
    sources: list[FlashSource] = field(default_factory=list)
    slot: FirmwareSlot | None = None
    resources: list[tarfile.TarFile | IO[bytes]] = field(
        default_factory=list, repr=False
    )

    @property
    def total_bytes(self) -> int:
        """Sum of declared lengths across all sources."""
        return sum(source.length for source in self.sources)

    def __iter__(self) -> Iterator[FlashSource]:
        return iter(self.sources)

    def __len__(self) -> int:
        return len(self.sources)

    def close(self) -> None:
        """Close every source stream, then the archive handles behind them."""
        for source in self.sources:
            try:
                source.close()
            except OSError as e:
                logger.warning("Error closing %s: %s", source.name, e)
        for resource in self.resources:
            try:
                resource.close()
            except OSError as e:
                logger.warning("Error closing %s: %s", self.source_path, e)
        self.resources.clear()

    def __enter__(self) -> "FlashPlan":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


__all__ = ["FlashPlan", "FlashSource"]
