"""Partition Information Table model.

A PartitionTable is rebuilt from a fresh device dump at the start of every
flash session and discarded when the session ends.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PartitionEntry:
    """One row of the PIT.

    Attributes:
        binary_type: Firmware type tag (0 = application processor,
            1 = communication processor).
        device_type: Storage type the partition lives on.
        identifier: Partition index, also used to order file splitting.
        attributes: Partition attribute flags.
        update_attributes: FOTA update attribute flags.
        block_size_or_offset: Start block (or block size on older layouts).
        block_count: Number of blocks in the partition.
        file_offset: Offset used by split files.
        file_size: Declared file size used by split files.
        name: Partition name used for device writes.
        file_name: Expected firmware file name.
        fota_name: FOTA delta file name.
    """

    binary_type: int
    device_type: int
    identifier: int
    attributes: int
    update_attributes: int
    block_size_or_offset: int
    block_count: int
    file_offset: int
    file_size: int
    name: str
    file_name: str
    fota_name: str = ""

    def matches_name(self, name: str) -> bool:
        """Case-insensitive comparison against the partition name."""
        return self.name.casefold() == name.casefold()

    def matches_file_name(self, file_name: str) -> bool:
        """Case-insensitive comparison against the expected file name."""
        return self.file_name.casefold() == file_name.casefold()


@dataclass(frozen=True)
class PartitionTable:
    """Ordered collection of PartitionEntry rows plus PIT header fields."""

    entries: tuple[PartitionEntry, ...] = ()
    com_tar2: str = ""
    cpu_bl_id: str = ""
    lu_count: int = 0
    _by_name: dict[str, PartitionEntry] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _by_file_name: dict[str, PartitionEntry] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        # First entry wins when a PIT repeats a name.
        for entry in self.entries:
            self._by_name.setdefault(entry.name.casefold(), entry)
            self._by_file_name.setdefault(entry.file_name.casefold(), entry)

    def __iter__(self) -> Iterator[PartitionEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def find_by_name(self, name: str) -> PartitionEntry | None:
        """Look up an entry by partition name (case-insensitive)."""
        return self._by_name.get(name.casefold())

    def find_by_file_name(self, file_name: str) -> PartitionEntry | None:
        """Look up an entry by expected file name (case-insensitive)."""
        return self._by_file_name.get(file_name.casefold())

    def find(self, key: str) -> PartitionEntry | None:
        """Look up an entry by partition name, then by file name."""
        return self.find_by_name(key) or self.find_by_file_name(key)


__all__ = ["PartitionEntry", "PartitionTable"]
