"""Firmware source resolution.

This module turns a user-selected file into a FlashPlan:
- Standalone images (optionally compressed) become a plan of length one
- Tar archives (.tar, .tar.md5) contribute every top-level, data-bearing
  entry whose name matches a PIT file name
- Compressed streams (.lz4, .xz) are wrapped in a streaming decompressor

Archives are read in two passes: the first lists matching members so the
aggregate declared size is known before any byte is sent, the second reopens
the archive and opens one stream per matched member.
"""

import logging
import lzma
import tarfile
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import IO, BinaryIO

import lz4.frame

from aesir.errors import (
    EmptyFlashPlanError,
    FirmwareReadError,
    NoMatchingPartitionError,
)
from aesir.firmware.models import FlashPlan, FlashSource
from aesir.pit.models import PartitionEntry, PartitionTable
from aesir.types import FirmwareSlot

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".tar.md5", ".tar")


def _open_lz4(raw: IO[bytes]) -> BinaryIO:
    return lz4.frame.LZ4FrameFile(raw, mode="rb")


def _open_xz(raw: IO[bytes]) -> BinaryIO:
    return lzma.LZMAFile(raw, mode="rb")


DECOMPRESSORS: dict[str, Callable[[IO[bytes]], BinaryIO]] = {
    ".lz4": _open_lz4,
    ".xz": _open_xz,
}


def is_archive(path: str | Path) -> bool:
    """Check whether a path has a container-archive extension."""
    name = Path(path).name.lower()
    return any(name.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def compression_suffix(name: str) -> str | None:
    """Return the compressed-stream suffix of a name, if any."""
    lowered = name.lower()
    for suffix in DECOMPRESSORS:
        if lowered.endswith(suffix):
            return suffix
    return None


def strip_compression_suffix(name: str) -> str:
    """Remove a compressed-stream suffix from a name."""
    suffix = compression_suffix(name)
    return name[: -len(suffix)] if suffix else name


def match_file_name(pit: PartitionTable, name: str) -> PartitionEntry | None:
    """Match a file name against PIT file names.

    The exact name is tried first, then the name without its compression
    suffix (boot.img.lz4 is flashed to the entry expecting boot.img).

    Args:
        pit: Partition table to search.
        name: File base name.

    Returns:
        Matching entry, or None.
    """
    entry = pit.find_by_file_name(name)
    if entry is None:
        stripped = strip_compression_suffix(name)
        if stripped != name:
            entry = pit.find_by_file_name(stripped)
    return entry


def _wrap_stream(name: str, raw: IO[bytes]) -> tuple[BinaryIO, bool]:
    suffix = compression_suffix(name)
    if suffix is None:
        return raw, False  # type: ignore[return-value]
    logger.debug("Wrapping %s in %s decompressor", name, suffix)
    return DECOMPRESSORS[suffix](raw), True


def _is_flashable(member: tarfile.TarInfo) -> bool:
    """Only top-level regular files carry flashable data."""
    return member.isfile() and len(PurePosixPath(member.name).parts) == 1


def resolve_standalone(
    path: Path,
    pit: PartitionTable,
    partition_name: str | None = None,
    *,
    slot: FirmwareSlot | None = None,
) -> FlashPlan:
    """Resolve a raw or compressed image file into a plan of length one.

    Args:
        path: Image file.
        pit: Partition table of the attached device.
        partition_name: Explicit target partition name (tried first).
        slot: User slot the file was selected through.

    Returns:
        FlashPlan with a single source.

    Raises:
        NoMatchingPartitionError: Neither the explicit name nor the file
            name matches a PIT entry.
        FirmwareReadError: File could not be opened.
    """
    entry: PartitionEntry | None = None
    if partition_name:
        entry = pit.find_by_name(partition_name)
        if entry is None:
            logger.debug(
                "Partition %s not in PIT, falling back to file name match",
                partition_name,
            )
    if entry is None:
        entry = match_file_name(pit, path.name)
    if entry is None:
        raise NoMatchingPartitionError(str(path), partition_name)

    try:
        length = path.stat().st_size
        raw = path.open("rb")
    except OSError as e:
        raise FirmwareReadError(str(path), str(e)) from e

    stream, compressed = _wrap_stream(path.name, raw)
    source = FlashSource(
        name=path.name,
        stream=stream,
        length=length,
        partition=entry,
        slot=slot,
        origin=path,
        compressed=compressed,
        file_path=None if compressed else path,
        underlying=raw if compressed else None,
    )
    logger.info(
        "Resolved %s -> partition %s (%d bytes%s)",
        path.name,
        entry.name,
        length,
        ", compressed" if compressed else "",
    )
    return FlashPlan(source_path=path, sources=[source], slot=slot)


def list_archive_matches(
    path: Path, pit: PartitionTable
) -> list[tuple[tarfile.TarInfo, PartitionEntry]]:
    """First pass: list archive members that match a PIT entry.

    Args:
        path: Tar archive.
        pit: Partition table of the attached device.

    Returns:
        (member, entry) pairs in archive order.

    Raises:
        FirmwareReadError: Archive could not be read.
    """
    matches: list[tuple[tarfile.TarInfo, PartitionEntry]] = []
    try:
        with tarfile.open(path, "r:") as tar:
            for member in tar:
                if not _is_flashable(member):
                    logger.debug("Skipping non-flashable entry %s", member.name)
                    continue
                entry = match_file_name(pit, PurePosixPath(member.name).name)
                if entry is None:
                    logger.debug("No partition for archive entry %s", member.name)
                    continue
                matches.append((member, entry))
    except (tarfile.TarError, OSError) as e:
        raise FirmwareReadError(str(path), str(e)) from e
    return matches


def resolve_archive(
    path: Path,
    pit: PartitionTable,
    *,
    slot: FirmwareSlot | None = None,
) -> FlashPlan:
    """Resolve a tar archive into a plan of matched entries.

    Args:
        path: Tar archive (.tar or .tar.md5).
        pit: Partition table of the attached device.
        slot: User slot the archive was selected through.

    Returns:
        FlashPlan with one source per matched entry, in archive order.

    Raises:
        EmptyFlashPlanError: No entry matched a PIT file name.
        FirmwareReadError: Archive could not be read.
    """
    matches = list_archive_matches(path, pit)
    if not matches:
        raise EmptyFlashPlanError(str(path))

    logger.info(
        "Archive %s: %d flashable entries, %d bytes declared",
        path.name,
        len(matches),
        sum(member.size for member, _ in matches),
    )

    plan = FlashPlan(source_path=path, slot=slot)
    try:
        tar = tarfile.open(path, "r:")
        plan.resources.append(tar)
        # Names may repeat in an archive; header offsets do not
        wanted = {listed.offset: entry for listed, entry in matches}
        for member in tar:
            entry = wanted.pop(member.offset, None)
            if entry is None:
                continue
            raw = tar.extractfile(member)
            if raw is None:
                raise FirmwareReadError(str(path), f"entry {member.name} has no data")
            name = PurePosixPath(member.name).name
            stream, compressed = _wrap_stream(name, raw)
            plan.sources.append(
                FlashSource(
                    name=name,
                    stream=stream,
                    length=member.size,
                    partition=entry,
                    slot=slot,
                    origin=path,
                    compressed=compressed,
                    underlying=raw if compressed else None,
                )
            )
        if wanted:
            raise FirmwareReadError(str(path), "archive changed while it was read")
    except FirmwareReadError:
        plan.close()
        raise
    except (tarfile.TarError, OSError) as e:
        plan.close()
        raise FirmwareReadError(str(path), str(e)) from e

    return plan


def resolve(
    file_path: str | Path,
    pit: PartitionTable,
    partition_name: str | None = None,
    *,
    slot: FirmwareSlot | None = None,
) -> FlashPlan:
    """Resolve a user-selected file into a FlashPlan.

    Every returned source has a PIT entry and an open stream at offset zero.
    Ownership of the streams passes to the caller, who must close the plan.

    Args:
        file_path: Selected file.
        pit: Partition table of the attached device.
        partition_name: Explicit partition for a standalone image.
        slot: User slot the file was selected through.

    Returns:
        FlashPlan for the file.

    Raises:
        FirmwareReadError: File missing or unreadable.
        NoMatchingPartitionError: Standalone image matched nothing.
        EmptyFlashPlanError: Archive matched nothing.
    """
    path = Path(file_path)
    if not path.is_file():
        raise FirmwareReadError(str(path), "file not found")

    if is_archive(path):
        if partition_name:
            logger.warning(
                "Ignoring partition %s for archive %s", partition_name, path.name
            )
        return resolve_archive(path, pit, slot=slot)
    return resolve_standalone(path, pit, partition_name, slot=slot)


__all__ = [
    "ARCHIVE_SUFFIXES",
    "DECOMPRESSORS",
    "compression_suffix",
    "is_archive",
    "list_archive_matches",
    "match_file_name",
    "resolve",
    "resolve_archive",
    "resolve_standalone",
    "strip_compression_suffix",
]
