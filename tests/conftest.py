"""Shared fixtures: a small partition table shaped like a phone PIT."""

import io
import tarfile
from pathlib import Path

import pytest

from aesir.pit.models import PartitionEntry, PartitionTable
from aesir.pit.parser import encode_pit


def _make_entry(
    identifier: int, name: str, file_name: str, binary_type: int = 0
) -> PartitionEntry:
    return PartitionEntry(
        binary_type=binary_type,
        device_type=2,
        identifier=identifier,
        attributes=5,
        update_attributes=1,
        block_size_or_offset=identifier * 1024,
        block_count=2048,
        file_offset=0,
        file_size=0,
        name=name,
        file_name=file_name,
    )


def _write_tar(
    path: Path, members: dict[str, bytes], dirs: tuple[str, ...] = ()
) -> Path:
    """Write a tar archive with the given members, in insertion order."""
    with tarfile.open(path, "w") as tar:
        for directory in dirs:
            info = tarfile.TarInfo(directory)
            info.type = tarfile.DIRTYPE
            tar.addfile(info)
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def pit_table() -> PartitionTable:
    """Partition table with bootloader, kernel, system, modem and CSC rows."""
    return PartitionTable(
        entries=(
            _make_entry(80, "SBOOT", "sboot.bin"),
            _make_entry(5, "BOOT", "boot.img"),
            _make_entry(6, "RECOVERY", "recovery.img"),
            _make_entry(20, "SYSTEM", "system.img"),
            _make_entry(11, "RADIO", "modem.bin", binary_type=1),
            _make_entry(21, "CACHE", "cache.img"),
            _make_entry(24, "USERDATA", "userdata.img"),
        ),
        com_tar2="COM_TAR2",
        cpu_bl_id="SM8250",
        lu_count=3,
    )


@pytest.fixture
def pit_bytes(pit_table: PartitionTable) -> bytes:
    return encode_pit(pit_table)


@pytest.fixture
def make_entry():
    """Factory for PartitionEntry rows."""
    return _make_entry


@pytest.fixture
def write_tar():
    """Factory writing tar archives from a name -> bytes mapping."""
    return _write_tar
