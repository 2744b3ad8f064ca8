"""PIT binary decoding and encoding.

Layout (little-endian):

    header (28 bytes)
        u32  magic (0x12349876)
        u32  entry count
        8s   COM_TAR2 tag
        8s   CPU/bootloader id
        u16  logical unit count
        u16  reserved

    entry (132 bytes), repeated `entry count` times
        9 x u32  binary type, device type, identifier, attributes,
                 update attributes, block size/offset, block count,
                 file offset, file size
        32s      partition name
        32s      flash file name
        32s      FOTA file name

Parsing is a pure transform over the byte buffer; a truncated or malformed
buffer raises CorruptPitDataError and never yields a partial table.
"""

import logging
import struct

from aesir.errors import CorruptPitDataError
from aesir.pit.models import PartitionEntry, PartitionTable

logger = logging.getLogger(__name__)

PIT_MAGIC = 0x12349876

HEADER_STRUCT = struct.Struct("<II8s8sHH")
ENTRY_STRUCT = struct.Struct("<9I32s32s32s")

HEADER_SIZE = HEADER_STRUCT.size
ENTRY_SIZE = ENTRY_STRUCT.size

NAME_FIELD_SIZE = 32


def _decode_name(raw: bytes) -> str:
    """Decode a NUL-terminated fixed-width name field."""
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def _encode_name(value: str, size: int, *, terminated: bool = True) -> bytes:
    data = value.encode("ascii")
    limit = size - 1 if terminated else size
    if len(data) > limit:
        raise ValueError(f"Name too long for {size}-byte PIT field: {value!r}")
    return data.ljust(size, b"\x00")


def parse_pit(data: bytes) -> PartitionTable:
    """Decode a PIT dump into a PartitionTable.

    Records whose partition name or file name is empty are skipped.

    Args:
        data: Raw PIT bytes as dumped from the device.

    Returns:
        PartitionTable with entries in PIT order.

    Raises:
        CorruptPitDataError: Buffer shorter than the header, wrong magic, or
            an entry count that does not fit in the remaining buffer.
    """
    if len(data) < HEADER_SIZE:
        raise CorruptPitDataError(
            f"PIT data too short: {len(data)} bytes, header needs {HEADER_SIZE}"
        )

    magic, count, com_tar2, cpu_bl_id, lu_count, _reserved = HEADER_STRUCT.unpack_from(
        data, 0
    )
    if magic != PIT_MAGIC:
        raise CorruptPitDataError(f"Bad PIT magic: 0x{magic:08x}")

    remaining = len(data) - HEADER_SIZE
    if count * ENTRY_SIZE > remaining:
        raise CorruptPitDataError(
            f"PIT header declares {count} entries ({count * ENTRY_SIZE} bytes) "
            f"but only {remaining} bytes follow"
        )

    entries: list[PartitionEntry] = []
    for index in range(count):
        fields = ENTRY_STRUCT.unpack_from(data, HEADER_SIZE + index * ENTRY_SIZE)
        name = _decode_name(fields[9])
        file_name = _decode_name(fields[10])
        if not name or not file_name:
            logger.debug("Skipping PIT record %d with empty name fields", index)
            continue
        entries.append(
            PartitionEntry(
                binary_type=fields[0],
                device_type=fields[1],
                identifier=fields[2],
                attributes=fields[3],
                update_attributes=fields[4],
                block_size_or_offset=fields[5],
                block_count=fields[6],
                file_offset=fields[7],
                file_size=fields[8],
                name=name,
                file_name=file_name,
                fota_name=_decode_name(fields[11]),
            )
        )

    logger.debug("Parsed PIT: %d of %d records accepted", len(entries), count)

    return PartitionTable(
        entries=tuple(entries),
        com_tar2=_decode_name(com_tar2),
        cpu_bl_id=_decode_name(cpu_bl_id),
        lu_count=lu_count,
    )


def encode_pit(table: PartitionTable) -> bytes:
    """Encode a PartitionTable back into the PIT binary layout.

    Args:
        table: Table to encode.

    Returns:
        PIT bytes that parse_pit decodes to an equal table.

    Raises:
        ValueError: A name does not fit its fixed-width field.
    """
    parts = [
        HEADER_STRUCT.pack(
            PIT_MAGIC,
            len(table.entries),
            _encode_name(table.com_tar2, 8, terminated=False),
            _encode_name(table.cpu_bl_id, 8, terminated=False),
            table.lu_count,
            0,
        )
    ]
    for entry in table.entries:
        parts.append(
            ENTRY_STRUCT.pack(
                entry.binary_type,
                entry.device_type,
                entry.identifier,
                entry.attributes,
                entry.update_attributes,
                entry.block_size_or_offset,
                entry.block_count,
                entry.file_offset,
                entry.file_size,
                _encode_name(entry.name, NAME_FIELD_SIZE),
                _encode_name(entry.file_name, NAME_FIELD_SIZE),
                _encode_name(entry.fota_name, NAME_FIELD_SIZE),
            )
        )
    return b"".join(parts)


__all__ = [
    "ENTRY_SIZE",
    "HEADER_SIZE",
    "PIT_MAGIC",
    "encode_pit",
    "parse_pit",
]
