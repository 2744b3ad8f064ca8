"""Partition Information Table model and parser."""

from aesir.pit.models import PartitionEntry, PartitionTable
from aesir.pit.parser import (
    ENTRY_SIZE,
    HEADER_SIZE,
    PIT_MAGIC,
    encode_pit,
    parse_pit,
)

__all__ = [
    "ENTRY_SIZE",
    "HEADER_SIZE",
    "PIT_MAGIC",
    "PartitionEntry",
    "PartitionTable",
    "encode_pit",
    "parse_pit",
]
