"""Firmware source resolution.

This module handles:
- Detecting raw images, tar archives and compressed streams
- Matching files and archive entries against the device PIT
- Producing FlashPlans of open, single-use streams
"""

from aesir.firmware.models import FlashPlan, FlashSource
from aesir.firmware.resolver import (
    compression_suffix,
    is_archive,
    match_file_name,
    resolve,
    resolve_archive,
    resolve_standalone,
)

__all__ = [
    "FlashPlan",
    "FlashSource",
    "compression_suffix",
    "is_archive",
    "match_file_name",
    "resolve",
    "resolve_archive",
    "resolve_standalone",
]
