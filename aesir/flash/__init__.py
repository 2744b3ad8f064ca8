"""Flash sessions.

This module handles:
- Download-mode device discovery and background monitoring
- The flash session state machine
- Session-wide progress aggregation
- Flash history persistence
"""

from aesir.flash.device import DeviceDiscovery, DeviceMonitor
from aesir.flash.orchestrator import (
    FlashListener,
    FlashOrchestrator,
    FlashOutcome,
    FlashRequest,
)
from aesir.flash.progress import ProgressAggregator, ProgressUpdate

__all__ = [
    "DeviceDiscovery",
    "DeviceMonitor",
    "FlashListener",
    "FlashOrchestrator",
    "FlashOutcome",
    "FlashRequest",
    "ProgressAggregator",
    "ProgressUpdate",
]
