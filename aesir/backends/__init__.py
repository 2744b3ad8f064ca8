"""Flashing backends.

This module handles:
- The shared backend capability interface and progress event
- The in-process native session backend
- External-process backends (heimdall)
- Ordered backend selection with launch-failure fallback
"""

from aesir.backends.base import FlashBackend, ProgressEvent
from aesir.backends.chain import BackendChain, default_factories
from aesir.backends.external import (
    ExternalProcessBackend,
    HeimdallBackend,
    parse_progress,
)
from aesir.backends.native import DownloadProtocol, NativeSessionBackend

__all__ = [
    "BackendChain",
    "DownloadProtocol",
    "ExternalProcessBackend",
    "FlashBackend",
    "HeimdallBackend",
    "NativeSessionBackend",
    "ProgressEvent",
    "default_factories",
    "parse_progress",
]
