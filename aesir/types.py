"""Shared type definitions for aesir.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class FirmwareSlot(str, Enum):
    """User-facing firmware slot, in flashing order."""

    BL = "BL"
    AP = "AP"
    CP = "CP"
    CSC = "CSC"
    USERDATA = "USERDATA"

    @classmethod
    def ordered(cls) -> list["FirmwareSlot"]:
        """Return slots in the fixed flashing order."""
        return [cls.BL, cls.AP, cls.CP, cls.CSC, cls.USERDATA]


class SessionState(str, Enum):
    """State of a flash session."""

    IDLE = "idle"
    CONNECTED = "connected"
    SESSION_OPEN = "session_open"
    FLASHING = "flashing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


class EscalationState(str, Enum):
    """State of privilege escalation within one session."""

    UNKNOWN = "unknown"
    UNPRIVILEGED = "unprivileged"
    AWAITING_CREDENTIALS = "awaiting_credentials"
    ESCALATED = "escalated"
    DENIED = "denied"


class ProgressPhase(str, Enum):
    """Phase of a partition transfer."""

    TRANSFER = "transfer"
    COMMIT = "commit"


class BackendKind(str, Enum):
    """Family of a flashing backend."""

    NATIVE = "native"
    EXTERNAL = "external"


class FlashStatus(str, Enum):
    """Status of a recorded flash session."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceCandidate:
    """A USB device that looks like a download-mode target.

    Attributes:
        bus: USB bus number.
        address: Device address on the bus.
        vendor_id: Four-digit hex vendor id.
        product_id: Four-digit hex product id.
        description: Free-form description from the USB listing.
    """

    bus: int
    address: int
    vendor_id: str
    product_id: str
    description: str = ""

    @property
    def device_id(self) -> str:
        """Stable identifier of the form 'bus:address'."""
        return f"{self.bus:03d}:{self.address:03d}"

    @property
    def usb_path(self) -> str:
        """usbfs node of the device."""
        return f"/dev/bus/usb/{self.bus:03d}/{self.address:03d}"


__all__ = [
    "BackendKind",
    "DeviceCandidate",
    "EscalationState",
    "FirmwareSlot",
    "FlashStatus",
    "ProgressPhase",
    "SessionState",
]
