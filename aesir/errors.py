"""Error taxonomy for aesir.

Every fatal condition is raised as an AesirError subclass carrying a stable
code and the component it originated in, so callers can render a structured
failure without parsing messages.
"""

from typing import Any

# Components of origin
COMPONENT_PIT = "pit"
COMPONENT_FIRMWARE = "firmware"
COMPONENT_BACKEND = "backend"
COMPONENT_PRIVILEGE = "privilege"
COMPONENT_DISCOVERY = "discovery"
COMPONENT_ORCHESTRATOR = "orchestrator"

INTERNAL_ERROR = "INTERNAL_ERROR"


class AesirError(Exception):
    """Base exception for all aesir errors."""

    def __init__(self, message: str, error_code: str, component: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.component = component

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.error_code,
            "component": self.component,
            "message": self.message,
        }


class CorruptPitDataError(AesirError):
    """PIT buffer is truncated or malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="CORRUPT_PIT_DATA", component=COMPONENT_PIT
        )


class FirmwareReadError(AesirError):
    """Firmware file or archive could not be read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Cannot read firmware file {path}: {reason}",
            error_code="FIRMWARE_UNREADABLE",
            component=COMPONENT_FIRMWARE,
        )
        self.path = path


class NoMatchingPartitionError(AesirError):
    """Standalone image matched no PIT entry."""

    def __init__(self, path: str, partition_name: str | None = None) -> None:
        if partition_name:
            detail = f"partition '{partition_name}' is not in the PIT"
        else:
            detail = "no PIT entry expects this file name"
        super().__init__(
            f"No matching partition for {path}: {detail}",
            error_code="NO_MATCHING_PARTITION",
            component=COMPONENT_FIRMWARE,
        )
        self.path = path
        self.partition_name = partition_name


class EmptyFlashPlanError(AesirError):
    """Archive (or whole request) resolved to zero flashable entries."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Nothing in {path} matches a partition on the device",
            error_code="EMPTY_FLASH_PLAN",
            component=COMPONENT_FIRMWARE,
        )
        self.path = path


class InvalidSelectionError(AesirError):
    """User selection is unusable before any device work starts."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="INVALID_SELECTION", component=COMPONENT_ORCHESTRATOR
        )


class SessionCancelledError(AesirError):
    """Session was cancelled before it was opened on the device."""

    def __init__(self) -> None:
        super().__init__(
            "Flash session cancelled before the device session was opened",
            error_code="SESSION_CANCELLED",
            component=COMPONENT_ORCHESTRATOR,
        )


class DeviceIOError(AesirError):
    """I/O failure while talking to the device."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="DEVICE_IO_ERROR", component=COMPONENT_BACKEND
        )


class PermissionDeniedError(AesirError):
    """Backend lacks the access rights for the device; escalation trigger."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="PERMISSION_DENIED", component=COMPONENT_BACKEND
        )


class BackendLaunchError(AesirError):
    """Backend could not be started or is unusable."""

    def __init__(self, backend: str, reason: str) -> None:
        super().__init__(
            f"Failed to launch backend {backend}: {reason}",
            error_code="BACKEND_LAUNCH_FAILED",
            component=COMPONENT_BACKEND,
        )
        self.backend = backend
        self.reason = reason


class PrivilegeDeniedError(AesirError):
    """Elevated rights could not be obtained."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="PRIVILEGE_DENIED", component=COMPONENT_PRIVILEGE
        )


class NoDeviceFoundError(AesirError):
    """No download-mode device is attached."""

    def __init__(self, vendor_id: str) -> None:
        super().__init__(
            f"No download-mode device found (USB vendor {vendor_id}). "
            "Ensure the device is in download mode and connected via USB.",
            error_code="NO_DEVICE_FOUND",
            component=COMPONENT_DISCOVERY,
        )
        self.vendor_id = vendor_id


class DeviceDiscoveryError(AesirError):
    """USB listing helper failed."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="DISCOVERY_FAILED", component=COMPONENT_DISCOVERY
        )


__all__ = [
    "COMPONENT_BACKEND",
    "COMPONENT_DISCOVERY",
    "COMPONENT_FIRMWARE",
    "COMPONENT_ORCHESTRATOR",
    "COMPONENT_PIT",
    "COMPONENT_PRIVILEGE",
    "INTERNAL_ERROR",
    "AesirError",
    "BackendLaunchError",
    "CorruptPitDataError",
    "DeviceDiscoveryError",
    "DeviceIOError",
    "EmptyFlashPlanError",
    "FirmwareReadError",
    "InvalidSelectionError",
    "NoDeviceFoundError",
    "NoMatchingPartitionError",
    "PermissionDeniedError",
    "PrivilegeDeniedError",
    "SessionCancelledError",
]
