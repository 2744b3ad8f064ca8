"""Flash service layer.

This module provides high-level flash operations:
- flash_firmware: Run a flash session with FlashRecord tracking and a
  background device monitor
- plan_firmware: Resolve selections against a PIT file without a device
- read_pit_file: Decode a PIT file from disk
- get_flash_records: Query the flash history
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from aesir.backends.chain import BackendChain
from aesir.capabilities import ToolCapabilities, probe_capabilities
from aesir.config import Settings, get_settings
from aesir.errors import (
    COMPONENT_ORCHESTRATOR,
    INTERNAL_ERROR,
    AesirError,
    FirmwareReadError,
)
from aesir.firmware.resolver import resolve
from aesir.flash.device import DeviceDiscovery, DeviceMonitor
from aesir.flash.models import FlashRecord
from aesir.flash.orchestrator import (
    FlashListener,
    FlashOrchestrator,
    FlashOutcome,
    FlashRequest,
)
from aesir.pit.models import PartitionTable
from aesir.pit.parser import parse_pit
from aesir.privilege.providers import select_credential_provider
from aesir.types import DeviceCandidate, FirmwareSlot, FlashStatus

logger = logging.getLogger(__name__)


@dataclass
class PlannedSource:
    """One partition write a real session would perform.

    Attributes:
        name: Logical file name.
        partition: Target partition name.
        length: Declared length in bytes.
        compressed: Whether the source would be decompressed on the fly.
    """

    name: str
    partition: str
    length: int
    compressed: bool = False


@dataclass
class PlannedSlot:
    """Resolution result for one selected slot.

    Attributes:
        slot: Firmware slot.
        path: Selected file.
        sources: Resolved writes, in flashing order.
        error_code: Error code when the slot did not resolve.
        error_message: Error message when the slot did not resolve.
    """

    slot: FirmwareSlot
    path: Path
    sources: list[PlannedSource] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None

    @property
    def total_bytes(self) -> int:
        return sum(source.length for source in self.sources)


@dataclass
class DryRunResult:
    """Offline flash plan for a selection.

    Attributes:
        slots: Per-slot results in flashing order.
    """

    slots: list[PlannedSlot] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(slot.total_bytes for slot in self.slots)

    @property
    def partitions(self) -> list[str]:
        return [source.partition for slot in self.slots for source in slot.sources]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_bytes": self.total_bytes,
            "slots": [
                {
                    "slot": slot.slot.value,
                    "path": str(slot.path),
                    "total_bytes": slot.total_bytes,
                    "error_code": slot.error_code,
                    "error_message": slot.error_message,
                    "sources": [
                        {
                            "name": source.name,
                            "partition": source.partition,
                            "length": source.length,
                            "compressed": source.compressed,
                        }
                        for source in slot.sources
                    ],
                }
                for slot in self.slots
            ],
        }


@dataclass
class FlashResult:
    """Result of a recorded flash session.

    Attributes:
        outcome: Terminal outcome of the session.
        flash_record_id: ID of the FlashRecord (if persisted).
    """

    outcome: FlashOutcome
    flash_record_id: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome.success

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {**self.outcome.to_dict(), "flash_record_id": self.flash_record_id}


def read_pit_file(path: str | Path) -> PartitionTable:
    """Decode a PIT file from disk.

    Args:
        path: PIT file.

    Returns:
        PartitionTable.

    Raises:
        FirmwareReadError: File could not be read.
        CorruptPitDataError: File is not a valid PIT.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise FirmwareReadError(str(path), str(e)) from e
    return parse_pit(data)


def plan_firmware(request: FlashRequest, pit: PartitionTable) -> DryRunResult:
    """Resolve a selection against a PIT without touching a device.

    Slots are resolved in flashing order with the same resolver a session
    uses. A slot that fails to resolve is reported, not raised.

    Args:
        request: Selection to plan.
        pit: Partition table to resolve against.

    Returns:
        DryRunResult describing every slot.

    Raises:
        InvalidSelectionError: The selection itself is unusable.
    """
    request.validate()
    result = DryRunResult()
    for slot in request.selected_slots():
        path = Path(request.files[slot])
        planned = PlannedSlot(slot=slot, path=path)
        result.slots.append(planned)
        try:
            with resolve(path, pit, request.partitions.get(slot), slot=slot) as plan:
                planned.sources = [
                    PlannedSource(
                        name=source.name,
                        partition=source.partition.name,
                        length=source.length,
                        compressed=source.compressed,
                    )
                    for source in plan
                ]
        except AesirError as e:
            logger.warning("%s does not resolve: %s", slot.value, e.message)
            planned.error_code = e.error_code
            planned.error_message = e.message
    logger.info(
        "Planned %d partition(s), %d bytes", len(result.partitions), result.total_bytes
    )
    return result


def build_orchestrator(
    settings: Settings,
    capabilities: ToolCapabilities,
    listener: FlashListener | None = None,
) -> FlashOrchestrator:
    """Wire an orchestrator from settings and probed capabilities.

    Args:
        settings: Application settings.
        capabilities: Probed host capabilities.
        listener: Session notifications receiver.

    Returns:
        FlashOrchestrator ready to run sessions.
    """
    return FlashOrchestrator(
        capabilities,
        BackendChain(capabilities, settings),
        DeviceDiscovery(
            settings.lsusb_path, settings.usb_vendor_id, settings.detect_timeout
        ),
        select_credential_provider(capabilities, settings.prompt_timeout),
        listener=listener,
        prompt_timeout=settings.prompt_timeout,
    )


def session_monitor(
    orchestrator: FlashOrchestrator, interval: float
) -> DeviceMonitor:
    """Build the device monitor that runs alongside a session.

    Probing pauses while the orchestrator is flashing; device set changes
    are forwarded to the orchestrator's listener as log lines.
    """

    def on_change(devices: list[DeviceCandidate]) -> None:
        ids = ", ".join(device.device_id for device in devices) or "none"
        orchestrator.listener.on_log(f"Download-mode devices: {ids}")

    return DeviceMonitor(
        orchestrator.discovery,
        interval=interval,
        is_busy=lambda: orchestrator.is_flashing,
        on_change=on_change,
    )


def flash_firmware(
    request: FlashRequest,
    *,
    session: Session | None = None,
    settings: Settings | None = None,
    capabilities: ToolCapabilities | None = None,
    listener: FlashListener | None = None,
    orchestrator: FlashOrchestrator | None = None,
    monitor_interval: float | None = None,
) -> FlashResult:
    """Run a flash session, recording it in the history when a DB session
    is given.

    Args:
        request: Files to flash and session options.
        session: Database session (optional, for FlashRecord tracking).
        settings: Application settings (optional).
        capabilities: Probed host capabilities (probed if not provided).
        listener: Session notifications receiver.
        orchestrator: Pre-built orchestrator (built from settings if not
            provided).
        monitor_interval: Seconds between background device probes while
            the session runs; no monitor when None.

    Returns:
        FlashResult with the session outcome.
    """
    if orchestrator is None:
        if settings is None:
            settings = get_settings()
        if capabilities is None:
            capabilities = probe_capabilities(settings)
        orchestrator = build_orchestrator(settings, capabilities, listener)

    slots = [slot.value for slot in request.selected_slots()]
    logger.info(
        "Flash requested: slots=%s, auto_reboot=%s",
        ",".join(slots),
        request.auto_reboot,
    )

    flash_record: FlashRecord | None = None
    if session is not None:
        flash_record = FlashRecord(
            status=FlashStatus.PENDING.value,
            slots=",".join(slots),
            requested_at=datetime.now(),
        )
        session.add(flash_record)
        session.flush()
        logger.debug("Created FlashRecord id=%d", flash_record.id)
        flash_record.mark_running()
        session.flush()

    monitor: DeviceMonitor | None = None
    if monitor_interval is not None:
        monitor = session_monitor(orchestrator, monitor_interval)
        monitor.start()
    try:
        outcome = orchestrator.run(request)
    except Exception as e:
        if flash_record is not None and session is not None:
            flash_record.mark_failed(INTERNAL_ERROR, str(e), COMPONENT_ORCHESTRATOR)
            session.flush()
        raise
    finally:
        if monitor is not None:
            monitor.stop()

    if flash_record is not None and session is not None:
        flash_record.backend = outcome.backend
        flash_record.device_id = outcome.device
        flash_record.device_description = outcome.device_description
        flash_record.partitions_flashed = ",".join(outcome.partitions_flashed)
        flash_record.total_bytes = outcome.total_bytes
        if outcome.success:
            flash_record.mark_succeeded()
        else:
            flash_record.mark_failed(
                outcome.error_code, outcome.error_message, outcome.error_component
            )
        session.flush()

    return FlashResult(
        outcome=outcome,
        flash_record_id=flash_record.id if flash_record else None,
    )


def get_flash_records(
    session: Session,
    *,
    status: FlashStatus | None = None,
    device_id: str | None = None,
    limit: int = 20,
) -> list[FlashRecord]:
    """Query flash records with optional filters, newest first.

    Args:
        session: Database session.
        status: Filter by status.
        device_id: Filter by device identifier.
        limit: Maximum number of records to return.

    Returns:
        List of FlashRecord objects.
    """
    stmt = select(FlashRecord)
    if status is not None:
        stmt = stmt.where(FlashRecord.status == status.value)
    if device_id is not None:
        stmt = stmt.where(FlashRecord.device_id == device_id)
    stmt = stmt.order_by(FlashRecord.requested_at.desc(), FlashRecord.id.desc())
    return list(session.execute(stmt.limit(limit)).scalars().all())


__all__ = [
    "DryRunResult",
    "FlashResult",
    "PlannedSlot",
    "PlannedSource",
    "build_orchestrator",
    "flash_firmware",
    "get_flash_records",
    "plan_firmware",
    "read_pit_file",
    "session_monitor",
]
