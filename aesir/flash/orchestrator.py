"""Flash session orchestrator.

A session walks the states

    IDLE -> CONNECTED -> SESSION_OPEN -> FLASHING -> FINALIZING -> COMPLETED

and reaches FAILED from any non-terminal state. Each run():
1. Validates the selection and discovers the device
2. Opens a session on the first backend that launches, dumps and parses
   the PIT
3. Resolves one FlashPlan per selected slot in BL, AP, CP, CSC, USERDATA
   order and announces the aggregate size
4. Flashes every source sequentially, closing each stream as soon as its
   transfer ends
5. Ends the session and reboots (a failed reboot is only logged)

Already-flashed partitions are not rolled back after a failure. The backend
is disconnected exactly once and exactly one on_finished notification is
sent per run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aesir.backends.base import FlashBackend, ProgressEvent
from aesir.backends.chain import BackendChain
from aesir.capabilities import ToolCapabilities
from aesir.errors import (
    COMPONENT_ORCHESTRATOR,
    INTERNAL_ERROR,
    AesirError,
    EmptyFlashPlanError,
    InvalidSelectionError,
    NoDeviceFoundError,
    NoMatchingPartitionError,
    SessionCancelledError,
)
from aesir.firmware.models import FlashPlan
from aesir.firmware.resolver import resolve
from aesir.flash.device import DeviceDiscovery
from aesir.flash.progress import ProgressAggregator, ProgressUpdate
from aesir.pit.models import PartitionTable
from aesir.pit.parser import parse_pit
from aesir.privilege.manager import EscalationManager
from aesir.privilege.providers import CredentialProvider
from aesir.types import DeviceCandidate, FirmwareSlot, SessionState

logger = logging.getLogger(__name__)


class FlashListener:
    """Receives session notifications. All methods are no-ops by default.

    on_progress may be called from a backend's execution context rather than
    the thread that called run().
    """

    def on_state(self, state: SessionState) -> None:
        pass

    def on_progress(self, update: ProgressUpdate) -> None:
        pass

    def on_log(self, line: str) -> None:
        pass

    def on_finished(self, outcome: FlashOutcome) -> None:
        pass


@dataclass
class FlashRequest:
    """User selection for one flash session.

    Attributes:
        files: Selected file per slot.
        partitions: Explicit partition name per slot, for standalone images.
        auto_reboot: Reboot the device after a successful flash.
    """

    files: dict[FirmwareSlot, Path] = field(default_factory=dict)
    partitions: dict[FirmwareSlot, str] = field(default_factory=dict)
    auto_reboot: bool = True

    def selected_slots(self) -> list[FirmwareSlot]:
        """Selected slots in flashing order."""
        return [slot for slot in FirmwareSlot.ordered() if slot in self.files]

    def validate(self) -> None:
        """Check the selection before any device work.

        Raises:
            InvalidSelectionError: Nothing selected, a partition name given
                for an unselected slot, or a selected file is missing.
        """
        if not self.files:
            raise InvalidSelectionError("No firmware files selected")
        for slot in self.partitions:
            if slot not in self.files:
                raise InvalidSelectionError(
                    f"Partition given for slot {slot.value} but no file selected"
                )
        for slot in self.selected_slots():
            path = Path(self.files[slot])
            if not path.is_file():
                raise InvalidSelectionError(f"{slot.value} file not found: {path}")


@dataclass
class FlashOutcome:
    """Terminal outcome of one session.

    Attributes:
        success: Whether the session completed.
        state: Terminal session state.
        backend: Name of the backend used, if one was opened.
        device: Identifier of the target device, if discovered.
        device_description: USB description of the target device.
        partitions_flashed: Partitions written, in order.
        total_bytes: Declared bytes across all plans.
        error_code: Error code on failure.
        error_message: Human-readable cause on failure.
        error_component: Component the failure originated in.
    """

    success: bool
    state: SessionState
    backend: str | None = None
    device: str | None = None
    device_description: str | None = None
    partitions_flashed: list[str] = field(default_factory=list)
    total_bytes: int = 0
    error_code: str | None = None
    error_message: str | None = None
    error_component: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "state": self.state.value,
            "backend": self.backend,
            "device": self.device,
            "device_description": self.device_description,
            "partitions_flashed": self.partitions_flashed,
            "total_bytes": self.total_bytes,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "error_component": self.error_component,
        }


class FlashOrchestrator:
    """Runs flash sessions against one device at a time."""

    def __init__(
        self,
        capabilities: ToolCapabilities,
        backend_chain: BackendChain,
        discovery: DeviceDiscovery,
        credential_provider: CredentialProvider,
        *,
        listener: FlashListener | None = None,
        prompt_timeout: float = 120,
        escalation_factory: Callable[[], EscalationManager] | None = None,
    ) -> None:
        self.capabilities = capabilities
        self.backend_chain = backend_chain
        self.discovery = discovery
        self.credential_provider = credential_provider
        self.listener = listener or FlashListener()
        self.prompt_timeout = prompt_timeout
        self._escalation_factory = escalation_factory
        self._state = SessionState.IDLE
        self._lock = threading.Lock()
        self._running = False
        self._cancel = threading.Event()
        self.escalation: EscalationManager | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_flashing(self) -> bool:
        return self._state is SessionState.FLASHING

    def cancel(self) -> bool:
        """Request cancellation of the running session.

        Only honoured before the device session is open; once SESSION_OPEN
        is reached the session runs to completion or failure.

        Returns:
            True if the request will be honoured.
        """
        with self._lock:
            state = self._state
            honoured = self._running and state in (
                SessionState.IDLE,
                SessionState.CONNECTED,
            )
            if honoured:
                self._cancel.set()
        if not honoured:
            logger.info("Cancellation ignored in state %s", state.value)
            return False
        logger.info("Cancellation requested")
        return True

    def _set_state(self, state: SessionState, *, check_cancel: bool = False) -> None:
        """Move to a new state.

        With check_cancel, a pending cancellation is raised instead, under the
        same lock cancel() takes, so a request it accepted is never skipped.
        """
        with self._lock:
            if check_cancel:
                self._check_cancelled()
            logger.info("Session state: %s -> %s", self._state.value, state.value)
            self._state = state
        self.listener.on_state(state)

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise SessionCancelledError()

    def _new_escalation(self) -> EscalationManager:
        if self._escalation_factory is not None:
            return self._escalation_factory()
        return EscalationManager.for_session(
            self.capabilities, self.credential_provider, self.prompt_timeout
        )

    def _discover(self) -> DeviceCandidate:
        devices = self.discovery.find_devices()
        if not devices:
            raise NoDeviceFoundError(self.discovery.vendor_id)
        if len(devices) > 1:
            logger.warning(
                "%d devices attached, using %s", len(devices), devices[0].device_id
            )
        return devices[0]

    def _resolve_plans(
        self,
        request: FlashRequest,
        pit: PartitionTable,
        plans: list[FlashPlan],
    ) -> None:
        """Resolve every selected slot, appending plans as they open."""
        slots = request.selected_slots()
        for slot in slots:
            path = Path(request.files[slot])
            try:
                plan = resolve(path, pit, request.partitions.get(slot), slot=slot)
            except (NoMatchingPartitionError, EmptyFlashPlanError) as e:
                if len(slots) == 1:
                    raise
                logger.warning("Skipping %s: %s", slot.value, e.message)
                continue
            plans.append(plan)
            logger.info(
                "%s: %d partition(s), %d bytes",
                slot.value,
                len(plan),
                plan.total_bytes,
            )
        if not any(plans):
            raise EmptyFlashPlanError(", ".join(str(request.files[s]) for s in slots))

    def _flash_plans(
        self,
        backend: FlashBackend,
        escalation: EscalationManager,
        plans: list[FlashPlan],
        total_bytes: int,
        flashed: list[str],
    ) -> None:
        aggregator = ProgressAggregator(total_bytes)

        def on_progress(event: ProgressEvent) -> None:
            update = aggregator.update(event)
            if update is not None:
                self.listener.on_progress(update)

        for plan in plans:
            for source in plan:
                logger.info("Flashing %s -> %s", source.name, source.partition.name)
                aggregator.start_partition(source)
                try:
                    escalation.call(
                        backend, backend.flash_partition, source, on_progress
                    )
                finally:
                    source.close()
                aggregator.finish_partition()
                flashed.append(source.partition.name)

    def _finalize(
        self,
        backend: FlashBackend,
        escalation: EscalationManager,
        auto_reboot: bool,
    ) -> None:
        escalation.call(backend, backend.end_session)
        if not auto_reboot:
            logger.info("Leaving device in download mode")
            return
        try:
            escalation.call(backend, backend.reboot)
        except AesirError as e:
            logger.warning("Reboot failed after a successful flash: %s", e.message)

    def run(self, request: FlashRequest) -> FlashOutcome:
        """Run one flash session to a terminal state.

        Args:
            request: Files to flash and session options.

        Returns:
            FlashOutcome, COMPLETED or FAILED. Failures are reported here,
            not raised; only unexpected exceptions propagate.

        Raises:
            InvalidSelectionError: A session is already running.
        """
        with self._lock:
            if self._running:
                raise InvalidSelectionError("A flash session is already running")
            self._running = True
            self._cancel.clear()
            self._state = SessionState.IDLE
        escalation = self._new_escalation()
        self.escalation = escalation

        backend: FlashBackend | None = None
        device: DeviceCandidate | None = None
        plans: list[FlashPlan] = []
        flashed: list[str] = []
        total_bytes = 0
        outcome = FlashOutcome(
            success=False,
            state=SessionState.FAILED,
            error_code=INTERNAL_ERROR,
            error_message="Session interrupted",
            error_component=COMPONENT_ORCHESTRATOR,
        )

        def result(**kwargs: Any) -> FlashOutcome:
            return FlashOutcome(
                state=self._state,
                backend=backend.name if backend is not None else None,
                device=device.device_id if device is not None else None,
                device_description=(
                    device.description if device is not None else None
                ),
                partitions_flashed=list(flashed),
                total_bytes=total_bytes,
                **kwargs,
            )

        try:
            request.validate()
            device = self._discover()
            self._set_state(SessionState.CONNECTED)
            self._check_cancelled()

            backend = self.backend_chain.open(device, escalation, self.listener.on_log)
            pit = parse_pit(escalation.call(backend, backend.dump_pit))
            logger.info("Device PIT has %d partitions", len(pit))
            self._set_state(SessionState.SESSION_OPEN, check_cancel=True)

            self._resolve_plans(request, pit, plans)
            total_bytes = sum(plan.total_bytes for plan in plans)
            escalation.call(backend, backend.set_total_bytes, total_bytes)

            self._set_state(SessionState.FLASHING)
            self._flash_plans(backend, escalation, plans, total_bytes, flashed)

            self._set_state(SessionState.FINALIZING)
            self._finalize(backend, escalation, request.auto_reboot)

            self._set_state(SessionState.COMPLETED)
            outcome = result(success=True)
            logger.info(
                "Flash completed: %d partition(s), %d bytes",
                len(flashed),
                total_bytes,
            )
        except AesirError as e:
            logger.error(
                "Flash failed [%s/%s]: %s", e.component, e.error_code, e.message
            )
            self._set_state(SessionState.FAILED)
            outcome = result(
                success=False,
                error_code=e.error_code,
                error_message=e.message,
                error_component=e.component,
            )
        except Exception as e:
            logger.exception("Unexpected error during flash session")
            self._set_state(SessionState.FAILED)
            outcome = result(
                success=False,
                error_code=INTERNAL_ERROR,
                error_message=str(e),
                error_component=COMPONENT_ORCHESTRATOR,
            )
            raise
        finally:
            for plan in plans:
                plan.close()
            if backend is not None:
                backend.disconnect()
            with self._lock:
                self._running = False
            self.listener.on_finished(outcome)

        return outcome


__all__ = [
    "FlashListener",
    "FlashOrchestrator",
    "FlashOutcome",
    "FlashRequest",
]
