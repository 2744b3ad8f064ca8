"""Backend selection with fallback.

Candidates are ordered by Settings.preferred_backend and filtered by the
host capabilities probed at startup. Opening a session walks the candidates
and moves to the next one only when a backend cannot be launched.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aesir.backends.base import BackendFactory, FlashBackend, OutputCallback
from aesir.backends.external import HeimdallBackend, Odin4Backend
from aesir.backends.native import NativeSessionBackend
from aesir.errors import BackendLaunchError

if TYPE_CHECKING:
    from aesir.capabilities import ToolCapabilities
    from aesir.config import Settings
    from aesir.privilege.manager import EscalationManager
    from aesir.types import DeviceCandidate

logger = logging.getLogger(__name__)


def default_factories(
    capabilities: ToolCapabilities, settings: Settings
) -> dict[str, BackendFactory]:
    """Build factories for every backend the host can run.

    Args:
        capabilities: Probed host capabilities.
        settings: Application settings.

    Returns:
        Mapping of backend name to factory.
    """
    factories: dict[str, BackendFactory] = {}

    heimdall_path = capabilities.heimdall_path
    if heimdall_path is not None:

        def heimdall(on_output: OutputCallback | None) -> FlashBackend:
            return HeimdallBackend(
                heimdall_path,
                tmp_dir=settings.tmp_dir,
                detect_timeout=settings.detect_timeout,
                flash_timeout=settings.flash_timeout,
                requires_elevation=settings.elevate_external,
                on_output=on_output,
            )

        factories[HeimdallBackend.name] = heimdall

    odin4_path = capabilities.odin4_path
    if odin4_path is not None:

        def odin4(on_output: OutputCallback | None) -> FlashBackend:
            return Odin4Backend(
                odin4_path,
                pit_file=settings.pit_file,
                tmp_dir=settings.tmp_dir,
                detect_timeout=settings.detect_timeout,
                flash_timeout=settings.flash_timeout,
                requires_elevation=settings.elevate_external,
                on_output=on_output,
            )

        factories[Odin4Backend.name] = odin4

    protocol_factory = capabilities.native_protocol
    if protocol_factory is not None:

        def native(on_output: OutputCallback | None) -> FlashBackend:
            return NativeSessionBackend(
                protocol_factory,
                packet_size=settings.packet_size,
                sequence_packets=settings.sequence_packets,
                on_output=on_output,
            )

        factories[NativeSessionBackend.name] = native

    return factories


class BackendChain:
    """Ordered backend candidates with launch-failure fallback."""

    def __init__(
        self,
        capabilities: ToolCapabilities,
        settings: Settings,
        factories: dict[str, BackendFactory] | None = None,
    ) -> None:
        self.capabilities = capabilities
        self.settings = settings
        self.factories = (
            factories
            if factories is not None
            else default_factories(capabilities, settings)
        )

    def order(self) -> list[str]:
        """Backend names in the order they will be tried."""
        heimdall, odin4, native = (
            HeimdallBackend.name,
            Odin4Backend.name,
            NativeSessionBackend.name,
        )
        if self.settings.preferred_backend == "native":
            preferred = [native, heimdall, odin4]
        elif self.settings.preferred_backend == "odin4":
            preferred = [odin4, heimdall, native]
        else:
            preferred = [heimdall, odin4, native]
        names = [name for name in preferred if name in self.factories]
        names.extend(name for name in self.factories if name not in names)
        return names

    def open(
        self,
        device: DeviceCandidate | None,
        escalation: EscalationManager,
        on_output: OutputCallback | None = None,
    ) -> FlashBackend:
        """Connect and begin a session on the first backend that launches.

        Args:
            device: Target device.
            escalation: Session escalation manager.
            on_output: Receives opaque backend log lines.

        Returns:
            Backend with an open session.

        Raises:
            BackendLaunchError: No candidate could be launched.
            AesirError: Any other failure from the first launched backend.
        """
        names = self.order()
        if not names:
            raise BackendLaunchError(
                "any", "no flashing backend is available on this host"
            )

        reasons: list[str] = []
        for name in names:
            backend = self.factories[name](on_output)
            logger.info("Trying backend %s", name)
            try:
                escalation.prepare(backend)
                escalation.call(backend, backend.connect, device)
                escalation.call(backend, backend.begin_session)
            except BackendLaunchError as e:
                logger.warning("Backend %s unavailable: %s", name, e.reason)
                reasons.append(f"{name}: {e.reason}")
                backend.disconnect()
                continue
            except Exception:
                backend.disconnect()
                raise
            logger.info("Using backend %s", name)
            return backend

        raise BackendLaunchError("any", "; ".join(reasons))


__all__ = ["BackendChain", "default_factories"]
