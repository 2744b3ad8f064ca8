"""Host capability probing.

Tool availability is discovered once at startup and passed explicitly to
the components that need it, instead of being re-checked ad hoc.
"""

from __future__ import annotations

import importlib
import logging
import os
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from aesir.config import Settings

logger = logging.getLogger(__name__)

GRAPHICAL_HELPERS = ("zenity", "kdialog")


@dataclass(frozen=True)
class ToolCapabilities:
    """What the host can do.

    Attributes:
        heimdall_path: Resolved path of the heimdall executable, if found.
        odin4_path: Resolved path of the odin4 executable, if found.
        sudo_path: Resolved path of sudo, if found.
        graphical_prompt: Resolved path of a graphical password helper.
        native_protocol: Factory returning a native download protocol.
        is_root: Whether the process already runs as root.
    """

    heimdall_path: str | None = None
    odin4_path: str | None = None
    sudo_path: str | None = None
    graphical_prompt: str | None = None
    native_protocol: Callable[[], Any] | None = None
    is_root: bool = False

    @property
    def external_available(self) -> bool:
        return self.heimdall_path is not None or self.odin4_path is not None

    @property
    def native_available(self) -> bool:
        return self.native_protocol is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "heimdall_path": self.heimdall_path,
            "odin4_path": self.odin4_path,
            "sudo_path": self.sudo_path,
            "graphical_prompt": self.graphical_prompt,
            "native_protocol": self.native_available,
            "is_root": self.is_root,
        }


def load_native_protocol(location: str) -> Callable[[], Any] | None:
    """Import a native protocol factory from a 'module:attribute' string.

    Args:
        location: Import location such as 'mypkg.usb:open_protocol'.

    Returns:
        The callable, or None when it cannot be imported.
    """
    module_name, _, attr = location.partition(":")
    if not module_name or not attr:
        logger.warning(
            "Native protocol %r is not of the form module:callable", location
        )
        return None
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        logger.warning("Cannot load native protocol %s: %s", location, e)
        return None
    if not callable(factory):
        logger.warning("Native protocol %s is not callable", location)
        return None
    return factory


def _find_graphical_prompt(settings: Settings) -> str | None:
    if settings.credential_prompt == "terminal":
        return None
    if not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")):
        if settings.credential_prompt == "graphical":
            logger.warning("Graphical prompt requested but no display is available")
        return None
    for helper in GRAPHICAL_HELPERS:
        path = shutil.which(helper)
        if path:
            return path
    return None


def probe_capabilities(settings: Settings) -> ToolCapabilities:
    """Probe the host for flashing tools and escalation helpers.

    Args:
        settings: Application settings.

    Returns:
        ToolCapabilities describing the host.
    """
    heimdall = shutil.which(settings.heimdall_path or "heimdall")
    native = (
        load_native_protocol(settings.native_protocol)
        if settings.native_protocol
        else None
    )
    capabilities = ToolCapabilities(
        heimdall_path=heimdall,
        odin4_path=shutil.which(settings.odin4_path or "odin4"),
        sudo_path=shutil.which("sudo"),
        graphical_prompt=_find_graphical_prompt(settings),
        native_protocol=native,
        is_root=os.geteuid() == 0,
    )
    logger.debug("Host capabilities: %s", capabilities.to_dict())
    return capabilities


__all__ = [
    "GRAPHICAL_HELPERS",
    "ToolCapabilities",
    "load_native_protocol",
    "probe_capabilities",
]
