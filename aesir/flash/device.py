"""Download-mode device discovery.

This module handles:
- Listing USB devices with the host's USB listing helper
- Filtering candidates by vendor id
- Re-probing device presence in the background, paused while flashing

Only one device is ever flashed. When several candidates are attached the
first one is used.
"""

import logging
import re
import subprocess
import threading
from collections.abc import Callable

from aesir.errors import DeviceDiscoveryError
from aesir.types import DeviceCandidate

logger = logging.getLogger(__name__)

LSUSB_LINE = re.compile(
    r"^Bus (\d{3}) Device (\d{3}): ID ([0-9a-fA-F]{4}):([0-9a-fA-F]{4})\s*(.*)$"
)


def parse_lsusb(output: str) -> list[DeviceCandidate]:
    """Parse lsusb output into device records.

    Args:
        output: Standard output of lsusb.

    Returns:
        One DeviceCandidate per recognised line, in listing order.
    """
    devices: list[DeviceCandidate] = []
    for line in output.splitlines():
        match = LSUSB_LINE.match(line.strip())
        if match is None:
            continue
        bus, address, vendor, product, description = match.groups()
        devices.append(
            DeviceCandidate(
                bus=int(bus),
                address=int(address),
                vendor_id=vendor.lower(),
                product_id=product.lower(),
                description=description.strip(),
            )
        )
    return devices


class DeviceDiscovery:
    """Finds download-mode candidates by USB vendor id."""

    def __init__(
        self, lsusb_path: str = "lsusb", vendor_id: str = "04e8", timeout: float = 30
    ) -> None:
        self.lsusb_path = lsusb_path
        self.vendor_id = vendor_id.lower()
        self.timeout = timeout

    def find_devices(self) -> list[DeviceCandidate]:
        """List attached devices with the configured vendor id.

        Returns:
            Matching candidates, possibly empty.

        Raises:
            DeviceDiscoveryError: The listing helper could not be run.
        """
        try:
            result = subprocess.run(
                [self.lsusb_path],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise DeviceDiscoveryError(
                f"{self.lsusb_path} timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            raise DeviceDiscoveryError(f"Cannot run {self.lsusb_path}: {e}") from e

        if result.returncode != 0:
            raise DeviceDiscoveryError(
                f"{self.lsusb_path} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}"
            )

        devices = [
            device
            for device in parse_lsusb(result.stdout)
            if device.vendor_id == self.vendor_id
        ]
        logger.debug("Found %d download-mode candidate(s)", len(devices))
        return devices


class DeviceMonitor:
    """Background re-probe of device presence.

    Probing is skipped while is_busy() returns True so it never competes
    with an active transfer for the USB transport. on_change is called from
    the monitor thread, only when the candidate set differs from the last
    probe.
    """

    def __init__(
        self,
        discovery: DeviceDiscovery,
        *,
        interval: float = 2.0,
        is_busy: Callable[[], bool] = lambda: False,
        on_change: Callable[[list[DeviceCandidate]], None] | None = None,
    ) -> None:
        self.discovery = discovery
        self.interval = interval
        self.is_busy = is_busy
        self.on_change = on_change
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last: tuple[DeviceCandidate, ...] | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def probe(self) -> bool:
        """Run one probe.

        Returns:
            True when a probe ran, False when it was skipped.
        """
        if self.is_busy():
            logger.debug("Skipping device probe while flashing")
            return False
        try:
            devices = self.discovery.find_devices()
        except DeviceDiscoveryError as e:
            logger.warning("Device probe failed: %s", e.message)
            return True
        current = tuple(devices)
        if current != self._last:
            self._last = current
            logger.info("Download-mode devices: %d", len(devices))
            if self.on_change is not None:
                self.on_change(devices)
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.probe()
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="aesir-device-monitor", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = ["DeviceDiscovery", "DeviceMonitor", "LSUSB_LINE", "parse_lsusb"]
