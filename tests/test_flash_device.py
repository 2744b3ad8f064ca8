"""Tests for flash/device.py - download-mode device discovery."""

import subprocess
import threading
from unittest.mock import MagicMock, patch

import pytest

from aesir.errors import DeviceDiscoveryError
from aesir.flash.device import DeviceDiscovery, DeviceMonitor, parse_lsusb
from aesir.types import DeviceCandidate

LSUSB_OUTPUT = """\
Bus 002 Device 001: ID 1d6b:0003 Linux Foundation 3.0 root hub
Bus 001 Device 009: ID 04E8:685D Samsung Electronics Co., Ltd (Download mode)
Bus 001 Device 004: ID 046d:c52b Logitech, Inc. Unifying Receiver
Bus 003 Device 002: ID 04e8:685d Samsung Electronics Co., Ltd
garbage line
"""


class TestParseLsusb:
    """Tests for parse_lsusb function."""

    def test_parse_all_lines(self):
        """Every well-formed line becomes a candidate."""
        devices = parse_lsusb(LSUSB_OUTPUT)

        assert len(devices) == 4
        assert devices[0] == DeviceCandidate(
            2, 1, "1d6b", "0003", "Linux Foundation 3.0 root hub"
        )

    def test_ids_lowercased(self):
        """Vendor and product ids are normalized to lowercase."""
        device = parse_lsusb(LSUSB_OUTPUT)[1]

        assert device.vendor_id == "04e8"
        assert device.product_id == "685d"
        assert device.device_id == "001:009"
        assert device.usb_path == "/dev/bus/usb/001/009"

    def test_empty_output(self):
        """No output means no devices."""
        assert parse_lsusb("") == []


class TestDeviceDiscovery:
    """Tests for DeviceDiscovery."""

    @patch("aesir.flash.device.subprocess.run")
    def test_filters_by_vendor(self, mock_run):
        """Only devices with the configured vendor id are returned."""
        mock_run.return_value = subprocess.CompletedProcess(
            ["lsusb"], 0, stdout=LSUSB_OUTPUT, stderr=""
        )

        devices = DeviceDiscovery(vendor_id="04E8").find_devices()

        assert [d.device_id for d in devices] == ["001:009", "003:002"]
        assert mock_run.call_args[0][0] == ["lsusb"]

    @patch("aesir.flash.device.subprocess.run")
    def test_no_devices(self, mock_run):
        """An empty listing returns no candidates."""
        mock_run.return_value = subprocess.CompletedProcess(
            ["lsusb"], 0, stdout="", stderr=""
        )

        assert DeviceDiscovery().find_devices() == []

    @patch("aesir.flash.device.subprocess.run")
    def test_helper_missing(self, mock_run):
        """A missing listing helper is a discovery error."""
        mock_run.side_effect = FileNotFoundError("lsusb")

        with pytest.raises(DeviceDiscoveryError, match="Cannot run"):
            DeviceDiscovery().find_devices()

    @patch("aesir.flash.device.subprocess.run")
    def test_helper_timeout(self, mock_run):
        """A hanging listing helper is a discovery error."""
        mock_run.side_effect = subprocess.TimeoutExpired("lsusb", 30)

        with pytest.raises(DeviceDiscoveryError, match="timed out"):
            DeviceDiscovery().find_devices()

    @patch("aesir.flash.device.subprocess.run")
    def test_helper_failure(self, mock_run):
        """A non-zero exit is a discovery error."""
        mock_run.return_value = subprocess.CompletedProcess(
            ["lsusb"], 1, stdout="", stderr="unable to initialize libusb"
        )

        with pytest.raises(DeviceDiscoveryError, match="libusb"):
            DeviceDiscovery().find_devices()


class TestDeviceMonitor:
    """Tests for DeviceMonitor."""

    def _discovery(self, *results):
        discovery = MagicMock(spec=DeviceDiscovery)
        discovery.find_devices.side_effect = list(results)
        return discovery

    def test_change_notifications(self):
        """on_change fires only when the device set changes."""
        device = DeviceCandidate(1, 9, "04e8", "685d")
        discovery = self._discovery([], [device], [device], [])
        changes = []
        monitor = DeviceMonitor(discovery, on_change=changes.append)

        for _ in range(4):
            assert monitor.probe() is True

        assert changes == [[], [device], []]

    def test_skipped_while_busy(self):
        """Probing is skipped while a flash is running."""
        discovery = self._discovery()
        monitor = DeviceMonitor(discovery, is_busy=lambda: True)

        assert monitor.probe() is False
        discovery.find_devices.assert_not_called()

    def test_probe_error_logged(self):
        """A failed probe does not stop the monitor."""
        discovery = self._discovery(DeviceDiscoveryError("lsusb failed"))
        changes = []
        monitor = DeviceMonitor(discovery, on_change=changes.append)

        assert monitor.probe() is True
        assert changes == []

    def test_start_stop(self):
        """The monitor runs in a daemon thread until stopped."""
        discovery = MagicMock(spec=DeviceDiscovery)
        discovery.find_devices.return_value = []
        probed = threading.Event()
        monitor = DeviceMonitor(
            discovery, interval=0.01, on_change=lambda devices: probed.set()
        )

        monitor.start()
        assert monitor.running
        assert probed.wait(5)
        monitor.stop(timeout=5)

        assert not monitor.running
