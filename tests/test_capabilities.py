"""Tests for capabilities.py - host capability probing."""

import os
from unittest.mock import patch

from aesir.capabilities import (
    ToolCapabilities,
    load_native_protocol,
    probe_capabilities,
)
from aesir.config import Settings


def _which(available):
    def which(name):
        return available.get(name)

    return which


class TestLoadNativeProtocol:
    """Tests for load_native_protocol."""

    def test_loads_callable(self):
        """A module:callable location resolves to the callable."""
        factory = load_native_protocol("collections:OrderedDict")

        assert callable(factory)

    def test_bad_location(self):
        """Locations without a colon are rejected."""
        assert load_native_protocol("collections.OrderedDict") is None

    def test_missing_module(self):
        """Unimportable modules yield None."""
        assert load_native_protocol("aesir_no_such_module:open") is None

    def test_missing_attribute(self):
        """Missing attributes yield None."""
        assert load_native_protocol("collections:no_such_thing") is None

    def test_not_callable(self):
        """Non-callable attributes yield None."""
        assert load_native_protocol("os:sep") is None


class TestProbeCapabilities:
    """Tests for probe_capabilities."""

    @patch("aesir.capabilities.os.geteuid", return_value=1000)
    @patch("aesir.capabilities.shutil.which")
    def test_tools_found(self, mock_which, _geteuid):
        """Tools on PATH are recorded with their resolved paths."""
        mock_which.side_effect = _which(
            {
                "heimdall": "/usr/bin/heimdall",
                "sudo": "/usr/bin/sudo",
                "zenity": "/usr/bin/zenity",
            }
        )

        with patch.dict(os.environ, {"DISPLAY": ":0"}):
            capabilities = probe_capabilities(Settings())

        assert capabilities.heimdall_path == "/usr/bin/heimdall"
        assert capabilities.sudo_path == "/usr/bin/sudo"
        assert capabilities.graphical_prompt == "/usr/bin/zenity"
        assert capabilities.external_available
        assert not capabilities.native_available
        assert not capabilities.is_root

    @patch("aesir.capabilities.os.geteuid", return_value=0)
    @patch("aesir.capabilities.shutil.which", return_value=None)
    def test_nothing_found_as_root(self, _which_mock, _geteuid):
        """A bare host as root has no tools and needs no escalation."""
        capabilities = probe_capabilities(Settings())

        assert capabilities.heimdall_path is None
        assert not capabilities.external_available
        assert capabilities.is_root

    @patch("aesir.capabilities.shutil.which")
    def test_no_display_means_terminal(self, mock_which):
        """Without a display no graphical helper is used."""
        mock_which.side_effect = _which({"zenity": "/usr/bin/zenity"})
        env = {
            k: v
            for k, v in os.environ.items()
            if k not in ("DISPLAY", "WAYLAND_DISPLAY")
        }

        with patch.dict(os.environ, env, clear=True):
            capabilities = probe_capabilities(Settings())

        assert capabilities.graphical_prompt is None

    @patch("aesir.capabilities.shutil.which")
    def test_terminal_prompt_forced(self, mock_which):
        """credential_prompt=terminal skips graphical helpers."""
        mock_which.side_effect = _which({"kdialog": "/usr/bin/kdialog"})

        with patch.dict(os.environ, {"DISPLAY": ":0"}):
            capabilities = probe_capabilities(Settings(credential_prompt="terminal"))

        assert capabilities.graphical_prompt is None

    @patch("aesir.capabilities.shutil.which")
    def test_explicit_heimdall_path(self, mock_which):
        """An explicit heimdall path is resolved instead of the default name."""
        mock_which.side_effect = _which({"/opt/heimdall/bin/heimdall": "/opt/h"})

        capabilities = probe_capabilities(
            Settings(heimdall_path="/opt/heimdall/bin/heimdall")
        )

        assert capabilities.heimdall_path == "/opt/h"

    @patch("aesir.capabilities.shutil.which")
    def test_odin4_alone_is_external(self, mock_which):
        """odin4 on PATH counts as an external tool without heimdall."""
        mock_which.side_effect = _which({"odin4": "/usr/local/bin/odin4"})

        capabilities = probe_capabilities(Settings())

        assert capabilities.heimdall_path is None
        assert capabilities.odin4_path == "/usr/local/bin/odin4"
        assert capabilities.external_available
        assert capabilities.to_dict()["odin4_path"] == "/usr/local/bin/odin4"

    @patch("aesir.capabilities.shutil.which")
    def test_explicit_odin4_path(self, mock_which):
        """An explicit odin4 path is resolved instead of the default name."""
        mock_which.side_effect = _which({"/opt/odin/odin4": "/opt/odin/odin4"})

        capabilities = probe_capabilities(Settings(odin4_path="/opt/odin/odin4"))

        assert capabilities.odin4_path == "/opt/odin/odin4"

    def test_native_protocol_loaded(self):
        """A configured native protocol is imported at probe time."""
        capabilities = probe_capabilities(
            Settings(native_protocol="collections:OrderedDict")
        )

        assert capabilities.native_available


class TestToolCapabilities:
    """Tests for ToolCapabilities."""

    def test_to_dict(self):
        """to_dict reports native availability as a flag."""
        capabilities = ToolCapabilities(
            heimdall_path="/usr/bin/heimdall", native_protocol=dict
        )

        data = capabilities.to_dict()

        assert data["heimdall_path"] == "/usr/bin/heimdall"
        assert data["native_protocol"] is True
        assert data["is_root"] is False
