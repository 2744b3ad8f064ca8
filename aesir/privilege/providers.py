"""Credential providers.

A provider interactively acquires the password used for privilege
escalation. Which provider is used is decided once from the probed host
capabilities.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from pydantic import SecretStr

if TYPE_CHECKING:
    from aesir.capabilities import ToolCapabilities

logger = logging.getLogger(__name__)

PROMPT_TITLE = "Aesir"


class CredentialProvider(ABC):
    """Source of an administrator password."""

    name: str = "provider"

    @abstractmethod
    def acquire(self, reason: str) -> SecretStr | None:
        """Ask the user for a password.

        Args:
            reason: Why elevated rights are needed, shown to the user.

        Returns:
            The password, or None when the user cancelled.
        """


class GraphicalCredentialProvider(CredentialProvider):
    """Password dialog through zenity or kdialog."""

    name = "graphical"

    def __init__(self, helper_path: str, timeout: float = 120) -> None:
        self.helper_path = helper_path
        self.timeout = timeout

    def _command(self, reason: str) -> list[str]:
        if Path(self.helper_path).name == "kdialog":
            return [self.helper_path, "--title", PROMPT_TITLE, "--password", reason]
        return [
            self.helper_path,
            "--password",
            "--title",
            f"{PROMPT_TITLE}: {reason}",
        ]

    def acquire(self, reason: str) -> SecretStr | None:
        try:
            result = subprocess.run(
                self._command(reason),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Password dialog timed out after %ss", self.timeout)
            return None
        except OSError as e:
            logger.warning("Cannot run password dialog %s: %s", self.helper_path, e)
            return None

        if result.returncode != 0:
            logger.info("Password dialog cancelled")
            return None
        password = result.stdout.rstrip("\n")
        if not password:
            return None
        return SecretStr(password)


class TerminalCredentialProvider(CredentialProvider):
    """Hidden-input prompt on the controlling terminal."""

    name = "terminal"

    def acquire(self, reason: str) -> SecretStr | None:
        typer.echo(f"Elevated rights required: {reason}", err=True)
        try:
            password = typer.prompt(
                "Password", hide_input=True, default="", show_default=False, err=True
            )
        except (typer.Abort, EOFError):
            logger.info("Password prompt cancelled")
            return None
        if not password:
            return None
        return SecretStr(password)


def select_credential_provider(
    capabilities: ToolCapabilities, timeout: float = 120
) -> CredentialProvider:
    """Choose the graphical provider when a helper exists, else the terminal.

    Args:
        capabilities: Probed host capabilities.
        timeout: Dialog timeout in seconds.

    Returns:
        CredentialProvider to use for this run.
    """
    if capabilities.graphical_prompt is not None:
        logger.debug("Using graphical prompt %s", capabilities.graphical_prompt)
        return GraphicalCredentialProvider(capabilities.graphical_prompt, timeout)
    return TerminalCredentialProvider()


__all__ = [
    "CredentialProvider",
    "GraphicalCredentialProvider",
    "TerminalCredentialProvider",
    "select_credential_provider",
]
