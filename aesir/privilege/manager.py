"""Privilege escalation manager.

One EscalationManager exists per flash session. It runs backend
invocations, and when one fails for lack of access rights it acquires a
credential once, validates it with a no-op sudo probe, elevates the backend
and retries the same invocation. A cancelled or rejected credential is
final for the session.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import SecretStr

from aesir.errors import PermissionDeniedError, PrivilegeDeniedError
from aesir.types import EscalationState

if TYPE_CHECKING:
    from aesir.backends.base import FlashBackend
    from aesir.capabilities import ToolCapabilities
    from aesir.privilege.providers import CredentialProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

CredentialValidator = Callable[[str, SecretStr, float], bool]


class Elevation:
    """Wraps commands to run through sudo with a validated password."""

    def __init__(self, sudo_path: str, secret: SecretStr) -> None:
        self.sudo_path = sudo_path
        self._secret = secret

    def wrap(self, argv: list[str]) -> list[str]:
        """Prefix a command with sudo reading the password from stdin."""
        return [self.sudo_path, "-S", "-k", "-p", "", "--", *argv]

    def stdin_payload(self) -> bytes:
        return (self._secret.get_secret_value() + "\n").encode()

    def __repr__(self) -> str:
        return f"Elevation(sudo_path={self.sudo_path!r}, secret='**********')"


def validate_credential(sudo_path: str, secret: SecretStr, timeout: float) -> bool:
    """Check a password by running a no-op command through sudo.

    Args:
        sudo_path: Path to sudo.
        secret: Password to check.
        timeout: Seconds to wait for sudo.

    Returns:
        True when sudo accepted the password.
    """
    elevation = Elevation(sudo_path, secret)
    try:
        result = subprocess.run(
            elevation.wrap(["true"]),
            input=elevation.stdin_payload(),
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Credential validation timed out after %ss", timeout)
        return False
    except OSError as e:
        logger.warning("Cannot run %s: %s", sudo_path, e)
        return False
    return result.returncode == 0


class EscalationManager:
    """Per-session escalation state machine."""

    def __init__(
        self,
        provider: CredentialProvider,
        sudo_path: str | None,
        *,
        is_root: bool = False,
        timeout: float = 120,
        validator: CredentialValidator | None = None,
    ) -> None:
        self.provider = provider
        self.sudo_path = sudo_path
        self.is_root = is_root
        self.timeout = timeout
        self.validator = validator or validate_credential
        self.state = EscalationState.UNKNOWN
        self.prompt_count = 0
        self._elevation: Elevation | None = None

    @classmethod
    def for_session(
        cls,
        capabilities: ToolCapabilities,
        provider: CredentialProvider,
        timeout: float = 120,
    ) -> EscalationManager:
        """Create a fresh manager for one session."""
        return cls(
            provider,
            capabilities.sudo_path,
            is_root=capabilities.is_root,
            timeout=timeout,
        )

    def _resolve_state(self) -> None:
        if self.state is EscalationState.UNKNOWN:
            self.state = (
                EscalationState.ESCALATED
                if self.is_root
                else EscalationState.UNPRIVILEGED
            )

    def _deny(self, message: str) -> PrivilegeDeniedError:
        self.state = EscalationState.DENIED
        logger.error("Privilege escalation denied: %s", message)
        return PrivilegeDeniedError(message)

    def escalate(self, reason: str) -> Elevation:
        """Obtain elevated rights, prompting at most once per session.

        Args:
            reason: Why elevation is needed, shown in the prompt.

        Returns:
            Elevation carrying the validated credential.

        Raises:
            PrivilegeDeniedError: Prompt cancelled, credential rejected,
                sudo missing, or escalation already failed this session.
        """
        self._resolve_state()
        if self._elevation is not None:
            return self._elevation
        if self.state is EscalationState.DENIED:
            raise PrivilegeDeniedError(
                "Privilege escalation already failed in this session"
            )
        if self.sudo_path is None:
            raise self._deny("sudo is not available on this host")

        self.state = EscalationState.AWAITING_CREDENTIALS
        self.prompt_count += 1
        logger.info("Requesting credentials via %s prompt", self.provider.name)
        secret = self.provider.acquire(reason)
        if secret is None:
            raise self._deny("Credential prompt was cancelled")
        if not self.validator(self.sudo_path, secret, self.timeout):
            raise self._deny("Credential was rejected")

        self._elevation = Elevation(self.sudo_path, secret)
        self.state = EscalationState.ESCALATED
        logger.info("Privilege escalation succeeded")
        return self._elevation

    def prepare(self, backend: FlashBackend) -> None:
        """Elevate a backend up front when it is known to need it."""
        self._resolve_state()
        if (
            backend.requires_elevation
            and backend.supports_elevation
            and not backend.is_elevated
            and not self.is_root
        ):
            backend.elevate(self.escalate(f"{backend.name} requires elevated access"))

    def call(self, backend: FlashBackend, func: Callable[..., T], *args: Any) -> T:
        """Run a backend invocation, escalating and retrying once on denial.

        Args:
            backend: Backend the invocation belongs to.
            func: Bound backend method.
            *args: Arguments for func.

        Returns:
            Whatever func returns.

        Raises:
            PrivilegeDeniedError: Access denied and elevation is impossible,
                refused, or did not help.
        """
        self._resolve_state()
        try:
            return func(*args)
        except PermissionDeniedError as e:
            if self.is_root:
                raise PrivilegeDeniedError(
                    f"Access denied while running as root: {e.message}"
                ) from e
            if not backend.supports_elevation:
                raise PrivilegeDeniedError(
                    f"{backend.name} cannot run with elevated rights: {e.message}"
                ) from e
            if backend.is_elevated:
                raise PrivilegeDeniedError(
                    f"Access denied with elevated rights: {e.message}"
                ) from e
            logger.info("%s needs elevated rights: %s", backend.name, e.message)
            backend.elevate(self.escalate(e.message))

        try:
            return func(*args)
        except PermissionDeniedError as e:
            raise PrivilegeDeniedError(
                f"Access denied with elevated rights: {e.message}"
            ) from e


__all__ = [
    "CredentialValidator",
    "Elevation",
    "EscalationManager",
    "validate_credential",
]
