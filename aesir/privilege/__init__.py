"""Privilege escalation.

This module handles:
- Acquiring a credential through a graphical or terminal prompt
- Validating the credential with a no-op privileged probe
- Retrying a denied backend invocation once with elevated rights
"""

from aesir.privilege.manager import Elevation, EscalationManager, validate_credential
from aesir.privilege.providers import (
    CredentialProvider,
    GraphicalCredentialProvider,
    TerminalCredentialProvider,
    select_credential_provider,
)

__all__ = [
    "CredentialProvider",
    "Elevation",
    "EscalationManager",
    "GraphicalCredentialProvider",
    "TerminalCredentialProvider",
    "select_credential_provider",
    "validate_credential",
]
