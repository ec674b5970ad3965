"""Exception hierarchy for conceptsim."""

from __future__ import annotations


class ConceptSimError(Exception):
    """Base exception for all conceptsim errors."""


class SessionInvalid(ConceptSimError):
    """Raised when no live credential can be established for a privileged call."""

    def __init__(self, reason: str = "Session invalid or expired") -> None:
        self.reason = reason
        super().__init__(reason)


class CredentialStoreError(ConceptSimError):
    """Raised by a credential store when an operation fails."""


class CredentialMissing(CredentialStoreError):
    """Raised when the store confirms the credential is missing, expired or revoked."""


class SandboxRuntimeError(ConceptSimError):
    """Raised inside the sandbox boundary; never escapes it."""


class SandboxLimitError(SandboxRuntimeError):
    """Raised when generated code exceeds a sandbox resource limit."""

    def __init__(self, resource: str, limit: int) -> None:
        self.resource = resource
        self.limit = limit
        super().__init__(f"{resource} limit of {limit} exceeded")
