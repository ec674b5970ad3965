"""Session package exports."""

from .credentials import CredentialStore, HttpCredentialStore, InMemoryCredentialStore
from .guard import SessionGuard
from .models import AuthEvent, Session, SessionState

__all__ = [
    "AuthEvent",
    "CredentialStore",
    "HttpCredentialStore",
    "InMemoryCredentialStore",
    "Session",
    "SessionGuard",
    "SessionState",
]
