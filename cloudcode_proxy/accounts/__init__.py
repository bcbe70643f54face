"""Credential pool: accounts, selection, tokens and persistence."""

from .models import Account, CredentialSource, DeviceFingerprint, ModelRateLimit
from .pool import AccountPool, AccountSelection
from .credentials import CredentialManager
from .store import CredentialStore, InMemoryCredentialStore

__all__ = [
    "Account",
    "AccountPool",
    "AccountSelection",
    "CredentialManager",
    "CredentialSource",
    "CredentialStore",
    "DeviceFingerprint",
    "InMemoryCredentialStore",
    "ModelRateLimit",
]
