"""Pooled upstream credentials: storage, rotation and invalidation."""

from .exceptions import (
    CredentialsError,
    CredentialsInvalidError,
    CredentialsStorageError,
)
from .importer import ImportResult, import_cookie_headers
from .models import Credential, CredentialKind, CredentialSnapshot, mask_secret
from .pool import CredentialPoolManager
from .storage import CredentialStore, JsonFileCredentialStore, MemoryCredentialStore


__all__ = [
    "Credential",
    "CredentialKind",
    "CredentialPoolManager",
    "CredentialSnapshot",
    "CredentialStore",
    "CredentialsError",
    "CredentialsInvalidError",
    "CredentialsStorageError",
    "ImportResult",
    "JsonFileCredentialStore",
    "MemoryCredentialStore",
    "import_cookie_headers",
    "mask_secret",
]
