"""Custom exceptions for credential handling."""


class CredentialsError(Exception):
    """Base exception for all credential-related errors."""

    pass


class CredentialsInvalidError(CredentialsError):
    """Raised when the credential store contents are corrupted."""

    pass


class CredentialsStorageError(CredentialsError):
    """Raised when there's an error reading or writing credentials."""

    pass
