"""Data models for pooled upstream credentials."""

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


MASK_CHAR = "*"
MASK_MAX_LENGTH = 20
MASK_EDGE_LENGTH = 4


class CredentialKind(str, Enum):
    """The two independent credential pools."""

    API_KEY = "api_key"
    """Primary bearer token, mandatory for every upstream call."""

    SSXMOD_ITNA = "ssxmod_itna"
    """Optional session cookie sent alongside the primary token."""

    @property
    def storage_key(self) -> str:
        return f"credentials:{self.value}"


def mask_secret(value: str) -> str:
    """Mask a secret for display, keeping the first and last four characters.

    Values of eight characters or fewer are returned unchanged.
    """
    if len(value) <= MASK_EDGE_LENGTH * 2:
        return value
    mask_length = min(len(value) - MASK_EDGE_LENGTH * 2, MASK_MAX_LENGTH)
    return (
        f"{value[:MASK_EDGE_LENGTH]}{MASK_CHAR * mask_length}"
        f"{value[-MASK_EDGE_LENGTH:]}"
    )


def utcnow() -> datetime:
    return datetime.now(UTC)


class Credential(BaseModel):
    """A single opaque upstream credential."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    value: str
    valid: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime | None = None
    error_count: int = 0

    @property
    def masked_value(self) -> str:
        return mask_secret(self.value)

    def snapshot(self) -> "CredentialSnapshot":
        return CredentialSnapshot(
            id=self.id,
            masked_value=self.masked_value,
            valid=self.valid,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
            error_count=self.error_count,
        )


class CredentialSnapshot(BaseModel):
    """Display-safe view of a credential."""

    id: str
    masked_value: str
    valid: bool
    created_at: datetime
    last_used_at: datetime | None
    error_count: int


class PoolCounts(BaseModel):
    valid: int = 0
    invalid: int = 0

    @property
    def total(self) -> int:
        return self.valid + self.invalid
