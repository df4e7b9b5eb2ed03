"""Credential pool manager.

Owns both credential pools and is the only component that mutates them.
Every operation runs one full load-modify-save cycle against the store while
holding the lock of the pool it touches, so concurrent requests never observe
or overwrite a half-applied change.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from pydantic import ValidationError

from qwenproxy.core.logging import get_logger
from qwenproxy.credentials.exceptions import CredentialsInvalidError
from qwenproxy.credentials.models import (
    Credential,
    CredentialKind,
    CredentialSnapshot,
    PoolCounts,
    mask_secret,
    utcnow,
)
from qwenproxy.credentials.storage import CredentialStore


logger = get_logger(__name__)


class CredentialPoolManager:
    """Least-recently-used rotation over two independently locked pools."""

    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self._locks = {kind: asyncio.Lock() for kind in CredentialKind}

    async def insert(self, kind: CredentialKind, value: str) -> bool:
        """Add a credential unless the same value is already pooled.

        Returns:
            True if a new credential was created, False for duplicates or
            blank values
        """
        value = value.strip()
        if not value:
            return False

        async with self._locks[kind]:
            credentials = await self._load(kind)
            if any(c.value == value for c in credentials):
                logger.debug(
                    "credential_insert_skipped_duplicate",
                    kind=kind.value,
                    masked=mask_secret(value),
                )
                return False

            credentials.append(Credential(value=value, created_at=self._clock()))
            await self._save(kind, credentials)

        logger.info("credential_inserted", kind=kind.value, masked=mask_secret(value))
        return True

    async def seed(self, kind: CredentialKind, values: Iterable[str]) -> int:
        """Insert each value, returning how many were new."""
        added = 0
        for value in values:
            if await self.insert(kind, value):
                added += 1
        return added

    async def select_valid(self, kind: CredentialKind) -> str | None:
        """Pick the least recently used valid credential and mark it used.

        Never-used credentials are picked first, in insertion order.

        Returns:
            The credential value, or None when the pool has no valid entry
        """
        async with self._locks[kind]:
            credentials = await self._load(kind)
            candidates = [c for c in credentials if c.valid]
            if not candidates:
                logger.debug("credential_pool_exhausted", kind=kind.value)
                return None

            selected = min(candidates, key=_lru_key)
            selected.last_used_at = self._next_touch(credentials)
            await self._save(kind, credentials)

        logger.debug(
            "credential_selected", kind=kind.value, masked=selected.masked_value
        )
        return selected.value

    async def invalidate(self, kind: CredentialKind, value: str) -> bool:
        """Mark a credential unusable and bump its error count.

        Unknown values are ignored.

        Returns:
            True if a pooled credential matched
        """
        async with self._locks[kind]:
            credentials = await self._load(kind)
            match = next((c for c in credentials if c.value == value), None)
            if match is None:
                return False
            match.valid = False
            match.error_count += 1
            await self._save(kind, credentials)

        logger.warning(
            "credential_invalidated",
            kind=kind.value,
            masked=match.masked_value,
            error_count=match.error_count,
        )
        return True

    async def purge_invalid(self, kind: CredentialKind) -> int:
        """Delete every invalid credential in the pool.

        Returns:
            Number of credentials removed
        """
        async with self._locks[kind]:
            credentials = await self._load(kind)
            remaining = [c for c in credentials if c.valid]
            removed = len(credentials) - len(remaining)
            if removed:
                await self._save(kind, remaining)

        logger.info("credential_pool_purged", kind=kind.value, removed=removed)
        return removed

    async def delete_invalid(self, kind: CredentialKind, masked_value: str) -> bool:
        """Delete one invalid credential identified by its masked display value.

        Valid credentials are never removed this way.
        """
        async with self._locks[kind]:
            credentials = await self._load(kind)
            for index, credential in enumerate(credentials):
                if not credential.valid and credential.masked_value == masked_value:
                    del credentials[index]
                    await self._save(kind, credentials)
                    break
            else:
                return False

        logger.info("credential_deleted", kind=kind.value, masked=masked_value)
        return True

    async def snapshot(self, kind: CredentialKind) -> list[CredentialSnapshot]:
        """Return display-safe views of every credential in the pool."""
        async with self._locks[kind]:
            credentials = await self._load(kind)
        return [c.snapshot() for c in credentials]

    async def counts(self, kind: CredentialKind) -> PoolCounts:
        async with self._locks[kind]:
            credentials = await self._load(kind)
        valid = sum(1 for c in credentials if c.valid)
        return PoolCounts(valid=valid, invalid=len(credentials) - valid)

    def _next_touch(self, credentials: list[Credential]) -> datetime:
        # Keep touches strictly increasing so a coarse clock cannot tie the
        # most recent selection with older ones.
        now = self._clock()
        latest = max(
            (c.last_used_at for c in credentials if c.last_used_at is not None),
            default=None,
        )
        if latest is not None and now <= latest:
            now = latest + timedelta(microseconds=1)
        return now

    async def _load(self, kind: CredentialKind) -> list[Credential]:
        raw = await self._store.get(kind.storage_key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise CredentialsInvalidError(
                f"Credential pool {kind.value!r} is not a list "
                f"in {self._store.get_location()}"
            )
        try:
            return [Credential.model_validate(item) for item in raw]
        except ValidationError as e:
            raise CredentialsInvalidError(
                f"Invalid credential record in pool {kind.value!r}: {e}"
            ) from e

    async def _save(self, kind: CredentialKind, credentials: list[Credential]) -> None:
        await self._store.set(
            kind.storage_key, [c.model_dump(mode="json") for c in credentials]
        )


def _lru_key(credential: Credential) -> tuple[bool, float]:
    if credential.last_used_at is None:
        return (False, 0.0)
    return (True, credential.last_used_at.timestamp())
