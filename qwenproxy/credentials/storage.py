"""Key-value stores backing the credential pools."""

import asyncio
import contextlib
import copy
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from qwenproxy.core.logging import get_logger
from qwenproxy.credentials.exceptions import (
    CredentialsInvalidError,
    CredentialsStorageError,
)


logger = get_logger(__name__)


class CredentialStore(ABC):
    """Abstract interface for durable credential storage.

    Values are opaque JSON-compatible documents addressed by string keys.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Load the document stored under ``key``.

        Returns:
            The stored document, or None if the key is absent
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous document."""
        pass

    @abstractmethod
    def get_location(self) -> str:
        """Get a human-readable description of where data is stored."""
        pass

    async def close(self) -> None:  # noqa: B027
        """Release resources held by the store."""


class MemoryCredentialStore(CredentialStore):
    """Process-local store; contents are lost on restart."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def get_location(self) -> str:
        return "memory"


class JsonFileCredentialStore(CredentialStore):
    """Single JSON document on disk holding every key.

    Writes go to a temporary file that is renamed over the target, with
    owner-only permissions.
    """

    def __init__(self, file_path: Path):
        """Initialize JSON storage.

        Args:
            file_path: Path to JSON file for storage
        """
        self.file_path = file_path
        self._io_lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        data = await self._read_json()
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._io_lock:
            data = await self._read_json()
            data[key] = value
            await self._write_json(data)

    async def exists(self) -> bool:
        """Check if the store file exists."""
        return await asyncio.to_thread(
            lambda: self.file_path.exists() and self.file_path.is_file()
        )

    def get_location(self) -> str:
        return str(self.file_path)

    async def _read_json(self) -> dict[str, Any]:
        """Read JSON data from file with error handling.

        Returns:
            Parsed JSON data or empty dict if file doesn't exist

        Raises:
            CredentialsInvalidError: If JSON is invalid
            CredentialsStorageError: If file cannot be read
        """
        if not await self.exists():
            return {}

        try:

            def read_file() -> Any:
                with self.file_path.open("r", encoding="utf-8") as f:
                    return json.load(f)

            data = await asyncio.to_thread(read_file)

        except json.JSONDecodeError as e:
            logger.error(
                "json_decode_error",
                path=str(self.file_path),
                error=str(e),
                line=e.lineno,
            )
            raise CredentialsInvalidError(
                f"Invalid JSON in {self.file_path}: {e}"
            ) from e

        except FileNotFoundError:
            # Deleted between exists() and read
            return {}

        except PermissionError as e:
            logger.error("permission_denied", path=str(self.file_path), error=str(e))
            raise CredentialsStorageError(f"Permission denied: {self.file_path}") from e

        except OSError as e:
            logger.error("file_read_error", path=str(self.file_path), error=str(e))
            raise CredentialsStorageError(f"Error reading {self.file_path}: {e}") from e

        if not isinstance(data, dict):
            raise CredentialsInvalidError(
                f"Expected a JSON object in {self.file_path}, got {type(data).__name__}"
            )
        return data

    async def _write_json(self, data: dict[str, Any]) -> None:
        """Write JSON data to file atomically.

        Raises:
            CredentialsStorageError: If file cannot be written
        """
        temp_path = self.file_path.with_suffix(".tmp")

        try:
            await asyncio.to_thread(
                self.file_path.parent.mkdir,
                parents=True,
                exist_ok=True,
            )

            def write_file() -> None:
                with temp_path.open("w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                temp_path.chmod(0o600)
                temp_path.replace(self.file_path)

            await asyncio.to_thread(write_file)

            logger.debug("json_write_success", path=str(self.file_path))

        except (TypeError, ValueError) as e:
            logger.error("json_encode_error", path=str(self.file_path), error=str(e))
            raise CredentialsStorageError(f"Failed to encode JSON: {e}") from e

        except PermissionError as e:
            logger.error("permission_denied", path=str(self.file_path), error=str(e))
            raise CredentialsStorageError(f"Permission denied: {self.file_path}") from e

        except OSError as e:
            logger.error("file_write_error", path=str(self.file_path), error=str(e))
            raise CredentialsStorageError(f"Error writing {self.file_path}: {e}") from e

        finally:
            if temp_path.exists():
                with contextlib.suppress(OSError):
                    temp_path.unlink()
