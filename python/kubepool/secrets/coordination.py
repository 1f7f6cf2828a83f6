"""
kubepool/secrets/coordination.py

The coordination store: a key/value rendezvous for join credentials, the API
endpoint and the admin kubeconfig, shared between the node that initializes a
control plane and every node that later joins it.

 - SecretBackend: the storage protocol (read/write/delete/purge)
 - VaultSecretBackend: HashiCorp Vault KV v2 implementation
 - CoordinationStore: get/set/delete/wait_for on top of any backend, with
   transparent handling of soft-deleted keys and bounded waiting
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from typing_extensions import Protocol

from kubepool.secrets.vault_client import AsyncVaultClient, VaultRequestError

logger = logging.getLogger(__name__)


class SecretStoreError(RuntimeError):
    """A coordination store operation failed for good."""


class SecretNotFoundError(SecretStoreError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Secret '{key}' not found")
        self.key = key


class SecretSoftDeletedError(SecretStoreError):
    """The key is soft-deleted but recoverable, and blocks a new write."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Secret '{key}' is soft-deleted but recoverable")
        self.key = key


class SecretWaitTimeout(SecretStoreError):
    def __init__(self, key: str, attempts: int) -> None:
        super().__init__(f"Secret '{key}' not available after {attempts} attempts")
        self.key = key
        self.attempts = attempts


class SecretBackend(Protocol):
    async def read(self, key: str) -> Optional[str]:
        """Return the value, or None if the key is absent or soft-deleted."""
        ...

    async def write(self, key: str, value: str) -> None:
        """Store `value`; raise SecretSoftDeletedError on a soft-delete conflict."""
        ...

    async def delete(self, key: str) -> None: ...

    async def purge(self, key: str) -> None: ...


class VaultSecretBackend:
    """
    Stores each key at `{prefix}/{key}` in a KV v2 mount as {"value": <str>}.

    KV v2 keeps deleted versions recoverable until the metadata is destroyed,
    so a key whose current version is soft-deleted is reported as a conflict
    and must be purged before it is rewritten. Old join tokens therefore never
    survive in the version history of a rewritten key.
    """

    def __init__(self, vault_client: AsyncVaultClient, prefix: str) -> None:
        self._vault = vault_client
        self._prefix = prefix.strip("/")

    def _path(self, key: str) -> str:
        return f"{self._prefix}/{key}"

    async def read(self, key: str) -> Optional[str]:
        try:
            data = await self._vault.read_secret(self._path(key))
        except VaultRequestError as ex:
            if ex.status == 404:
                return None
            raise
        value = data.get("value")
        return value if isinstance(value, str) else None

    async def write(self, key: str, value: str) -> None:
        path = self._path(key)
        if _current_version_soft_deleted(await self._vault.secret_history(path)):
            raise SecretSoftDeletedError(key)
        try:
            await self._vault.write_secret(path, {"value": value})
        except VaultRequestError as ex:
            if ex.status == 409:
                raise SecretSoftDeletedError(key) from ex
            raise

    async def delete(self, key: str) -> None:
        await self._vault.delete_secret(self._path(key), hard=False)

    async def purge(self, key: str) -> None:
        await self._vault.delete_secret(self._path(key), hard=True)


def _current_version_soft_deleted(metadata: Dict[str, Any]) -> bool:
    data = metadata.get("data")
    if not isinstance(data, dict):
        return False
    current = data.get("current_version")
    version = (data.get("versions") or {}).get(str(current))
    if not isinstance(version, dict):
        return False
    return bool(version.get("deletion_time")) and not version.get("destroyed", False)


class CoordinationStore:
    """
    get/set/delete/wait_for over a SecretBackend.

    Args:
        backend: Storage implementation.
        poll_interval: Seconds between wait_for polls.
        max_attempts: Default number of wait_for polls.
        purge_delay: Seconds to wait after purging a soft-deleted key before
            retrying the write.
    """

    def __init__(
        self,
        backend: SecretBackend,
        *,
        poll_interval: float = 30.0,
        max_attempts: int = 60,
        purge_delay: float = 2.0,
    ) -> None:
        self._backend = backend
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._purge_delay = purge_delay

    async def try_get(self, key: str) -> Optional[str]:
        return await self._backend.read(key)

    async def get(self, key: str) -> str:
        value = await self._backend.read(key)
        if value is None:
            raise SecretNotFoundError(key)
        return value

    async def set(self, key: str, value: str) -> None:
        """
        Store a value. A soft-deleted key is purged and the write retried
        exactly once; a second conflict is fatal.

        Raises:
            SecretStoreError: If the retried write still conflicts.
        """
        try:
            await self._backend.write(key, value)
        except SecretSoftDeletedError:
            logger.info("Secret '%s' is soft-deleted, purging and retrying", key)
            try:
                await self._backend.purge(key)
            except Exception as exc:
                logger.warning("Failed to purge soft-deleted secret '%s': %s", key, exc)

            await asyncio.sleep(self._purge_delay)
            try:
                await self._backend.write(key, value)
            except SecretSoftDeletedError as exc:
                raise SecretStoreError(
                    f"Failed to store secret '{key}' after purge attempt: {exc}"
                ) from exc
        logger.info("Secret '%s' stored", key)

    async def delete(self, key: str) -> None:
        """Best-effort soft delete followed by a purge. Failures are logged only."""
        for op in (self._backend.delete, self._backend.purge):
            try:
                await op(key)
            except Exception as exc:
                logger.warning("Best-effort %s of '%s' failed: %s", op.__name__, key, exc)

    async def wait_for(
        self,
        key: str,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> str:
        """
        Poll until `key` has a value, at most `max_attempts` reads.

        Raises:
            SecretWaitTimeout: After exactly `max_attempts` unsuccessful reads.
        """
        attempts = self._max_attempts if max_attempts is None else max_attempts
        delay = self._poll_interval if interval is None else interval

        for attempt in range(1, attempts + 1):
            value = await self._backend.read(key)
            if value is not None:
                logger.info("Secret '%s' found after %d attempt(s)", key, attempt)
                return value
            if attempt < attempts:
                logger.info(
                    "Attempt %d/%d: secret '%s' not found, waiting %.0fs (%d left)",
                    attempt,
                    attempts,
                    key,
                    delay,
                    attempts - attempt,
                )
                await asyncio.sleep(delay)

        raise SecretWaitTimeout(key, attempts)
