"""
An asynchronous HashiCorp Vault client limited to what the coordination store
needs: token acquisition/renewal (Kubernetes auth or a direct token) and the
KV v2 read, write, soft-delete, metadata and purge endpoints.
"""

from __future__ import annotations

import logging
import time
import aiohttp
import aiofiles
from typing import Any, Dict, Optional, Tuple, Type

from kubepool.models.validator import validate_type
from kubepool.models.vault import VaultSettings

logger = logging.getLogger(__name__)


class VaultRequestError(RuntimeError):
    """A Vault HTTP call returned an unexpected status.

    Attributes:
        status: The HTTP status code.
        detail: The decoded response body, if any.
    """

    def __init__(self, message: str, status: int, detail: Any = None) -> None:
        super().__init__(f"{message}: {status}, {detail}")
        self.status = status
        self.detail = detail


async def _json_body(resp: aiohttp.ClientResponse) -> Dict[str, Any]:
    """Decoded JSON object of a response; empty or non-JSON bodies give {}."""
    try:
        raw = await resp.json()
    except aiohttp.ContentTypeError:
        return {}
    if raw is None:
        return {}
    return validate_type(raw, Dict[str, Any])


def _client_token(body: Dict[str, Any]) -> Optional[str]:
    auth = body.get("auth") or {}
    token = auth.get("client_token") if isinstance(auth, dict) else None
    return token if isinstance(token, str) and token else None


class AsyncVaultClient:
    """
    Vault access for one CLI invocation.

    With a direct token the token is used as is. Otherwise the client logs in
    through the Kubernetes auth method with the service account JWT at
    `settings.token_path`, looks the token up at most every
    `check_interval_seconds`, and renews it once its TTL drops below
    `renew_threshold_seconds`.
    """

    def __init__(self, settings: VaultSettings) -> None:
        self.settings = settings
        self._base_url = f"{settings.vault_addr.rstrip('/')}/v1"
        self._kv_mount = settings.kv_mount.strip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._token: Optional[str] = settings.direct_vault_token
        self._checked_at: float = 0.0

    async def __aenter__(self) -> AsyncVaultClient:
        await self.ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _auth_call(
        self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Dict[str, Any]]:
        session = await self.ensure_session()
        headers = {"X-Vault-Token": self._token} if self._token else {}
        async with session.request(
            method,
            f"{self._base_url}/auth/{endpoint}",
            json=payload,
            headers=headers,
            ssl=self.settings.verify_ssl,
        ) as resp:
            return resp.status, await _json_body(resp)

    async def ensure_valid_token(self) -> None:
        """Log in, or renew the current token when it is close to expiry.

        Raises:
            VaultRequestError: If login fails.
        """
        s = self.settings
        if s.direct_vault_token is not None:
            return

        now = time.time()
        if self._token is not None and now - self._checked_at < s.check_interval_seconds:
            return

        if self._token is None:
            await self._login()
        else:
            status, body = await self._auth_call("GET", "token/lookup-self")
            data = body.get("data") if status == 200 else None
            ttl = data.get("ttl") if isinstance(data, dict) else None
            if not isinstance(ttl, int):
                logger.info("Vault token lookup failed (%d), logging in again", status)
                await self._login()
            elif ttl < s.renew_threshold_seconds:
                await self._renew_token()
        self._checked_at = now

    async def _login(self) -> None:
        """Kubernetes auth login using the service account JWT."""
        role = self.settings.vault_role_name
        if not role:
            raise RuntimeError("Cannot login via K8s: vault_role_name not set.")

        async with aiofiles.open(self.settings.token_path, "r") as f:
            jwt = (await f.read()).strip()

        self._token = None
        status, body = await self._auth_call(
            "POST", "kubernetes/login", {"jwt": jwt, "role": role}
        )
        token = _client_token(body) if status == 200 else None
        if token is None:
            raise VaultRequestError("Vault login failed", status, body)
        self._token = token
        logger.info("Logged in to Vault with role %s", role)

    async def _renew_token(self) -> None:
        status, body = await self._auth_call("POST", "token/renew-self")
        token = _client_token(body) if status == 200 else None
        if token is None:
            logger.warning("Vault token renewal failed (%d), logging in again", status)
            await self._login()
            return
        self._token = token

    async def _kv_request(
        self, method: str, kind: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Dict[str, Any]]:
        """Issue one KV v2 request against `{mount}/{kind}/{path}`."""
        await self.ensure_valid_token()
        session = await self.ensure_session()
        async with session.request(
            method,
            f"{self._base_url}/{self._kv_mount}/{kind}/{path}",
            json=payload,
            headers={"X-Vault-Token": self._token or ""},
            ssl=self.settings.verify_ssl,
        ) as resp:
            return resp.status, await _json_body(resp)

    # ------------------------------
    # KV V2 Methods
    # ------------------------------
    async def read_secret(self, path: str) -> Dict[str, Any]:
        """Read the latest version of a KV v2 secret.

        Raises:
            VaultRequestError: status 404 if absent or soft-deleted.
        """
        status, body = await self._kv_request("GET", "data", path)
        if status != 200:
            raise VaultRequestError("Error reading secret", status, body)
        sub_data = body.get("data", {}).get("data")
        if isinstance(sub_data, dict):
            return sub_data
        return body

    async def write_secret(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Write a new version of a KV v2 secret."""
        status, body = await self._kv_request("POST", "data", path, {"data": data})
        if status not in (200, 204):
            raise VaultRequestError("Error writing secret", status, body)
        return body

    async def delete_secret(self, path: str, hard: bool = False) -> None:
        """Soft-delete the latest version, or (hard) remove metadata and all versions."""
        kind = "metadata" if hard else "data"
        status, body = await self._kv_request("DELETE", kind, path)
        if status not in (200, 204, 404):
            label = "Hard" if hard else "Soft"
            raise VaultRequestError(f"{label} delete failed", status, body)

    async def secret_history(self, path: str) -> Dict[str, Any]:
        """Metadata for all versions of a secret; {} if it has none."""
        status, body = await self._kv_request("GET", "metadata", path)
        if status == 404:
            return {}
        if status != 200:
            raise VaultRequestError("Error reading metadata", status, body)
        return body
