"""
kubepool/utils/ssh.py

Remote command execution over a single persistent SSH connection per node:
  - RemoteExecutor: the execute/probe protocol the installer is written against.
  - SSHSession: async context manager around one asyncssh connection. Every
    execute() opens a new channel on that connection.
  - CommandError: a remote command exited non-zero; carries the exit status and
    the combined stdout/stderr so diagnostics are never lost.
  - open_ssh_session: the factory the orchestrator uses (replaceable in tests).
  - load_private_key / load_known_hosts: read key material from disk.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, List, Optional, Type

import aiofiles
import asyncssh
from typing_extensions import Protocol

from kubepool.models.ssh import SSHConfig
from kubepool.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """A remote command failed.

    Attributes:
        message: Human readable description, including the command output.
        return_code: Exit status, or None if the remote side reported none.
        output: Combined stdout and stderr of the command.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, output: str = ""
    ) -> None:
        super().__init__(message)
        self.message = message
        self.return_code = return_code
        self.output = output


class RemoteExecutor(Protocol):
    """What the installer needs from a connection to one node."""

    async def execute(self, command: str, *, sensitive: bool = False) -> str: ...

    async def probe(self, command: str) -> bool: ...


class SSHSession:
    """
    Owns exactly one SSH connection to one instance.

    Usage:
        async with SSHSession(cfg) as session:
            out = await session.execute("kubeadm version -o short")
    """

    def __init__(
        self,
        ssh_config: SSHConfig,
        *,
        connect_retries: int = 10,
        retry_delay: float = 6.0,
    ) -> None:
        self.ssh_config = ssh_config
        self._connect_retries = connect_retries
        self._retry_delay = retry_delay
        self._conn: Optional[asyncssh.SSHClientConnection] = None

    async def __aenter__(self) -> SSHSession:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def connect(self) -> None:
        """
        Connect, retrying while sshd on a freshly started instance is not yet
        accepting connections.

        Raises:
            asyncssh.Error / OSError: once every attempt failed.
        """
        if self._conn is not None:
            return

        cfg = self.ssh_config
        client_key = asyncssh.import_private_key(cfg.private_key)
        known_hosts = (
            asyncssh.import_known_hosts("\n".join(cfg.host_keys))
            if cfg.host_keys
            else None
        )

        @async_retry(
            retries=self._connect_retries,
            delay=self._retry_delay,
            noisy=True,
            retry_on=(asyncssh.Error, OSError, asyncio.TimeoutError),
        )
        async def _connect() -> asyncssh.SSHClientConnection:
            return await asyncssh.connect(
                cfg.hostname,
                port=cfg.port,
                username=cfg.user,
                client_keys=[client_key],
                known_hosts=known_hosts,
                connect_timeout=cfg.connect_timeout,
            )

        logger.info("Connecting to %s", cfg.target)
        self._conn = await _connect()

    async def execute(self, command: str, *, sensitive: bool = False) -> str:
        """
        Run `command` in a new channel and return its combined output.

        Args:
            command: Shell command line.
            sensitive: If True, the command text (e.g. an embedded join token)
                is never logged.

        Raises:
            CommandError: If the command exits non-zero.
        """
        if self._conn is None:
            raise RuntimeError("SSH session is not connected.")

        logger.debug(
            "[%s] $ %s",
            self.ssh_config.target,
            "<redacted>" if sensitive else command,
        )
        result = await self._conn.run(command, check=False, stderr=asyncssh.STDOUT)
        output = str(result.stdout or "")

        if result.exit_status != 0:
            raise CommandError(
                f"Remote command failed on {self.ssh_config.target} "
                f"(exit {result.exit_status}): {output.strip()}",
                return_code=result.exit_status,
                output=output,
            )
        return output

    async def probe(self, command: str) -> bool:
        """True if `command` exits zero, False if it fails."""
        try:
            await self.execute(command)
        except CommandError:
            return False
        return True

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None


def open_ssh_session(
    ssh_config: SSHConfig, *, connect_retries: int = 10, retry_delay: float = 6.0
) -> SSHSession:
    """Build an unconnected session; entering it connects."""
    return SSHSession(
        ssh_config, connect_retries=connect_retries, retry_delay=retry_delay
    )


async def load_private_key(path: str) -> str:
    """Read a private key file, expanding `~`."""
    async with aiofiles.open(os.path.expanduser(path), "r", encoding="utf-8") as f:
        return await f.read()


async def load_known_hosts(path: str) -> List[str]:
    """
    Read known_hosts entries, skipping blank lines and comments. Entries for
    NAT ports use the `[host]:port key-type key` form.
    """
    async with aiofiles.open(os.path.expanduser(path), "r", encoding="utf-8") as f:
        content = await f.read()
    return [
        line.strip()
        for line in content.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]
