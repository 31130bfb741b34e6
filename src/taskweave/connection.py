"""Host connections for taskweave.

The executor opens one connection per host per run through a
``ConnectionProvider`` and hands it to the module runner for every task on
that host. Two transports ship with taskweave:

- ``LocalConnection`` runs commands through a local shell subprocess
- ``SSHConnection`` runs commands over an asyncssh client connection

Failures while connecting raise ``ConnectionError``; a connection that
drops while a command runs raises ``HostUnreachableError``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import asyncssh

from .exceptions import ConnectionError, HostUnreachableError, SecretResolutionError, TaskTimeoutError
from .secrets import NullSecretsProvider, SecretsProvider
from .types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class SSHConfig:
    """SSH connection configuration.

    Attributes:
        hostname: Remote hostname or IP
        port: SSH port (default 22)
        username: SSH username (default current user)
        password: Password for authentication (optional)
        client_keys: List of private key paths (optional)
        known_hosts: Path to known_hosts file (None to disable checking,
            empty string for the asyncssh default)
        connect_timeout: Connection timeout in seconds
        keepalive_interval: Keepalive interval (0 to disable)
    """

    hostname: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    client_keys: list[str] | None = None
    known_hosts: str | None = ""
    connect_timeout: float = 30.0
    keepalive_interval: float = 30.0

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.hostname,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }

        if self.username:
            options["username"] = self.username
        if self.password:
            options["password"] = self.password
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts is None:
            options["known_hosts"] = None  # Disable host key checking
        elif self.known_hosts:
            options["known_hosts"] = self.known_hosts

        return options


class Connection(ABC):
    """An open channel to one host."""

    def __init__(self, host: HostConfig) -> None:
        self.host = host

    @abstractmethod
    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
    ) -> tuple[str, str, int]:
        """Run a shell command on the host.

        Args:
            command: Command to execute
            stdin: Input to send to the command's stdin
            timeout: Command timeout in seconds (None for no limit)

        Returns:
            Tuple of (stdout, stderr, return_code)

        Raises:
            HostUnreachableError: If the connection dropped
            TaskTimeoutError: If the command exceeded the timeout
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""


class LocalConnection(Connection):
    """Runs commands on the control machine via a shell subprocess."""

    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
    ) -> tuple[str, str, int]:
        logger.debug(f"Running locally for {self.host.name}: {command[:100]}")
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin.encode()), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TaskTimeoutError(
                f"Command timed out after {timeout}s", host=self.host.name
            ) from None
        return stdout.decode(errors="replace"), stderr.decode(errors="replace"), proc.returncode or 0

    async def close(self) -> None:
        pass


class SSHConnection(Connection):
    """Runs commands over an established asyncssh connection.

    Example:
        conn = await SSHConnection.open(host, SSHConfig(hostname="10.0.0.5"))
        stdout, stderr, rc = await conn.run("uptime")
        await conn.close()
    """

    def __init__(self, host: HostConfig, conn: asyncssh.SSHClientConnection) -> None:
        super().__init__(host)
        self._conn = conn

    @classmethod
    async def open(cls, host: HostConfig, config: SSHConfig) -> "SSHConnection":
        """Connect to a host.

        Raises:
            ConnectionError: If the connection cannot be established
        """
        logger.debug(f"Connecting to {config.hostname}:{config.port}")
        try:
            conn = await asyncssh.connect(**config.to_asyncssh_options())
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise ConnectionError(host.name, str(e) or type(e).__name__) from e
        logger.info(f"Connected to {config.hostname}")
        return cls(host, conn)

    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
    ) -> tuple[str, str, int]:
        logger.debug(f"Running on {self.host.name}: {command[:100]}")
        try:
            result = await asyncio.wait_for(
                self._conn.run(command, input=stdin, check=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TaskTimeoutError(
                f"Command timed out after {timeout}s", host=self.host.name
            ) from None
        except (asyncssh.DisconnectError, asyncssh.ChannelOpenError, OSError) as e:
            raise HostUnreachableError(self.host.name, str(e)) from e

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        return_code = result.returncode or 0
        logger.debug(
            f"Command completed: rc={return_code}, "
            f"stdout={len(stdout)} bytes, stderr={len(stderr)} bytes"
        )
        return str(stdout), str(stderr), return_code

    async def close(self) -> None:
        if not self._conn.is_closed():
            self._conn.close()
            await self._conn.wait_closed()
            logger.debug(f"Disconnected from {self.host.name}")


class ConnectionProvider(ABC):
    """Opens connections to hosts."""

    @abstractmethod
    async def connect(self, host: HostConfig) -> Connection:
        """Open a connection to a host.

        Raises:
            ConnectionError: If the host cannot be reached
        """


class DefaultConnectionProvider(ConnectionProvider):
    """Local subprocess for ``connection: local`` hosts, asyncssh otherwise.

    A host's ``credentials_ref`` is resolved through the secrets provider
    and used as the SSH password.
    """

    def __init__(
        self,
        secrets: SecretsProvider | None = None,
        connect_timeout: float = 30.0,
        known_hosts: str | None = "",
    ) -> None:
        self.secrets = secrets or NullSecretsProvider()
        self.connect_timeout = connect_timeout
        self.known_hosts = known_hosts

    def ssh_config(self, host: HostConfig) -> SSHConfig:
        """Build the SSH configuration for a host."""
        password = None
        if host.credentials_ref:
            try:
                password = self.secrets.resolve(host.credentials_ref)
            except SecretResolutionError as e:
                raise ConnectionError(host.name, e.message) from e
        return SSHConfig(
            hostname=host.address,
            port=host.port,
            username=host.user,
            password=password,
            known_hosts=self.known_hosts,
            connect_timeout=self.connect_timeout,
        )

    async def connect(self, host: HostConfig) -> Connection:
        if host.is_local:
            return LocalConnection(host)
        return await SSHConnection.open(host, self.ssh_config(host))
