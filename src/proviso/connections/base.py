"""
Proviso Connection Base Class

Abstract base class for all connection types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from proviso.engine.errors import ConnectionError
from proviso.engine.inventory import Endpoint


@dataclass
class RunResult:
    """Result of running a command on an endpoint."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    All connection types (SSH, local) must implement this interface.
    """

    def __init__(self, endpoint: Endpoint):
        self.endpoint = endpoint

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command on the endpoint.

        Args:
            command: Command to execute
            shell: If True, run through a shell
            timeout: Optional timeout in seconds
            cwd: Working directory
            environment: Environment variables

        Returns:
            RunResult with rc, stdout, stderr
        """

    @abstractmethod
    async def put(
        self,
        local_path: Path,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        """Upload a file to the endpoint."""

    @abstractmethod
    async def put_content(
        self,
        content: str,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        """Write ``content`` to a file on the endpoint."""

    @abstractmethod
    async def read_text(self, remote_path: str) -> Optional[str]:
        """Return a file's text, or None if it does not exist."""

    @abstractmethod
    async def stat(self, remote_path: str) -> Optional[dict]:
        """
        Get file/directory information.

        Returns:
            Dict with 'exists', 'isdir', 'size', 'mtime' or None if not found
        """

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()


async def open_connection(endpoint: Endpoint) -> Connection:
    """
    Create and connect the connection type an endpoint asks for.

    Used as the probe's connection factory.
    """
    conn_type = endpoint.connection_type

    if conn_type == 'local':
        from proviso.connections.local import LocalConnection
        conn: Connection = LocalConnection(endpoint)
    elif conn_type == 'ssh':
        from proviso.connections.ssh_asyncssh import SSHConnection
        conn = SSHConnection(endpoint)
    else:
        raise ConnectionError(endpoint.name, f"unknown connection type '{conn_type}'", conn_type)

    await conn.connect()
    return conn


def shell_quote(s: str) -> str:
    """Quote a string for shell use."""
    return "'" + str(s).replace("'", "'\"'\"'") + "'"
