"""
Proviso SSH Connection (asyncssh)

SSH connection using asyncssh for async operations.
"""

import asyncio
import os
import stat as stat_module
from pathlib import Path
from typing import Optional

import asyncssh

from proviso.connections.base import Connection, RunResult, shell_quote
from proviso.engine.errors import ConnectionError
from proviso.engine.inventory import Endpoint


class SSHConnection(Connection):
    """
    SSH connection using asyncssh.

    Supports:
    - Key-based authentication
    - Password authentication
    - SSH agent
    - Custom ports
    """

    def __init__(self, endpoint: Endpoint):
        super().__init__(endpoint)
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._sftp: Optional[asyncssh.SFTPClient] = None

    async def connect(self) -> None:
        """Establish SSH connection."""
        endpoint = self.endpoint
        connect_kwargs = {
            'host': endpoint.address,
            'port': endpoint.port,
            'username': endpoint.user or os.getenv('USER', 'root'),
            'connect_timeout': int(endpoint.vars.get('ansible_ssh_timeout', 30)),
        }

        if endpoint.private_key_file:
            connect_kwargs['client_keys'] = [os.path.expanduser(endpoint.private_key_file)]
        if endpoint.password:
            connect_kwargs['password'] = endpoint.password

        host_key_checking = endpoint.vars.get('ansible_ssh_host_key_checking', True)
        if not host_key_checking or str(host_key_checking).lower() in ('false', 'no'):
            connect_kwargs['known_hosts'] = None

        try:
            self._conn = await asyncssh.connect(**connect_kwargs)
        except (asyncssh.Error, OSError) as e:
            raise ConnectionError(host=endpoint.name, message=str(e), connection_type='ssh')

    async def close(self) -> None:
        if self._sftp:
            self._sftp.exit()
            self._sftp = None

        if self._conn:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        if not self._conn:
            return RunResult(rc=1, stdout="", stderr="Not connected")

        full_command = command
        if cwd:
            full_command = f"cd {shell_quote(cwd)} && {command}"
        if shell:
            full_command = f"/bin/sh -c {shell_quote(full_command)}"
        if environment:
            env_prefix = " ".join(f"{k}={shell_quote(v)}" for k, v in environment.items())
            full_command = f"env {env_prefix} {full_command}"

        try:
            result = await asyncio.wait_for(self._conn.run(full_command, check=False), timeout=timeout)
        except asyncio.TimeoutError:
            return RunResult(rc=124, stdout="", stderr="Command timed out")
        except (asyncssh.Error, OSError) as e:
            return RunResult(rc=255, stdout="", stderr=str(e))

        return RunResult(
            rc=result.exit_status or 0,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )

    async def _get_sftp(self) -> asyncssh.SFTPClient:
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def put(
        self,
        local_path: Path,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        """Upload a file via SFTP."""
        sftp = await self._get_sftp()
        remote_dir = str(Path(remote_path).parent)
        await sftp.makedirs(remote_dir, exist_ok=True)
        await sftp.put(str(local_path), remote_path)
        if mode:
            await sftp.chmod(remote_path, int(mode, 8))

    async def put_content(
        self,
        content: str,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        sftp = await self._get_sftp()
        async with sftp.open(remote_path, 'w') as f:
            await f.write(content)
        if mode:
            await sftp.chmod(remote_path, int(mode, 8))

    async def read_text(self, remote_path: str) -> Optional[str]:
        sftp = await self._get_sftp()
        try:
            async with sftp.open(remote_path, 'r') as f:
                return await f.read()
        except asyncssh.SFTPNoSuchFile:
            return None

    async def stat(self, remote_path: str) -> Optional[dict]:
        """Get file/directory information via SFTP."""
        sftp = await self._get_sftp()

        try:
            attrs = await sftp.stat(remote_path)
        except asyncssh.SFTPNoSuchFile:
            return None

        permissions = attrs.permissions or 0
        return {
            'exists': True,
            'isdir': stat_module.S_ISDIR(permissions),
            'isreg': stat_module.S_ISREG(permissions),
            'islnk': stat_module.S_ISLNK(permissions),
            'size': attrs.size or 0,
            'mtime': attrs.mtime or 0,
            'mode': oct(permissions)[-4:],
            'uid': attrs.uid or 0,
            'gid': attrs.gid or 0,
        }
