"""
Proviso Local Connection

Execute commands on the control node (no remote connection).
"""

import asyncio
import os
import shlex
import shutil
from pathlib import Path
from typing import Optional

from proviso.connections.base import Connection, RunResult
from proviso.engine.inventory import Endpoint


class LocalConnection(Connection):
    """Local connection, used for ``localhost`` and ``ansible_connection=local``."""

    def __init__(self, endpoint: Endpoint):
        super().__init__(endpoint)
        self._connected = False

    async def connect(self) -> None:
        """Local connection is always available."""
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        env = os.environ.copy()
        if environment:
            env.update({k: str(v) for k, v in environment.items()})

        try:
            if shell:
                process = await asyncio.create_subprocess_shell(
                    command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *shlex.split(command),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except OSError as e:
            return RunResult(rc=127, stdout="", stderr=str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return RunResult(rc=124, stdout="", stderr="Command timed out")

        return RunResult(
            rc=process.returncode or 0,
            stdout=stdout_bytes.decode('utf-8', errors='replace'),
            stderr=stderr_bytes.decode('utf-8', errors='replace'),
        )

    async def put(
        self,
        local_path: Path,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        dest = Path(remote_path).expanduser()
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(local_path, dest)
        if mode:
            os.chmod(dest, int(mode, 8))

    async def put_content(
        self,
        content: str,
        remote_path: str,
        mode: Optional[str] = None,
    ) -> None:
        dest = Path(remote_path).expanduser()
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(content, encoding='utf-8')
        if mode:
            os.chmod(dest, int(mode, 8))

    async def read_text(self, remote_path: str) -> Optional[str]:
        path = Path(remote_path).expanduser()
        if not path.is_file():
            return None
        return path.read_text(encoding='utf-8', errors='replace')

    async def stat(self, remote_path: str) -> Optional[dict]:
        path = Path(remote_path).expanduser()

        if not path.exists() and not path.is_symlink():
            return None

        st = path.stat()
        return {
            'exists': True,
            'isdir': path.is_dir(),
            'isreg': path.is_file(),
            'islnk': path.is_symlink(),
            'size': st.st_size,
            'mtime': st.st_mtime,
            'mode': oct(st.st_mode)[-4:],
            'uid': st.st_uid,
            'gid': st.st_gid,
        }
