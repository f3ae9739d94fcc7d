"""
Proviso file actions

stat, file and copy: probe and converge paths on the endpoint.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from proviso.actions.base import Action, normalize_mode, register_action, to_bool
from proviso.connections.base import shell_quote
from proviso.engine.results import Result


@register_action
class StatAction(Action):
    """
    Retrieve file or directory status.

    The payload carries ``stat.exists`` so later guards can skip work
    that is already done.
    """

    name = "stat"
    required_args = ["path"]

    async def run(self) -> Result:
        path = str(self.args["path"])

        if self.connection is None:
            return Result.failure(msg="No connection available")

        info = await self.connection.stat(path)
        if info is None:
            stat: Dict[str, Any] = {"exists": False, "path": path}
        else:
            stat = {
                "exists": True,
                "path": path,
                "isdir": info.get("isdir", False),
                "isreg": info.get("isreg", False),
                "islnk": info.get("islnk", False),
                "mode": info.get("mode", ""),
                "size": info.get("size", 0),
                "uid": info.get("uid", 0),
                "gid": info.get("gid", 0),
            }
        return Result.success(changed=False, payload={"stat": stat}, msg="File stat retrieved")


@register_action
class FileAction(Action):
    """
    Manage files and directories.

    Supports state file, directory, touch, absent and link, plus
    ``mode`` (optionally recursive), ``attributes`` (chattr flags such
    as ``+i``) and ``setype`` (``_default`` restores the policy label).
    """

    name = "file"
    required_args = ["path"]
    optional_args = {
        "state": "file",
        "mode": None,
        "recurse": False,
        "force": False,
        "src": None,
        "attributes": None,
        "setype": None,
    }

    async def run(self) -> Result:
        path = str(self.args["path"])
        state = self.get_arg("state")

        if self.connection is None:
            return Result.failure(msg="No connection available")

        try:
            mode = normalize_mode(self.get_arg("mode"))
        except ValueError:
            return Result.failure(msg=f"invalid mode {self.get_arg('mode')!r}")

        handlers = {
            "absent": self._ensure_absent,
            "directory": self._ensure_directory,
            "touch": self._ensure_touch,
            "file": self._ensure_file,
            "link": self._ensure_link,
        }
        handler = handlers.get(state)
        if handler is None:
            return Result.failure(
                msg=f"Unknown state: {state}. Supported: {', '.join(sorted(handlers))}"
            )

        result = await handler(path)
        if result.failed or state == "absent":
            return result
        return await self._apply_attributes(path, mode, result)

    async def _ensure_absent(self, path: str) -> Result:
        if not await self.connection.stat(path):
            return Result.success(msg=f"Path does not exist: {path}", payload={"path": path, "state": "absent"})

        result = await self.execute(f"rm -rf {shell_quote(path)}")
        if result.rc != 0:
            return self.from_run(result)
        return Result.success(changed=True, msg=f"Removed: {path}", payload={"path": path, "state": "absent"})

    async def _ensure_directory(self, path: str) -> Result:
        stat = await self.connection.stat(path)
        if stat:
            if not stat.get("isdir"):
                return Result.failure(msg=f"Path exists but is not a directory: {path}")
            return Result.success(msg=f"Directory already exists: {path}",
                                  payload={"path": path, "state": "directory"})

        result = await self.execute(f"mkdir -p {shell_quote(path)}")
        if result.rc != 0:
            return self.from_run(result)
        return Result.success(changed=True, msg=f"Created directory: {path}",
                              payload={"path": path, "state": "directory"})

    async def _ensure_touch(self, path: str) -> Result:
        stat = await self.connection.stat(path)
        if stat and stat.get("isdir"):
            return Result.failure(msg=f"Path is a directory, cannot touch: {path}")

        result = await self.execute(f"touch {shell_quote(path)}")
        if result.rc != 0:
            return self.from_run(result)
        # touch always updates timestamps
        return Result.success(changed=True, msg=f"{'Touched' if stat else 'Created'}: {path}",
                              payload={"path": path, "state": "touch"})

    async def _ensure_file(self, path: str) -> Result:
        stat = await self.connection.stat(path)
        if not stat:
            return Result.failure(msg=f"Path does not exist: {path}")
        return Result.success(msg=f"Path exists: {path}", payload={"path": path, "state": "file"})

    async def _ensure_link(self, path: str) -> Result:
        src = self.get_arg("src")
        if not src:
            return Result.failure(msg="'src' is required when state=link")

        if await self.connection.stat(path):
            if not to_bool(self.get_arg("force")):
                return Result.success(msg=f"Path already exists: {path}",
                                      payload={"path": path, "src": src, "state": "link"})
            removed = await self.execute(f"rm -f {shell_quote(path)}")
            if removed.rc != 0:
                return self.from_run(removed)

        result = await self.execute(f"ln -s {shell_quote(src)} {shell_quote(path)}")
        if result.rc != 0:
            return self.from_run(result)
        return Result.success(changed=True, msg=f"Created link: {path} -> {src}",
                              payload={"path": path, "src": src, "state": "link"})

    async def _apply_attributes(self, path: str, mode: Optional[str], result: Result) -> Result:
        """Converge mode / attributes / SELinux type after the state handler."""
        recurse = to_bool(self.get_arg("recurse"))
        changed = result.changed
        commands: List[str] = []

        if mode:
            stat = await self.connection.stat(path)
            if recurse or not stat or stat.get("mode") != mode:
                flag = "-R " if recurse else ""
                commands.append(f"chmod {flag}{mode} {shell_quote(path)}")

        attributes = self.get_arg("attributes")
        if attributes:
            commands.append(f"chattr {attributes} {shell_quote(path)}")

        setype = self.get_arg("setype")
        if setype == "_default":
            flag = "-R " if recurse else ""
            commands.append(f"restorecon {flag}{shell_quote(path)}")
        elif setype:
            flag = "-R " if recurse else ""
            commands.append(f"chcon {flag}-t {shell_quote(setype)} {shell_quote(path)}")

        for command in commands:
            run = await self.execute(command)
            if run.rc != 0:
                return self.from_run(run)
            changed = True

        payload = dict(result.payload)
        if mode:
            payload["mode"] = mode
        return Result.success(changed=changed, msg=result.msg, payload=payload)


@register_action
class CopyAction(Action):
    """
    Copy a file (or inline ``content``) to the endpoint.

    With ``remote_src`` the source is a path on the endpoint itself. A
    relative local ``src`` is looked up under the playbook's ``files/``
    directory, then the playbook directory, then the working directory.
    """

    name = "copy"
    required_args = ["dest"]
    optional_args = {
        "src": None,
        "content": None,
        "mode": None,
        "remote_src": False,
        "force": True,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("src") is None and self.get_arg("content") is None:
            return "Either 'src' or 'content' is required"
        return None

    async def run(self) -> Result:
        dest = str(self.args["dest"])
        src = self.get_arg("src")
        content = self.get_arg("content")

        if self.connection is None:
            return Result.failure(msg="No connection available")

        try:
            mode = normalize_mode(self.get_arg("mode"))
        except ValueError:
            return Result.failure(msg=f"invalid mode {self.get_arg('mode')!r}")

        dest_stat = await self.connection.stat(dest)
        if dest_stat and dest_stat.get("isdir") and src is not None:
            dest = str(Path(dest) / Path(str(src)).name)
            dest_stat = await self.connection.stat(dest)

        if dest_stat and not to_bool(self.get_arg("force")):
            return Result.success(msg=f"{dest} exists and force is off", payload={"dest": dest})

        if content is not None:
            text = content if isinstance(content, str) else str(content)
            if await self.connection.read_text(dest) == text and not self._mode_differs(dest_stat, mode):
                return Result.success(msg="Content already matches", payload={"dest": dest})
            await self.connection.put_content(text, dest, mode=mode)
            return Result.success(changed=True, msg=f"Wrote {dest}", payload={"dest": dest})

        if to_bool(self.get_arg("remote_src")):
            return await self._copy_remote(str(src), dest, mode)

        local = self._find_local(str(src))
        if local is None:
            return Result.failure(msg=f"Source file not found: {src}")

        if dest_stat and await self.connection.read_text(dest) == local.read_text(encoding='utf-8', errors='replace') \
                and not self._mode_differs(dest_stat, mode):
            return Result.success(msg="File already up to date", payload={"dest": dest, "src": str(local)})

        await self.connection.put(local, dest, mode=mode)
        return Result.success(changed=True, msg=f"Copied {local} to {dest}",
                              payload={"dest": dest, "src": str(local)})

    async def _copy_remote(self, src: str, dest: str, mode: Optional[str]) -> Result:
        if not await self.connection.stat(src):
            return Result.failure(msg=f"Source file not found on endpoint: {src}")

        same = await self.execute(f"cmp -s {shell_quote(src)} {shell_quote(dest)}")
        if same.rc == 0:
            return Result.success(msg="File already up to date", payload={"dest": dest, "src": src})

        command = f"cp -f {shell_quote(src)} {shell_quote(dest)}"
        if mode:
            command += f" && chmod {mode} {shell_quote(dest)}"
        result = await self.execute(command)
        if result.rc != 0:
            return self.from_run(result)
        return Result.success(changed=True, msg=f"Copied {src} to {dest}", payload={"dest": dest, "src": src})

    def _find_local(self, src: str) -> Optional[Path]:
        path = Path(src).expanduser()
        if path.is_absolute():
            return path if path.is_file() else None

        playbook_dir = Path(str(self.context.variables.get("playbook_dir", ".")))
        for candidate in (playbook_dir / "files" / path, playbook_dir / path, Path.cwd() / path):
            if candidate.is_file():
                return candidate
        return None

    def _mode_differs(self, stat: Optional[dict], mode: Optional[str]) -> bool:
        return bool(mode and stat and stat.get("mode") != mode)
