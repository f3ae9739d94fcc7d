"""
Proviso get_url and unarchive actions

Fetch artifacts onto the endpoint and unpack them.
"""

import posixpath
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from proviso.actions.base import Action, normalize_mode, register_action, to_bool
from proviso.connections.base import shell_quote
from proviso.engine.results import Result


@register_action
class GetUrlAction(Action):
    """
    Download a URL with ``curl`` on the endpoint.

    When ``dest`` is a directory the file name comes from the URL. An
    existing file is left alone unless ``force`` is set.
    """

    name = "get_url"
    required_args = ["url", "dest"]
    optional_args = {
        "mode": None,
        "force": False,
        "timeout": 10,
        "validate_certs": True,
    }

    async def run(self) -> Result:
        url = str(self.args["url"])
        dest = str(self.args["dest"])

        if self.connection is None:
            return Result.failure(msg="No connection available")

        try:
            mode = normalize_mode(self.get_arg("mode"))
        except ValueError:
            return Result.failure(msg=f"invalid mode {self.get_arg('mode')!r}")

        dest_stat = await self.connection.stat(dest)
        if dest_stat and dest_stat.get("isdir"):
            filename = posixpath.basename(urlparse(url).path) or "index.html"
            dest = posixpath.join(dest, filename)
            dest_stat = await self.connection.stat(dest)

        payload = {"url": url, "dest": dest}
        if dest_stat and not to_bool(self.get_arg("force")):
            return Result.success(msg=f"{dest} already exists", payload=payload)

        insecure = "" if to_bool(self.get_arg("validate_certs")) else "-k "
        command = (
            f"curl -fsSL {insecure}--connect-timeout {int(self.get_arg('timeout'))} "
            f"-o {shell_quote(dest)} {shell_quote(url)}"
        )
        if mode:
            command += f" && chmod {mode} {shell_quote(dest)}"

        result = await self.execute(command)
        if result.rc != 0:
            await self.execute(f"rm -f {shell_quote(dest)}")
            return Result.failure(
                msg=f"Request failed for {url}: {result.stderr.strip() or f'rc={result.rc}'}",
                payload={**payload, "rc": result.rc},
                raw_output=result.stderr,
            )
        return Result.success(changed=True, msg=f"Downloaded {url}", payload=payload)


@register_action
class UnarchiveAction(Action):
    """Extract a tar or zip archive into a directory on the endpoint."""

    name = "unarchive"
    required_args = ["src", "dest"]
    optional_args = {
        "remote_src": False,
        "creates": None,
        "exclude": [],
        "extra_opts": [],
    }

    async def run(self) -> Result:
        src = str(self.args["src"])
        dest = str(self.args["dest"])
        payload = {"src": src, "dest": dest}

        if self.connection is None:
            return Result.failure(msg="No connection available")

        creates = self.get_arg("creates")
        if creates and await self.connection.stat(creates):
            return Result.success(skipped=True, msg=f"skipped, since {creates} exists", payload=payload)

        archive = src
        if not to_bool(self.get_arg("remote_src")):
            local = Path(src).expanduser()
            if not local.is_file():
                return Result.failure(msg=f"Source file not found: {src}")
            made = await self.execute("mktemp")
            if made.rc != 0:
                return self.from_run(made)
            archive = made.stdout.strip()
            await self.connection.put(local, archive)
        elif not await self.connection.stat(src):
            return Result.failure(msg=f"Source file not found on endpoint: {src}")

        command = f"mkdir -p {shell_quote(dest)} && " + self._extract_command(src, archive, dest)
        result = await self.execute(command)

        if archive != src:
            await self.execute(f"rm -f {shell_quote(archive)}")

        if result.rc != 0:
            return self.from_run(result)
        return Result.success(changed=True, msg=f"Extracted {src} to {dest}", payload=payload)

    def _extract_command(self, src: str, archive: str, dest: str) -> str:
        lower = src.lower()
        excludes: List[str] = [str(e) for e in self.get_arg("exclude") or []]
        extra = " ".join(str(o) for o in self.get_arg("extra_opts") or [])

        if lower.endswith(".zip"):
            command = f"unzip -o {shell_quote(archive)} -d {shell_quote(dest)}"
            command += "".join(f" -x {shell_quote(e)}" for e in excludes)
        else:
            flag = "-xf"
            if lower.endswith((".tar.gz", ".tgz")):
                flag = "-xzf"
            elif lower.endswith((".tar.bz2", ".tbz2")):
                flag = "-xjf"
            elif lower.endswith((".tar.xz", ".txz")):
                flag = "-xJf"
            command = f"tar {flag} {shell_quote(archive)} -C {shell_quote(dest)}"
            command += "".join(f" --exclude={shell_quote(e)}" for e in excludes)

        return f"{command} {extra}".rstrip()
