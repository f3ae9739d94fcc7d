"""
Proviso command and shell actions

Run a command line on the endpoint. ``creates=`` / ``removes=`` make the
step idempotent by skipping it when the marker path says it already ran.
"""

from typing import Optional

from proviso.actions.base import Action, register_action
from proviso.connections.base import shell_quote
from proviso.engine.results import Result


@register_action
class CommandAction(Action):
    """
    Execute a command without shell processing.

    Shell operators and variables won't work; use ``shell`` for those.
    """

    name = "command"
    optional_args = {
        "chdir": None,
        "creates": None,
        "removes": None,
    }
    use_shell = False

    def validate_args(self) -> Optional[str]:
        if not self.args.get("_raw_params") and not self.args.get("cmd") and not self.args.get("argv"):
            return "Either free-form command, 'cmd' or 'argv' is required"
        return None

    def command_line(self) -> str:
        argv = self.args.get("argv")
        if argv:
            return " ".join(shell_quote(str(a)) for a in argv)
        return str(self.args.get("_raw_params") or self.args.get("cmd"))

    async def run(self) -> Result:
        cmd = self.command_line()
        creates = self.get_arg("creates")
        removes = self.get_arg("removes")

        if self.connection is None:
            return Result.failure(msg="No connection available")

        if creates and await self.connection.stat(creates):
            return Result.success(skipped=True, msg=f"skipped, since {creates} exists",
                                  payload={'rc': 0, 'stdout': '', 'stderr': ''})

        if removes and not await self.connection.stat(removes):
            return Result.success(skipped=True, msg=f"skipped, since {removes} does not exist",
                                  payload={'rc': 0, 'stdout': '', 'stderr': ''})

        result = await self.execute(cmd, shell=self.use_shell, cwd=self.get_arg("chdir"))
        # Commands always report changed
        return self.from_run(result, changed=True, cmd=cmd)


@register_action
class ShellAction(CommandAction):
    """Execute a command through ``/bin/sh``."""

    name = "shell"
    use_shell = True
