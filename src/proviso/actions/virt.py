"""
Proviso virt action

Manage libvirt guests through ``virsh`` on the endpoint.
"""

from typing import Dict, Optional

from proviso.actions.base import Action, register_action
from proviso.connections.base import shell_quote
from proviso.engine.results import Result


# desired state -> (virsh verb, domstate values that already satisfy it)
STATES: Dict[str, tuple] = {
    "running": ("start", ("running",)),
    "shutdown": ("shutdown", ("shut off", "shutdown")),
    "destroyed": ("destroy", ("shut off",)),
    "paused": ("suspend", ("paused",)),
}

COMMANDS = {
    "start": "running",
    "shutdown": "shutdown",
    "destroy": "destroyed",
    "pause": "paused",
}


@register_action
class VirtAction(Action):
    """
    Drive a libvirt domain to a state (``running``, ``shutdown``,
    ``destroyed``, ``paused``) or run ``command: status``.
    """

    name = "virt"
    optional_args = {
        "name": None,
        "state": None,
        "command": None,
        "uri": "qemu:///system",
    }

    def validate_args(self) -> Optional[str]:
        state = self.get_arg("state")
        command = self.get_arg("command")
        if state is None and command is None:
            return "one of 'state' or 'command' is required"
        if state is not None and state not in STATES:
            return f"unsupported state {state!r}; choose from {', '.join(STATES)}"
        if command is not None and command not in COMMANDS and command not in ("status", "list_vms"):
            return f"unsupported command {command!r}"
        if command != "list_vms" and not self.get_arg("name"):
            return "Missing required argument: name"
        return None

    async def run(self) -> Result:
        virsh = f"virsh -c {shell_quote(self.get_arg('uri'))}"
        command = self.get_arg("command")

        if command == "list_vms":
            result = await self.execute(f"{virsh} list --all --name")
            return self.from_run(result, changed=False,
                                 list_vms=[n for n in result.stdout.splitlines() if n.strip()])

        name = str(self.get_arg("name"))
        domain = shell_quote(name)
        query = await self.execute(f"{virsh} domstate {domain}")
        if query.rc != 0:
            return Result.failure(
                msg=f"domain {name} not found: {query.stderr.strip()}",
                payload={"rc": query.rc, "stderr": query.stderr},
            )
        current = query.stdout.strip()

        if command == "status":
            return Result.success(msg=current, payload={"status_text": current, "name": name})

        state = self.get_arg("state") or COMMANDS[command]
        verb, satisfied = STATES[state]
        if current in satisfied:
            return Result.success(msg=f"{name} already {current}", payload={"name": name, "state": current})

        if state == "running" and current == "paused":
            verb = "resume"
        result = await self.execute(f"{virsh} {verb} {domain}")
        return self.from_run(result, changed=True, name=name, state=state, previous_state=current)
