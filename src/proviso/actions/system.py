"""
Proviso system actions

Packages, services, firewall, hostname, SSH keys and reboot handling.
Each adapter probes current state first and only reports ``changed``
when it had to act.
"""

import asyncio
from typing import List, Optional

from proviso.actions.base import Action, register_action, to_bool
from proviso.connections.base import shell_quote
from proviso.engine.errors import ProvisoError
from proviso.engine.results import Result


def _home_path(path: str) -> str:
    """Shell-quote a path but keep a leading ``~/`` expandable."""
    if path.startswith("~/"):
        return "~/" + shell_quote(path[2:])
    return shell_quote(path)


@register_action
class PackageAction(Action):
    """
    Manage OS packages with dnf / yum (or apt-get for ``package``).

    ``name: "*"`` with ``state: latest`` upgrades everything.
    """

    name = "package"
    aliases = ["dnf", "yum"]
    required_args = ["name"]
    optional_args = {
        "state": "present",
        "use": None,
    }

    async def run(self) -> Result:
        name = self.args["name"]
        state = self.get_arg("state")
        packages: List[str] = [str(p) for p in name] if isinstance(name, list) \
            else [p.strip() for p in str(name).split(",") if p.strip()]

        if state not in ("present", "installed", "latest", "absent", "removed"):
            return Result.failure(msg=f"Unsupported package state: {state}")

        manager = self.get_arg("use") or await self._detect_package_manager()
        if not manager:
            return Result.failure(msg="Could not detect package manager on this system")

        if manager == "apt":
            return await self._run_apt(packages, state)
        return await self._run_rpm(manager, packages, state)

    async def _detect_package_manager(self) -> Optional[str]:
        if self.context.action_ref in ("dnf", "yum"):
            return self.context.action_ref
        for cmd, manager in (("dnf", "dnf"), ("yum", "yum"), ("apt-get", "apt")):
            result = await self.execute(f"command -v {cmd}")
            if result.rc == 0:
                return manager
        return None

    async def _missing(self, packages: List[str]) -> List[str]:
        missing = []
        for package in packages:
            result = await self.execute(f"rpm -q --whatprovides {shell_quote(package)}")
            if result.rc != 0:
                missing.append(package)
        return missing

    async def _run_rpm(self, manager: str, packages: List[str], state: str) -> Result:
        quoted = " ".join(shell_quote(p) for p in packages)

        if state in ("absent", "removed"):
            installed = [p for p in packages if p not in await self._missing(packages)]
            if not installed:
                return Result.success(msg="Nothing to remove", payload={"packages": packages, "state": state})
            result = await self.execute(f"{manager} remove -y " + " ".join(shell_quote(p) for p in installed))
            return self.from_run(result, changed=True, packages=packages, state=state)

        if state == "latest":
            if packages == ["*"]:
                result = await self.execute(f"{manager} upgrade -y")
            else:
                result = await self.execute(f"{manager} install -y {quoted} && {manager} upgrade -y {quoted}")
            changed = "Nothing to do" not in result.stdout and "Complete!" in result.stdout
            return self.from_run(result, changed=changed, packages=packages, state=state)

        missing = await self._missing(packages)
        if not missing:
            return Result.success(msg="All packages already installed",
                                  payload={"packages": packages, "state": state})
        result = await self.execute(f"{manager} install -y " + " ".join(shell_quote(p) for p in missing))
        return self.from_run(result, changed=True, packages=packages, installed=missing, state=state)

    async def _run_apt(self, packages: List[str], state: str) -> Result:
        pkg_list = " ".join(shell_quote(p) for p in packages)

        if state in ("absent", "removed"):
            cmd = f"apt-get remove -y {pkg_list}"
        elif state == "latest":
            cmd = f"apt-get update && apt-get install -y --only-upgrade {pkg_list}"
        else:
            cmd = f"apt-get install -y {pkg_list}"

        result = await self.execute(cmd)
        changed = "0 newly installed" not in result.stdout and "is already the newest" not in result.stdout
        return self.from_run(result, changed=changed, packages=packages, state=state)


@register_action
class SystemdAction(Action):
    """Control systemd units: start/stop/restart/reload, enable, mask."""

    name = "systemd"
    aliases = ["service", "systemd_service"]
    optional_args = {
        "name": None,
        "state": None,
        "enabled": None,
        "masked": None,
        "daemon_reload": False,
        "scope": "system",
    }

    async def run(self) -> Result:
        name = self.get_arg("name")
        state = self.get_arg("state")
        enabled = self.get_arg("enabled")
        masked = self.get_arg("masked")
        daemon_reload = to_bool(self.get_arg("daemon_reload"))

        if not name and not daemon_reload:
            return Result.failure(msg="name is required unless daemon_reload is true")

        systemctl = "systemctl --user" if self.get_arg("scope") == "user" else "systemctl"
        changed = False

        if daemon_reload:
            result = await self.execute(f"{systemctl} daemon-reload")
            if result.rc != 0:
                return self.from_run(result)
            changed = True

        if not name:
            return Result.success(changed=changed, msg="Daemon reloaded")

        unit = shell_quote(name)
        active = (await self.execute(f"{systemctl} is-active {unit}")).stdout.strip() == "active"
        unit_state = (await self.execute(f"{systemctl} is-enabled {unit}")).stdout.strip()

        commands: List[str] = []
        if masked is not None:
            if to_bool(masked) and unit_state != "masked":
                commands.append(f"{systemctl} mask {unit}")
            elif not to_bool(masked) and unit_state == "masked":
                commands.append(f"{systemctl} unmask {unit}")

        if enabled is not None:
            if to_bool(enabled) and unit_state != "enabled":
                commands.append(f"{systemctl} enable {unit}")
            elif not to_bool(enabled) and unit_state == "enabled":
                commands.append(f"{systemctl} disable {unit}")

        if state == "started" and not active:
            commands.append(f"{systemctl} start {unit}")
        elif state == "stopped" and active:
            commands.append(f"{systemctl} stop {unit}")
        elif state in ("restarted", "reloaded"):
            verb = "restart" if state == "restarted" else "reload"
            commands.append(f"{systemctl} {verb} {unit}")
        elif state not in (None, "started", "stopped"):
            return Result.failure(msg=f"Unsupported service state: {state}")

        for command in commands:
            result = await self.execute(command)
            if result.rc != 0:
                return self.from_run(result)
            changed = True

        return Result.success(
            changed=changed,
            msg=f"Unit {name} {'updated' if changed else 'already in desired state'}",
            payload={"name": name, "active": active or state == "started", "unit_file_state": unit_state},
        )


@register_action
class FirewalldAction(Action):
    """
    Enable or disable firewalld services and ports.

    ``permanent: yes`` changes the saved configuration only, like
    firewall-cmd itself; add ``immediate: yes`` to also change the
    running firewall.
    """

    name = "firewalld"
    required_args = ["state"]
    optional_args = {
        "service": None,
        "port": None,
        "source": None,
        "zone": None,
        "permanent": False,
        "immediate": False,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("state") not in ("enabled", "disabled"):
            return "state must be enabled or disabled"
        if not any(self.get_arg(k) for k in ("service", "port", "source")):
            return "one of service, port or source is required"
        return None

    async def run(self) -> Result:
        enable = self.get_arg("state") == "enabled"
        kind, value = next((k, self.get_arg(k)) for k in ("service", "port", "source") if self.get_arg(k))
        permanent = to_bool(self.get_arg("permanent"))

        scopes = []
        if permanent:
            scopes.append("--permanent ")
        if not permanent or to_bool(self.get_arg("immediate")):
            scopes.append("")

        zone = self.get_arg("zone")
        zone_flag = f"--zone={shell_quote(zone)} " if zone else ""

        changed = False
        for scope in scopes:
            base = f"firewall-cmd {scope}{zone_flag}"
            query = await self.execute(f"{base}--query-{kind}={shell_quote(value)}")
            present = query.rc == 0
            if present == enable:
                continue
            verb = "add" if enable else "remove"
            result = await self.execute(f"{base}--{verb}-{kind}={shell_quote(value)}")
            if result.rc != 0:
                return self.from_run(result)
            changed = True

        return Result.success(
            changed=changed,
            msg=f"{kind} {value} {'enabled' if enable else 'disabled'}",
            payload={kind: value, "state": self.get_arg("state"), "permanent": permanent},
        )


@register_action
class HostnameAction(Action):
    """Set the system hostname."""

    name = "hostname"
    required_args = ["name"]

    async def run(self) -> Result:
        name = str(self.args["name"])

        result = await self.execute("hostname")
        current = result.stdout.strip() if result.rc == 0 else ""
        if current == name:
            return Result.success(msg=f"Hostname is already {name}", payload={"name": name})

        quoted = shell_quote(name)
        result = await self.execute(
            f"hostnamectl set-hostname {quoted} 2>/dev/null || "
            f"(echo {quoted} > /etc/hostname && hostname {quoted})"
        )
        if result.rc != 0:
            return self.from_run(result)
        return Result.success(
            changed=True,
            msg=f"Hostname changed from {current} to {name}",
            payload={"name": name, "old_name": current},
        )


@register_action
class OpensshKeypairAction(Action):
    """Generate an SSH key pair unless one already exists."""

    name = "openssh_keypair"
    required_args = ["path"]
    optional_args = {
        "type": "rsa",
        "size": None,
        "state": "present",
        "force": False,
        "comment": None,
    }

    async def run(self) -> Result:
        path = str(self.args["path"])
        target = _home_path(path)
        exists = (await self.execute(f"test -f {target}")).rc == 0
        payload = {"filename": path, "type": self.get_arg("type")}

        if self.get_arg("state") == "absent":
            if not exists:
                return Result.success(msg="Key pair not present", payload=payload)
            result = await self.execute(f"rm -f {target} {target}.pub")
            return self.from_run(result, changed=True, **payload)

        if exists and not to_bool(self.get_arg("force")):
            public = await self.execute(f"cat {target}.pub")
            payload["public_key"] = public.stdout.strip()
            return Result.success(msg="Key pair already exists", payload=payload)

        command = f"rm -f {target} {target}.pub && ssh-keygen -q -N '' -t {shell_quote(self.get_arg('type'))}"
        if self.get_arg("size"):
            command += f" -b {int(self.get_arg('size'))}"
        if self.get_arg("comment"):
            command += f" -C {shell_quote(self.get_arg('comment'))}"
        command += f" -f {target} && cat {target}.pub"

        result = await self.execute(f"mkdir -p $(dirname {target}) && {command}")
        return self.from_run(result, changed=True, public_key=result.stdout.strip(), **payload)


async def wait_until_reachable(action: Action, timeout: float, interval: float,
                               test_command: str = "true") -> Optional[str]:
    """
    Reconnect and run ``test_command`` until it succeeds or ``timeout`` passes.

    Returns None on success, otherwise the last error seen.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_error: Optional[str] = None

    while loop.time() < deadline:
        try:
            await action.connection.close()
            await action.connection.connect()
        except ProvisoError as e:
            last_error = e.message
        except (OSError, asyncio.TimeoutError) as e:
            last_error = str(e) or type(e).__name__
        else:
            result = await action.connection.run(test_command)
            if result.rc == 0:
                return None
            last_error = result.stderr.strip() or f"rc={result.rc}"
        await asyncio.sleep(interval)
    return last_error or "timed out"


@register_action
class RebootAction(Action):
    """Reboot the endpoint, then wait until it answers again."""

    name = "reboot"
    optional_args = {
        "msg": "Reboot initiated by proviso",
        "pre_reboot_delay": 0,
        "post_reboot_delay": 0,
        "reboot_timeout": 600,
        "connect_timeout": 5,
        "test_command": "whoami",
    }

    async def run(self) -> Result:
        if self.connection is None:
            return Result.failure(msg="No connection available")
        if self.connection.connection_type == "local":
            return Result.failure(msg="Refusing to reboot the control node")

        pre_delay = int(self.get_arg("pre_reboot_delay"))
        await self.connection.run(
            f"sleep {pre_delay + 1} && shutdown -r now {shell_quote(self.get_arg('msg'))} "
            "> /dev/null 2>&1 &"
        )
        # Give the machine a moment to go down before polling
        await asyncio.sleep(pre_delay + 5 + int(self.get_arg("post_reboot_delay")))

        timeout = float(self.get_arg("reboot_timeout"))
        error = await wait_until_reachable(
            self, timeout, float(self.get_arg("connect_timeout")), self.get_arg("test_command")
        )
        if error is not None:
            return Result.failure(msg=f"Timeout waiting for reboot after {timeout:g}s: {error}")
        return Result.success(changed=True, msg="Reboot completed", payload={"rebooted": True})


@register_action
class WaitForConnectionAction(Action):
    """Wait until the endpoint accepts connections and runs commands."""

    name = "wait_for_connection"
    optional_args = {
        "delay": 0,
        "sleep": 1,
        "timeout": 600,
    }

    async def run(self) -> Result:
        if self.connection is None:
            return Result.failure(msg="No connection available")

        delay = float(self.get_arg("delay"))
        if delay > 0:
            await asyncio.sleep(delay)

        loop = asyncio.get_running_loop()
        started = loop.time()
        probe = await self.connection.run("true")
        if probe.rc == 0:
            return Result.success(msg="Connection established", payload={"elapsed": 0})

        timeout = float(self.get_arg("timeout"))
        error = await wait_until_reachable(self, timeout, float(self.get_arg("sleep")))
        if error is not None:
            return Result.failure(msg=f"Timeout waiting for connection after {timeout:g}s: {error}")
        return Result.success(msg="Connection established",
                              payload={"elapsed": int(loop.time() - started)})
