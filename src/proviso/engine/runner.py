"""
Proviso Playbook Runner

High-level runner that coordinates inventory loading, playbook parsing,
the scheduler and output.
"""

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

from proviso.actions.base import ActionInvoker
from proviso.engine.config import RunConfig
from proviso.engine.display import Display
from proviso.engine.errors import ExitCode, ParseError, ProvisoError, UnknownGroupError
from proviso.engine.facts import FactStore
from proviso.engine.inventory import InventoryManager, ProbePolicy
from proviso.engine.playbook import Play, PlaybookParser
from proviso.engine.results import RunReport
from proviso.engine.scheduler import GroupContext, Scheduler

logger = logging.getLogger(__name__)

DEPLOY_TYPES = ('ipi', 'upi')


class PlaybookRunner:
    """
    High-level playbook runner.

    Coordinates:
    - Inventory loading and group resolution
    - Playbook parsing with run-start facts
    - Group execution through the scheduler
    - Output formatting and exit codes
    """

    def __init__(
        self,
        playbook_path: str,
        inventory_source: Optional[str] = None,
        config: Optional[RunConfig] = None,
        deploy_type: str = 'ipi',
        deploy_compact: bool = False,
        extra_vars: Optional[Dict[str, Any]] = None,
        invoker: Optional[ActionInvoker] = None,
        display: Optional[Display] = None,
    ):
        if deploy_type not in DEPLOY_TYPES:
            raise ValueError(f"deploy type must be one of {', '.join(DEPLOY_TYPES)}, got {deploy_type!r}")

        self.playbook_path = playbook_path
        self.inventory_source = inventory_source
        self.config = config or RunConfig()
        self.deploy_type = deploy_type
        self.deploy_compact = deploy_compact
        self.extra_vars = extra_vars or {}
        self.invoker = invoker or ActionInvoker()
        self.display = display or Display(self.config.json_output, self.config.verbosity)

        self.inventory: Optional[InventoryManager] = None
        self.cancel_event: Optional[asyncio.Event] = None

    def run(self) -> int:
        """
        Run the playbook synchronously.

        Returns:
            Exit code (0=success, 2=group failures, 3=load error, 130=cancelled)
        """
        try:
            report = asyncio.run(self.run_async())
        except ParseError as e:
            self._report_error("parse_error", str(e), e.exit_code)
            return e.exit_code
        except UnknownGroupError as e:
            self._report_error("unknown_group", f"Error: {e}", e.exit_code)
            return e.exit_code
        except ProvisoError as e:
            self._report_error("error", f"Error: {e}", e.exit_code)
            return e.exit_code
        except KeyboardInterrupt:
            self._report_error("interrupted", "\nInterrupted", ExitCode.KEYBOARD_INTERRUPT)
            return ExitCode.KEYBOARD_INTERRUPT

        if self.config.json_output:
            print(report.to_json())
        return int(report.exit_code)

    def _report_error(self, error_type: str, message: str, exit_code: int) -> None:
        if self.config.json_output:
            print(json.dumps({
                "error": True,
                "error_type": error_type,
                "message": message.strip(),
                "exit_code": int(exit_code),
            }, indent=2))
        else:
            self.display.error(message)

    def load(self) -> List[GroupContext]:
        """
        Load inventory and playbook and bind every play to its group.

        Everything that can fail at load time fails here, before any
        task is dispatched.
        """
        plays = self.load_plays()

        contexts = []
        for play in plays:
            endpoints = self.inventory.resolve(play.hosts)
            for endpoint in endpoints:
                if play.remote_user and endpoint.user is None:
                    endpoint.set_variable('ansible_user', play.remote_user)
                if play.connection and 'ansible_connection' not in endpoint.vars:
                    endpoint.set_variable('ansible_connection', play.connection)
            facts = FactStore(scope=f"{play.name} [{play.hosts}]", initial=self.seed_facts(play))
            contexts.append(GroupContext(play=play, endpoints=endpoints, facts=facts))
        return contexts

    def load_plays(self) -> List[Play]:
        """Load the inventory and parse the playbook."""
        self.config.validate()
        self.display.header("Loading inventory...")
        self.inventory = InventoryManager()
        if self.inventory_source:
            self.inventory.parse(self.inventory_source)

        self.display.header(f"\nPLAYBOOK: {self.playbook_path}")
        parser = PlaybookParser(self.playbook_path, self.invoker.known_actions, self.seed_facts)
        return parser.parse()

    def check(self) -> int:
        """
        Validate the playbook without dispatching anything.

        Groups are resolved only when an inventory was given.
        """
        try:
            if self.inventory_source:
                contexts = self.load()
                plays = [ctx.play for ctx in contexts]
            else:
                plays = self.load_plays()
        except ProvisoError as e:
            self._report_error(e.kind, f"Error: {e}", e.exit_code)
            return e.exit_code

        if self.config.json_output:
            print(json.dumps({
                "playbook": self.playbook_path,
                "plays": [
                    {"name": p.name, "hosts": p.hosts, "tasks": len(p.tasks)} for p in plays
                ],
            }, indent=2))
        else:
            for play in plays:
                self.display.header(f"  play [{play.name}] hosts={play.hosts} tasks={len(play.tasks)}")
            self.display.header("Playbook OK")
        return ExitCode.SUCCESS

    def seed_facts(self, play: Play) -> Dict[str, Any]:
        """
        Run-start facts for a play's group.

        Precedence, lowest first: inventory group vars, play vars, extra
        vars, then the topology selector.
        """
        assert self.inventory is not None
        playbook = Path(self.playbook_path).resolve()

        facts: Dict[str, Any] = {}
        facts.update(self.inventory.get_group_vars(play.hosts))
        facts.update(play.vars)
        facts.update(self.extra_vars)
        facts['deploy_type'] = self.deploy_type
        facts['deploy_compact'] = self.deploy_compact
        facts['playbook_dir'] = str(playbook.parent)
        facts['hostvars'] = {
            name: {**hostvars, **self.extra_vars}
            for name, hostvars in self.inventory.hostvars().items()
        }
        return facts

    async def run_async(self) -> RunReport:
        """Load everything, then run the groups under one event loop."""
        contexts = self.load()

        self.cancel_event = asyncio.Event()
        self._install_signal_handler()

        scheduler = Scheduler(
            invoker=self.invoker,
            probe_policy=ProbePolicy(
                timeout=self.config.probe_timeout,
                retries=self.config.probe_retries,
                delay=self.config.probe_delay,
            ),
            strategy=self.config.strategy,
            cancel_event=self.cancel_event,
            display=self.display,
        )

        try:
            report = await scheduler.run_groups(contexts, playbook_path=self.playbook_path)
        finally:
            await self._close_connections(contexts)
            self._remove_signal_handler()

        self.display.recap(report)
        return report

    def _install_signal_handler(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._cancel)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported on this platform")

    def _remove_signal_handler(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    def _cancel(self) -> None:
        if self.cancel_event is not None and not self.cancel_event.is_set():
            self.display.warning("Cancelling: running attempts finish, remaining tasks are not attempted")
            self.cancel_event.set()

    async def _close_connections(self, contexts: List[GroupContext]) -> None:
        closed = set()
        for ctx in contexts:
            for endpoint in ctx.endpoints:
                if endpoint.name in closed:
                    continue
                closed.add(endpoint.name)
                try:
                    await endpoint.close()
                except (ProvisoError, OSError) as e:
                    logger.warning("closing connection to %s failed: %s", endpoint.name, e)
