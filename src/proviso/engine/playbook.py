"""
Proviso Playbook Parser

Parses YAML playbooks into Play objects holding loaded Task lists.

Two layouts are accepted:

- a list of plays, each ``{name, hosts, vars, tasks}``;
- a flat list mixing play headers (mappings with ``hosts``) and tasks,
  where every task belongs to the closest header above it and tasks
  before any header target ``localhost``.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Collection, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from proviso.engine.errors import MalformedTaskError, ParseError, ProvisoError
from proviso.engine.task import Task, load

logger = logging.getLogger(__name__)

LOCALHOST = "localhost"

# Keys that may appear on a play header
PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'tasks', 'gather_facts',
    'remote_user', 'connection',
}

SeedFacts = Callable[["Play"], Mapping[str, Any]]


@dataclass
class Play:
    """Represents a single play: a task list bound to a host group."""

    name: str
    hosts: str
    vars: Dict[str, Any] = field(default_factory=dict)
    tasks: Tuple[Task, ...] = ()
    remote_user: Optional[str] = None
    connection: Optional[str] = None
    task_data: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


class PlaybookParser:
    """
    Parse a YAML playbook into Play objects.

    Args:
        playbook_path: Path to the playbook file
        known_actions: Action references the invoker can dispatch
        seed_facts: Returns the run-start variables for a play; used to
            render templated ``retries`` / ``delay`` at load time.
            Defaults to the play's own vars.
    """

    def __init__(
        self,
        playbook_path: Union[str, Path],
        known_actions: Collection[str],
        seed_facts: Optional[SeedFacts] = None,
    ):
        self.playbook_path = Path(playbook_path)
        self.known_actions = known_actions
        self.seed_facts = seed_facts or (lambda play: play.vars)
        self.plays: List[Play] = []
        self._base_dir = self.playbook_path.parent

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Returns:
            List of Play objects, in document order

        Raises:
            ParseError: If the playbook has syntax errors
            MalformedTaskError: If any task cannot be loaded
        """
        if not self.playbook_path.exists():
            raise ParseError(
                f"Playbook not found: {self.playbook_path}",
                file_path=str(self.playbook_path)
            )

        content = self.playbook_path.read_text(encoding='utf-8')
        self.plays = self.parse_string(content)
        return self.plays

    def parse_string(self, content: str) -> List[Play]:
        """Parse playbook text (used by ``parse`` and tests)."""
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(self.playbook_path))

        entries: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                entries.extend(doc)
            elif isinstance(doc, dict):
                entries.append(doc)
            else:
                raise ParseError(
                    f"playbook must be a list, got {type(doc).__name__}",
                    file_path=str(self.playbook_path)
                )

        plays = self._group_entries(entries)
        for play in plays:
            self._load_tasks(play)
        logger.debug("parsed %d play(s) from %s", len(plays), self.playbook_path)
        return plays

    def _group_entries(self, entries: List[Any]) -> List[Play]:
        plays: List[Play] = []
        current: Optional[Play] = None

        for entry in entries:
            if not isinstance(entry, dict):
                raise ParseError(
                    f"playbook entries must be mappings, got {type(entry).__name__}",
                    file_path=str(self.playbook_path)
                )
            if 'hosts' in entry:
                current = self._parse_play(entry)
                plays.append(current)
                continue
            if current is None:
                current = Play(name="Local tasks", hosts=LOCALHOST)
                plays.append(current)
            current.task_data.append(entry)

        return plays

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        """Parse a play header (and its nested ``tasks`` if present)."""
        unknown = set(data) - PLAY_KEYWORDS
        if unknown:
            raise ParseError(
                f"unsupported play keys: {', '.join(sorted(unknown))}",
                file_path=str(self.playbook_path)
            )

        hosts = data['hosts']
        if isinstance(hosts, list):
            if len(hosts) != 1:
                raise ParseError(
                    "a play targets exactly one host group",
                    file_path=str(self.playbook_path)
                )
            hosts = hosts[0]
        if not isinstance(hosts, str) or not hosts.strip():
            raise ParseError(
                f"'hosts' must name a host group, got {hosts!r}",
                file_path=str(self.playbook_path)
            )

        play = Play(
            name=data.get('name') or f"Play on {hosts}",
            hosts=hosts.strip(),
            remote_user=data.get('remote_user'),
            connection=data.get('connection'),
        )

        if 'vars' in data and data['vars'] is not None:
            if isinstance(data['vars'], dict):
                play.vars = dict(data['vars'])
            else:
                raise ParseError(
                    f"'vars' must be a dictionary, got {type(data['vars']).__name__}",
                    file_path=str(self.playbook_path)
                )

        for vars_file in self._ensure_list(data.get('vars_files')):
            vars_path = self._base_dir / vars_file
            if not vars_path.exists():
                raise ParseError(
                    f"vars_file not found: {vars_file}",
                    file_path=str(self.playbook_path)
                )
            try:
                vars_data = yaml.safe_load(vars_path.read_text(encoding='utf-8')) or {}
            except yaml.YAMLError as e:
                raise ParseError(f"YAML syntax error: {e}", file_path=str(vars_path))
            if isinstance(vars_data, dict):
                play.vars.update(vars_data)

        tasks = data.get('tasks')
        if tasks is not None:
            if not isinstance(tasks, list):
                raise ParseError(
                    f"'tasks' must be a list, got {type(tasks).__name__}",
                    file_path=str(self.playbook_path)
                )
            play.task_data.extend(tasks)
        return play

    def _load_tasks(self, play: Play) -> None:
        try:
            variables = self.seed_facts(play)
        except ProvisoError as e:
            raise ParseError(e.message, file_path=str(self.playbook_path), details=e.details)
        try:
            play.tasks = load(play.task_data, self.known_actions, variables)
        except MalformedTaskError as e:
            raise MalformedTaskError(
                f"play '{play.name}': {e.reason}",
                task_index=e.task_index,
                task_name=e.task_name,
                file_path=str(self.playbook_path),
            )

    def _ensure_list(self, value: Any) -> List[Any]:
        """Ensure a value is a list."""
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]
