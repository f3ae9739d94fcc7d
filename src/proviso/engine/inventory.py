"""
Proviso Host Inventory

Parses INI and YAML inventories plus host_vars/ and group_vars/
directories into named groups of endpoints, and probes endpoint
reachability for the engine.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import yaml

from proviso.engine.errors import InventoryError, ProvisoError, UnknownGroupError, UnreachableHostError

if TYPE_CHECKING:
    from proviso.connections.base import Connection

logger = logging.getLogger(__name__)

LOCALHOST = "localhost"
LOCAL_ADDRESSES = {LOCALHOST, "127.0.0.1", "::1"}


class Reachability(Enum):
    """Connectivity state of an endpoint within one run."""
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ProbePolicy:
    """
    Bounds for the connectivity probe.

    ``retries`` is the total number of connection attempts, each limited
    to ``timeout`` seconds and separated by ``delay`` seconds.
    """

    timeout: float = 10.0
    retries: int = 3
    delay: float = 2.0

    def __post_init__(self) -> None:
        if self.retries < 1:
            raise ValueError(f"probe retries must be positive, got {self.retries}")
        if self.timeout <= 0 or self.delay < 0:
            raise ValueError("probe timeout must be positive and delay not negative")


ConnectionFactory = Callable[["Endpoint"], Awaitable["Connection"]]


class Endpoint:
    """A single host in the inventory, plus its per-run connection state."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._groups: List[str] = []
        self.state = Reachability.UNKNOWN
        self.connection: Optional["Connection"] = None
        self._probe_error: Optional[UnreachableHostError] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def address(self) -> str:
        """Get the actual host to connect to (ansible_host or name)."""
        return str(self.vars.get('ansible_host', self.name))

    @property
    def port(self) -> int:
        return int(self.vars.get('ansible_port', 22))

    @property
    def user(self) -> Optional[str]:
        return self.vars.get('ansible_user')

    @property
    def password(self) -> Optional[str]:
        return self.vars.get('ansible_password') or self.vars.get('ansible_ssh_pass')

    @property
    def private_key_file(self) -> Optional[str]:
        return self.vars.get('ansible_ssh_private_key_file')

    @property
    def connection_type(self) -> str:
        """Get the connection type (ssh or local)."""
        default = 'local' if self.name in LOCAL_ADDRESSES else 'ssh'
        return str(self.vars.get('ansible_connection', default))

    @property
    def groups(self) -> List[str]:
        """Return list of group names this endpoint belongs to."""
        return list(self._groups)

    def add_group(self, group_name: str) -> None:
        if group_name not in self._groups:
            self._groups.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def get_vars(self) -> Dict[str, Any]:
        """Return all endpoint variables including computed ones."""
        result = dict(self.vars)
        result['inventory_hostname'] = self.name
        result['inventory_hostname_short'] = self.name.split('.')[0]
        result['ansible_host'] = self.address
        return result

    @property
    def lock(self) -> asyncio.Lock:
        # Created lazily so it binds to the running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def probe(self, connect: ConnectionFactory, policy: ProbePolicy) -> "Connection":
        """
        Make sure this endpoint is reachable and return its open connection.

        The first caller in a run does the probing; concurrent callers wait
        on the endpoint lock and reuse the outcome.

        Raises:
            UnreachableHostError: If every attempt failed or timed out
        """
        async with self.lock:
            if self.state is Reachability.REACHABLE and self.connection is not None:
                return self.connection
            if self.state is Reachability.UNREACHABLE and self._probe_error is not None:
                raise self._probe_error

            last_error: Optional[str] = None
            for attempt in range(1, policy.retries + 1):
                try:
                    self.connection = await asyncio.wait_for(connect(self), timeout=policy.timeout)
                except asyncio.TimeoutError:
                    last_error = f"timed out after {policy.timeout}s"
                except (ProvisoError, OSError) as e:
                    last_error = str(e)
                else:
                    self.state = Reachability.REACHABLE
                    logger.debug("%s reachable after %d attempt(s)", self.name, attempt)
                    return self.connection

                logger.info("probe %d/%d of %s failed: %s", attempt, policy.retries, self.name, last_error)
                if attempt < policy.retries:
                    await asyncio.sleep(policy.delay)

            self.state = Reachability.UNREACHABLE
            self._probe_error = UnreachableHostError(self.name, policy.retries, last_error)
            raise self._probe_error

    async def close(self) -> None:
        """Close the connection opened by the probe, if any."""
        if self.connection is not None:
            await self.connection.close()
            self.connection = None

    def __repr__(self) -> str:
        return f"Endpoint({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Endpoint):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """A named group with ordered members."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._hosts: List[str] = []
        self._children: List[str] = []
        self._parents: List[str] = []

    @property
    def hosts(self) -> List[str]:
        """Return host names directly in this group, in declaration order."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        return list(self._parents)

    def add_host(self, host_name: str) -> None:
        if host_name not in self._hosts:
            self._hosts.append(host_name)

    def add_child(self, group_name: str) -> None:
        if group_name not in self._children:
            self._children.append(group_name)

    def add_parent(self, group_name: str) -> None:
        if group_name not in self._parents:
            self._parents.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class InventoryManager:
    """
    Manages inventory parsing and group resolution.

    Supports:
    - INI format inventory files
    - YAML format inventory files
    - host_vars/ and group_vars/ directories
    - an implicit ``localhost`` group using a local connection
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # Pattern for INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(self):
        self.hosts: Dict[str, Endpoint] = {}
        self.groups: Dict[str, Group] = {}
        self._inventory_dir: Optional[Path] = None

        # Always create 'all' and 'ungrouped' groups
        self.groups['all'] = Group('all')
        self.groups['ungrouped'] = Group('ungrouped')

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Parse an inventory source.

        Args:
            source: Path to inventory file or directory

        Returns:
            self for chaining
        """
        source_path = Path(source)

        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        if source_path.is_file():
            self._inventory_dir = source_path.parent
            self._parse_file(source_path)
        elif source_path.is_dir():
            self._inventory_dir = source_path
            self._parse_directory(source_path)
        else:
            raise InventoryError(f"Invalid inventory source: {source_path}")

        if self._inventory_dir:
            self._load_vars_directories(self._inventory_dir)

        self._finalize()
        return self

    def parse_string(self, content: str, fmt: str = "ini") -> 'InventoryManager':
        """Parse inventory text directly (``ini`` or ``yaml``)."""
        if fmt == "yaml":
            self._parse_yaml_string(content)
        else:
            self._parse_ini_string(content)
        self._finalize()
        return self

    def _finalize(self) -> None:
        for host_name, host in self.hosts.items():
            self.groups['all'].add_host(host_name)
            host.add_group('all')

            # If host isn't in any other explicit group, add to 'ungrouped'
            if not [g for g in host.groups if g not in ('all', 'ungrouped')]:
                self.groups['ungrouped'].add_host(host_name)
                host.add_group('ungrouped')

    def resolve(self, group_name: str) -> List[Endpoint]:
        """
        Return the members of a group (including child groups), in order.

        ``localhost`` resolves to a local endpoint even when undeclared.

        Raises:
            UnknownGroupError: If the group does not exist or has no members
        """
        name = group_name.strip()
        if name == LOCALHOST and not self._group_members(name):
            return [self._implicit_localhost()]

        members = self._group_members(name)
        if not members and name in self.hosts:
            members = [self.hosts[name]]
        if not members:
            raise UnknownGroupError(name)
        return members

    def _group_members(self, group_name: str, seen: Optional[List[str]] = None) -> List[Endpoint]:
        if group_name not in self.groups:
            return []
        seen = seen if seen is not None else []
        if group_name in seen:
            return []
        seen.append(group_name)

        group = self.groups[group_name]
        names = list(group.hosts)
        for child_name in group.children:
            for host in self._group_members(child_name, seen):
                if host.name not in names:
                    names.append(host.name)
        return [self.hosts[name] for name in names if name in self.hosts]

    def _implicit_localhost(self) -> Endpoint:
        if LOCALHOST not in self.hosts:
            host = Endpoint(LOCALHOST, {'ansible_connection': 'local'})
            host.add_group('all')
            self.hosts[LOCALHOST] = host
        return self.hosts[LOCALHOST]

    def get_group_vars(self, group_name: str) -> Dict[str, Any]:
        """Variables of ``all`` then of the group's ancestors, then the group's own."""
        merged: Dict[str, Any] = dict(self.groups['all'].vars)
        for name in self._ancestry(group_name):
            merged.update(self.groups[name].vars)
        return merged

    def _ancestry(self, group_name: str) -> List[str]:
        if group_name not in self.groups or group_name == 'all':
            return []
        chain: List[str] = []
        for parent in self.groups[group_name].parents:
            for name in self._ancestry(parent):
                if name not in chain:
                    chain.append(name)
        chain.append(group_name)
        return chain

    def get_host_vars(self, host_name: str) -> Dict[str, Any]:
        """Get all variables for a host (merged from groups and host)."""
        if host_name not in self.hosts:
            return {}

        host = self.hosts[host_name]
        merged_vars: Dict[str, Any] = {}
        for group_name in ['all'] + [g for g in host.groups if g != 'all']:
            if group_name in self.groups:
                merged_vars.update(self.groups[group_name].vars)
        merged_vars.update(host.get_vars())
        return merged_vars

    def hostvars(self) -> Dict[str, Dict[str, Any]]:
        """Host name -> merged variables, exposed to playbooks as ``hostvars``."""
        names = list(self.hosts)
        if LOCALHOST not in names:
            names.append(LOCALHOST)
        result = {name: self.get_host_vars(name) for name in names}
        if not result[LOCALHOST]:
            result[LOCALHOST] = {**self.groups['all'].vars, 'inventory_hostname': LOCALHOST}
        return result

    def _parse_file(self, path: Path) -> None:
        content = path.read_text(encoding='utf-8')

        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_string(content, path)
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise InventoryError(f"JSON syntax error: {e}", file_path=str(path))
            self._parse_yaml_data(data, path)
        elif content.strip().startswith(('---', 'all:', 'ungrouped:')):
            self._parse_yaml_string(content, path)
        else:
            self._parse_ini_string(content, path)

    def _parse_directory(self, path: Path) -> None:
        for item in sorted(path.iterdir()):
            if item.is_file() and not item.name.startswith('.'):
                if item.suffix not in ('.bak', '.orig', '.pyc', '.pyo', '.md'):
                    self._parse_file(item)

    def _load_vars_directories(self, base_path: Path) -> None:
        """Load variables from host_vars/ and group_vars/ directories."""
        group_vars_dir = base_path / 'group_vars'
        if group_vars_dir.is_dir():
            for item in sorted(group_vars_dir.iterdir()):
                group_name = item.stem if item.is_file() else item.name
                if group_name not in self.groups:
                    self.groups[group_name] = Group(group_name)
                for key, value in self._read_vars(item).items():
                    self.groups[group_name].set_variable(key, value)

        host_vars_dir = base_path / 'host_vars'
        if host_vars_dir.is_dir():
            for item in sorted(host_vars_dir.iterdir()):
                host_name = item.stem if item.is_file() else item.name
                if host_name in self.hosts:
                    for key, value in self._read_vars(item).items():
                        self.hosts[host_name].set_variable(key, value)

    def _read_vars(self, item: Path) -> Dict[str, Any]:
        files: List[Path] = []
        if item.is_file() and item.suffix in ('.yml', '.yaml'):
            files = [item]
        elif item.is_dir():
            files = sorted(list(item.glob('*.yml')) + list(item.glob('*.yaml')))

        merged: Dict[str, Any] = {}
        for yaml_file in files:
            try:
                data = yaml.safe_load(yaml_file.read_text(encoding='utf-8')) or {}
            except yaml.YAMLError as e:
                raise InventoryError(f"YAML syntax error: {e}", file_path=str(yaml_file))
            if not isinstance(data, dict):
                raise InventoryError("vars file must be a mapping", file_path=str(yaml_file))
            merged.update(data)
        return merged

    def _parse_ini_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'

        for line_num, line in enumerate(content.splitlines(), 1):
            line = line.strip()

            if not line or line.startswith('#') or line.startswith(';'):
                continue

            if line.startswith('[') and line.endswith(']'):
                header = line[1:-1].strip()
                group_name, _, section = header.partition(':')
                if section and section not in ('vars', 'children'):
                    raise InventoryError(
                        f"line {line_num}: unknown section type '{section}'",
                        file_path=str(source_path) if source_path else None,
                    )
                current_group = group_name.strip()
                current_section = section or 'hosts'
                if current_group not in self.groups:
                    self.groups[current_group] = Group(current_group)
                continue

            if current_section == 'vars':
                if '=' not in line:
                    raise InventoryError(
                        f"line {line_num}: expected key=value, got {line!r}",
                        file_path=str(source_path) if source_path else None,
                    )
                key, value = self._parse_variable_line(line)
                if current_group and key:
                    self.groups[current_group].set_variable(key, value)

            elif current_section == 'children':
                child_name = line.strip()
                if child_name and current_group:
                    if child_name not in self.groups:
                        self.groups[child_name] = Group(child_name)
                    self.groups[current_group].add_child(child_name)
                    self.groups[child_name].add_parent(current_group)

            else:
                for host in self._parse_host_line(line):
                    existing = self.hosts.get(host.name)
                    if existing is not None:
                        existing.vars.update(host.vars)
                        host = existing
                    else:
                        self.hosts[host.name] = host
                    if current_group:
                        self.groups[current_group].add_host(host.name)
                        host.add_group(current_group)

    def _parse_host_line(self, line: str) -> List[Endpoint]:
        """Parse a single host line, handling ranges and variables."""
        parts = line.split()
        if not parts:
            return []

        host_pattern = parts[0]
        var_string = ' '.join(parts[1:])

        variables: Dict[str, Any] = {}
        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            value = match.group(2) or match.group(3) or match.group(4)
            variables[key] = self._convert_value(value)

        return [Endpoint(name, variables=variables) for name in self._expand_host_pattern(host_pattern)]

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            expanded = pattern[:match.start()] + str(i).zfill(width) + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))
        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if (value.startswith('"') and value.endswith('"')) or \
           (value.startswith("'") and value.endswith("'")):
            return key, value[1:-1]

        return key, self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if not isinstance(value, str):
            return value

        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False
        if value.lower() in ('null', 'none', '~'):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _parse_yaml_string(self, content: str, source_path: Optional[Path] = None) -> None:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InventoryError(
                f"YAML syntax error: {e}",
                file_path=str(source_path) if source_path else None,
            )
        if data:
            self._parse_yaml_data(data, source_path)

    def _parse_yaml_data(self, data: Any, source_path: Optional[Path] = None) -> None:
        if not isinstance(data, dict):
            raise InventoryError(
                "inventory must be a mapping of groups",
                file_path=str(source_path) if source_path else None,
            )
        for group_name, group_data in data.items():
            self._parse_yaml_group(group_name, group_data or {})

    def _parse_yaml_group(self, name: str, data: Dict[str, Any]) -> None:
        if name not in self.groups:
            self.groups[name] = Group(name)
        group = self.groups[name]

        if not isinstance(data, dict):
            return

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, dict):
            for host_name, host_vars in hosts_data.items():
                host = self.hosts.get(host_name)
                if host is None:
                    host = Endpoint(host_name)
                    self.hosts[host_name] = host
                host.vars.update(host_vars or {})
                group.add_host(host_name)
                host.add_group(name)

        vars_data = data.get('vars') or {}
        if isinstance(vars_data, dict):
            for key, value in vars_data.items():
                group.set_variable(key, value)

        children_data = data.get('children') or {}
        if isinstance(children_data, dict):
            for child_name, child_data in children_data.items():
                group.add_child(child_name)
                self._parse_yaml_group(child_name, child_data or {})
                self.groups[child_name].add_parent(name)
