"""
Proviso Task Model

Turns step definitions (dicts, usually from YAML) into immutable Task
objects. All validation happens here so that nothing malformed is ever
dispatched.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Collection, Dict, List, Mapping, Optional, Sequence, Tuple

from proviso.engine.conditions import Condition, parse_condition
from proviso.engine.errors import (
    ConditionSyntaxError,
    MalformedTaskError,
    ProvisoError,
)
from proviso.engine.retry import RetryPolicy
from proviso.engine.templating import evaluate_native


# Pattern for fully qualified action names (namespace.collection.action)
FQCN_PATTERN = re.compile(r'^[a-z_][a-z0-9_]*\.[a-z_][a-z0-9_]*\.([a-z_][a-z0-9_]*)$')

IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

# Actions whose string argument is a command line, not key=value pairs
FREE_FORM_ACTIONS = {'command', 'shell'}

# Task keys that are NOT action names
TASK_KEYWORDS = {
    'name', 'when', 'register', 'retries', 'delay', 'until',
    'ignore_errors', 'on_error', 'loop', 'with_items', 'loop_control',
    'failed_when', 'changed_when', 'args',
}

# `until` without `retries` retries this many times
DEFAULT_UNTIL_ATTEMPTS = 3
DEFAULT_UNTIL_DELAY = 5.0


class OnError(Enum):
    """What a final failure does to the rest of the group's task list."""
    FAIL = "fail"
    IGNORE = "ignore"


@dataclass(frozen=True)
class Task:
    """One guarded, retryable provisioning step."""

    index: int
    name: str
    action: str
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    guard: Optional[Condition] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    until: Optional[Condition] = None
    register_as: Optional[str] = None
    on_error: OnError = OnError.FAIL
    loop: Optional[Any] = None
    loop_var: str = "item"
    failed_when: Optional[Condition] = None
    changed_when: Optional[Condition] = None

    @property
    def id(self) -> int:
        return self.index

    def __repr__(self) -> str:
        return f"Task(index={self.index}, name={self.name!r}, action={self.action!r})"


def normalize_action(name: str, known_actions: Collection[str]) -> Optional[str]:
    """Map ``ansible.builtin.copy``-style names onto a registered action."""
    if name in known_actions:
        return name
    match = FQCN_PATTERN.match(name)
    if match and match.group(1) in known_actions:
        return match.group(1)
    return None


def load(
    task_definitions: Sequence[Mapping[str, Any]],
    known_actions: Collection[str],
    variables: Optional[Mapping[str, Any]] = None,
) -> Tuple[Task, ...]:
    """
    Build the ordered task list.

    Args:
        task_definitions: Step definitions in execution order
        known_actions: Action references the invoker can dispatch
        variables: Run-start variables used to render templated
            ``retries`` / ``delay`` values

    Raises:
        MalformedTaskError: On the first definition that cannot be loaded
    """
    loader = _TaskLoader(known_actions, variables or {})
    return tuple(
        loader.load_one(index, definition)
        for index, definition in enumerate(task_definitions)
    )


class _TaskLoader:

    def __init__(self, known_actions: Collection[str], variables: Mapping[str, Any]):
        self.known_actions = known_actions
        self.variables = variables

    def load_one(self, index: int, data: Mapping[str, Any]) -> Task:
        if not isinstance(data, Mapping):
            raise MalformedTaskError(
                f"expected a mapping, got {type(data).__name__}", task_index=index
            )
        name = data.get('name')
        try:
            return self._build(index, data)
        except MalformedTaskError:
            raise
        except (ConditionSyntaxError, ValueError, TypeError) as e:
            raise MalformedTaskError(str(e), task_index=index, task_name=name)
        except ProvisoError as e:
            raise MalformedTaskError(e.message, task_index=index, task_name=name)

    def _build(self, index: int, data: Mapping[str, Any]) -> Task:
        name = data.get('name')
        action, raw_args = self._find_action(index, data)
        params = self._normalize_params(action, raw_args)
        if 'args' in data:
            if not isinstance(data['args'], Mapping):
                raise MalformedTaskError("'args' must be a mapping", index, name)
            params.update(data['args'])

        register_as = data.get('register')
        if register_as is not None and (
            not isinstance(register_as, str) or not IDENTIFIER.match(register_as)
        ):
            raise MalformedTaskError(f"invalid register name {register_as!r}", index, name)

        until = parse_condition(data.get('until'))
        retry = self._retry_policy(index, name, data, until)

        loop = data.get('loop', data.get('with_items'))
        if loop is not None and not isinstance(loop, (list, str)):
            raise MalformedTaskError("'loop' must be a list or a template", index, name)
        loop_var = 'item'
        if isinstance(data.get('loop_control'), Mapping):
            loop_var = data['loop_control'].get('loop_var', 'item')

        return Task(
            index=index,
            name=name or f"{action} #{index}",
            action=action,
            params=MappingProxyType(params),
            guard=parse_condition(data.get('when')),
            retry=retry,
            until=until,
            register_as=register_as,
            on_error=self._on_error(index, name, data),
            loop=tuple(loop) if isinstance(loop, list) else loop,
            loop_var=loop_var,
            failed_when=parse_condition(data.get('failed_when')),
            changed_when=parse_condition(data.get('changed_when')),
        )

    def _find_action(self, index: int, data: Mapping[str, Any]) -> Tuple[str, Any]:
        found: List[Tuple[str, Any]] = []
        for key, value in data.items():
            if key in TASK_KEYWORDS:
                continue
            action = normalize_action(str(key), self.known_actions)
            if action is None:
                raise MalformedTaskError(f"unknown action '{key}'", index, data.get('name'))
            found.append((action, value))

        if not found:
            raise MalformedTaskError(
                f"no action found in keys {list(data.keys())}", index, data.get('name')
            )
        if len(found) > 1:
            raise MalformedTaskError(
                f"more than one action: {', '.join(a for a, _ in found)}",
                index, data.get('name'),
            )
        return found[0]

    def _normalize_params(self, action: str, args: Any) -> Dict[str, Any]:
        """Normalize action arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, Mapping):
            return dict(args)

        if isinstance(args, str):
            if action in FREE_FORM_ACTIONS:
                return {'_raw_params': args.strip()}

            # Handle inline args: "src=foo dest=bar"
            parsed = {}
            pattern = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')
            for match in pattern.finditer(args):
                key = match.group(1)
                value = match.group(2) or match.group(3) or match.group(4)
                parsed[key] = value
            return parsed or {'_raw_params': args}

        return {'_raw_params': args}

    def _retry_policy(
        self,
        index: int,
        name: Optional[str],
        data: Mapping[str, Any],
        until: Optional[Condition],
    ) -> RetryPolicy:
        has_retries = 'retries' in data
        if not has_retries and until is None:
            if 'delay' in data:
                raise MalformedTaskError("'delay' given without 'retries' or 'until'", index, name)
            return RetryPolicy()

        default_attempts = DEFAULT_UNTIL_ATTEMPTS if until is not None else 1
        max_attempts = self._number(data.get('retries', default_attempts), 'retries', index, name)
        delay = self._number(data.get('delay', DEFAULT_UNTIL_DELAY), 'delay', index, name)

        if int(max_attempts) != max_attempts or max_attempts < 1:
            raise MalformedTaskError(
                f"retry policy needs a positive whole number of attempts, got {max_attempts!r}",
                index, name,
            )
        if delay < 0:
            raise MalformedTaskError(f"retry delay must not be negative, got {delay!r}", index, name)
        return RetryPolicy(max_attempts=int(max_attempts), delay=float(delay))

    def _number(self, value: Any, key: str, index: int, name: Optional[str]) -> float:
        rendered = evaluate_native(value, self.variables)
        if isinstance(rendered, bool):
            raise MalformedTaskError(f"'{key}' must be a number, got {rendered!r}", index, name)
        if isinstance(rendered, (int, float)):
            return rendered
        try:
            return float(str(rendered).strip())
        except ValueError:
            raise MalformedTaskError(f"'{key}' must be a number, got {rendered!r}", index, name)

    def _on_error(self, index: int, name: Optional[str], data: Mapping[str, Any]) -> OnError:
        if 'on_error' in data:
            try:
                return OnError(data['on_error'])
            except ValueError:
                raise MalformedTaskError(
                    f"on_error must be 'fail' or 'ignore', got {data['on_error']!r}",
                    index, name,
                )
        ignore = data.get('ignore_errors', False)
        if not isinstance(ignore, bool):
            raise MalformedTaskError(
                f"ignore_errors must be a boolean, got {ignore!r}", index, name
            )
        return OnError.IGNORE if ignore else OnError.FAIL
