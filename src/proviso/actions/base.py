"""
Proviso Action Base

Base class, registry and invoker for action adapters. Each adapter turns
one action reference plus rendered params into calls on the endpoint's
connection and reports a Result; none of them decide what runs next.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Type

from proviso.connections.base import Connection, RunResult
from proviso.engine.inventory import Endpoint
from proviso.engine.results import Result

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """What an adapter may see: the target endpoint and the group's facts."""

    endpoint: Endpoint
    connection: Optional[Connection]
    variables: Mapping[str, Any] = field(default_factory=dict)
    action_ref: str = ""


class Action(ABC):
    """
    Base class for all action adapters.

    Subclasses set ``name`` and implement ``run``.
    """

    # Action name (used for registration)
    name: str = ""

    # Other names dispatching to the same adapter
    aliases: List[str] = []

    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    def __init__(self, args: Dict[str, Any], context: ActionContext):
        self.args = args
        self.context = context
        self.connection = context.connection

    def validate_args(self) -> Optional[str]:
        """
        Validate action arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    async def execute(self, command: str, shell: bool = True, **kwargs: Any) -> RunResult:
        """Run a command over the endpoint's connection."""
        if self.connection is None:
            return RunResult(rc=1, stdout="", stderr="No connection available")
        logger.debug("[%s] %s: %s", self.context.endpoint.name, self.name, command)
        return await self.connection.run(command, shell=shell, **kwargs)

    def from_run(self, result: RunResult, changed: bool = True, **payload: Any) -> Result:
        """Build a Result from a command's exit status and output."""
        body = {
            'rc': result.rc,
            'stdout': result.stdout,
            'stderr': result.stderr,
            'stdout_lines': result.stdout.splitlines(),
        }
        body.update(payload)
        if result.rc != 0:
            return Result.failure(
                msg=f"non-zero return code: {result.rc}",
                changed=False,
                payload=body,
                raw_output=result.stdout + result.stderr,
            )
        return Result.success(changed=changed, payload=body, raw_output=result.stdout)

    @abstractmethod
    async def run(self) -> Result:
        """Execute the action."""


# Action registry
_actions: Dict[str, Type[Action]] = {}
_actions_imported = False


def register_action(cls: Type[Action]) -> Type[Action]:
    """Decorator to register an action class."""
    _actions[cls.name] = cls
    for alias in cls.aliases:
        _actions[alias] = cls
    return cls


def list_actions() -> List[str]:
    """List all registered action names."""
    _ensure_actions_imported()
    return sorted(_actions)


def _ensure_actions_imported() -> None:
    global _actions_imported
    if not _actions_imported:
        _import_builtin_actions()
        _actions_imported = True


class ActionInvoker:
    """
    The boundary between the engine and external tools.

    ``invoke`` never raises for action-level problems; it reports them as
    failure Results so the retry controller can count the attempt.
    """

    def __init__(self, registry: Optional[Mapping[str, Type[Action]]] = None):
        if registry is None:
            _ensure_actions_imported()
            registry = _actions
        self.registry = dict(registry)

    @property
    def known_actions(self) -> List[str]:
        return sorted(self.registry)

    async def invoke(
        self,
        action_ref: str,
        params: Dict[str, Any],
        endpoint: Endpoint,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> Result:
        action_class = self.registry.get(action_ref)
        if action_class is None:
            return Result.failure(msg=f"Unknown action: {action_ref}")

        context = ActionContext(endpoint, endpoint.connection, variables or {}, action_ref)
        action = action_class(params, context)

        error = action.validate_args()
        if error:
            return Result.failure(msg=error)

        return await action.run()


def normalize_mode(mode: Any) -> Optional[str]:
    """
    File mode as an octal string.

    YAML reads an unquoted ``0644`` as the integer 420, so integers are
    converted back to octal digits.
    """
    if mode is None:
        return None
    if isinstance(mode, bool):
        raise ValueError(f"invalid file mode {mode!r}")
    if isinstance(mode, int):
        return format(mode, '04o')
    text = str(mode).strip()
    if text.startswith('0o'):
        text = text[2:]
    int(text, 8)
    return text.zfill(4)


def to_bool(value: Any) -> bool:
    """Interpret yes/no style action arguments."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('yes', 'true', '1', 'on')
    return bool(value)


def _import_builtin_actions() -> None:
    """Import all built-in actions to register them."""
    # These imports trigger the @register_action decorators
    from proviso.actions import command  # noqa: F401
    from proviso.actions import files  # noqa: F401
    from proviso.actions import text  # noqa: F401
    from proviso.actions import system  # noqa: F401
    from proviso.actions import virt  # noqa: F401
    from proviso.actions import transfer  # noqa: F401
    from proviso.actions import control  # noqa: F401
