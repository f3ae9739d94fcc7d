"""
Proviso Fact Store

Per-run, per-group memory of registered results and run-start facts.
"""

import logging
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

from proviso.engine.errors import UnresolvedFactError
from proviso.engine.values import freeze, kind_of

logger = logging.getLogger(__name__)


class FactStore:
    """
    Fact name -> value mapping owned by a single group execution context.

    Seeded once with run-start facts. Afterwards the only write is
    ``register``, which overwrites any earlier value under the same name.
    Values are copied on the way in and out so a reader that already
    evaluated keeps what it saw.
    """

    def __init__(self, scope: str, initial: Optional[Mapping[str, Any]] = None):
        self.scope = scope
        self._facts: Dict[str, Any] = {}
        for name, value in (initial or {}).items():
            kind_of(value)
            self._facts[name] = freeze(value)

    def __contains__(self, name: object) -> bool:
        return name in self._facts

    def __iter__(self) -> Iterator[str]:
        return iter(self._facts)

    def __len__(self) -> int:
        return len(self._facts)

    def register(self, name: str, value: Any) -> None:
        """Store a value under ``name``, replacing any earlier one."""
        kind_of(value)
        if name in self._facts:
            logger.debug("[%s] overwriting fact %s", self.scope, name)
        self._facts[name] = freeze(value)

    def get(self, name: str) -> Any:
        """Return a copy of a fact; missing facts fail closed."""
        if name not in self._facts:
            raise UnresolvedFactError(name, details=f"scope: {self.scope}")
        return freeze(self._facts[name])

    def lookup(self, path: Sequence[Any]) -> Any:
        """
        Resolve a path such as ``('result', 'stat', 'exists')``.

        Every segment must exist; a missing key or index raises
        UnresolvedFactError naming the full dotted path.
        """
        if not path:
            raise UnresolvedFactError("", details="empty fact path")
        dotted = _dotted(path)
        if path[0] not in self._facts:
            raise UnresolvedFactError(dotted, details=f"scope: {self.scope}")
        value = self._facts[path[0]]
        for segment in path[1:]:
            if isinstance(value, Mapping) and segment in value:
                value = value[segment]
            elif isinstance(value, (list, tuple)) and isinstance(segment, int) \
                    and -len(value) <= segment < len(value):
                value = value[segment]
            else:
                raise UnresolvedFactError(dotted, details=f"scope: {self.scope}")
        return freeze(value)

    def has_path(self, path: Sequence[Any]) -> bool:
        try:
            self.lookup(path)
        except UnresolvedFactError:
            return False
        return True

    def with_bindings(self, bindings: Mapping[str, Any]) -> "FactStore":
        """Read-only style overlay: a new store with extra names bound on top."""
        overlay = FactStore(self.scope)
        overlay._facts = dict(self._facts)
        for name, value in bindings.items():
            overlay._facts[name] = freeze(value)
        return overlay

    def snapshot(self) -> Dict[str, Any]:
        """Independent copy of every fact, for templating and reports."""
        return freeze(self._facts)

    def __repr__(self) -> str:
        return f"FactStore(scope={self.scope!r}, facts={len(self._facts)})"


def _dotted(path: Sequence[Any]) -> str:
    parts = [str(path[0])]
    for segment in path[1:]:
        parts.append(f"[{segment}]" if isinstance(segment, int) else f".{segment}")
    return "".join(parts)
