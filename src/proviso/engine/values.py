"""
Proviso Values

Tagged value kinds shared by facts, parameters and conditions, with the
coercion rules applied at the condition evaluator boundary.
"""

from __future__ import annotations

import copy
import operator
from collections.abc import Mapping
from enum import Enum
from typing import Any, Callable, Dict, Optional

from proviso.engine.errors import ConditionTypeError


class ValueKind(Enum):
    """Kind tag of a fact or parameter value."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    MAPPING = "mapping"
    NULL = "null"


def kind_of(value: Any) -> ValueKind:
    """Return the kind tag of a value, rejecting anything outside the variant."""
    # bool is a subclass of int, check it first
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if value is None:
        return ValueKind.NULL
    if isinstance(value, (list, tuple)):
        return ValueKind.LIST
    if isinstance(value, Mapping):
        return ValueKind.MAPPING
    raise ConditionTypeError(f"unsupported value type {type(value).__name__}")


def require_bool(value: Any, expression: Optional[str] = None) -> bool:
    """
    Accept only a real boolean where a truth value is needed.

    Non-empty strings, non-zero numbers and non-empty containers are not
    treated as true.
    """
    kind = kind_of(value)
    if kind is not ValueKind.BOOLEAN:
        raise ConditionTypeError(
            f"expected a boolean, got {kind.value} {value!r}",
            expression=expression,
        )
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Equality without cross-kind coercion."""
    left_kind = kind_of(left)
    right_kind = kind_of(right)
    if left_kind is not right_kind:
        return False
    if left_kind is ValueKind.LIST:
        return len(left) == len(right) and all(
            values_equal(a, b) for a, b in zip(left, right)
        )
    if left_kind is ValueKind.MAPPING:
        if set(left.keys()) != set(right.keys()):
            return False
        return all(values_equal(left[k], right[k]) for k in left)
    return left == right


_ORDERING: Dict[str, Callable[[Any, Any], bool]] = {
    'gt': operator.gt,
    'gteq': operator.ge,
    'lt': operator.lt,
    'lteq': operator.le,
}


def compare_order(op: str, left: Any, right: Any, expression: Optional[str] = None) -> bool:
    """Ordering comparison; both sides must be numbers or both strings."""
    left_kind = kind_of(left)
    right_kind = kind_of(right)
    if left_kind is not right_kind or left_kind not in (ValueKind.NUMBER, ValueKind.STRING):
        raise ConditionTypeError(
            f"cannot order {left_kind.value} against {right_kind.value}",
            expression=expression,
        )
    return _ORDERING[op](left, right)


def contains(container: Any, item: Any, expression: Optional[str] = None) -> bool:
    """Membership test for lists, mapping keys and substrings."""
    kind = kind_of(container)
    if kind is ValueKind.LIST:
        return any(values_equal(item, element) for element in container)
    if kind is ValueKind.MAPPING:
        item_kind = kind_of(item)
        if item_kind in (ValueKind.LIST, ValueKind.MAPPING):
            raise ConditionTypeError(
                f"mapping keys cannot be tested with a {item_kind.value}",
                expression=expression,
            )
        return item in container
    if kind is ValueKind.STRING:
        if kind_of(item) is not ValueKind.STRING:
            raise ConditionTypeError(
                f"substring test needs a string, got {kind_of(item).value}",
                expression=expression,
            )
        return item in container
    raise ConditionTypeError(
        f"'in' needs a list, mapping or string, got {kind.value}",
        expression=expression,
    )


def freeze(value: Any) -> Any:
    """Deep copy a value so later writes cannot reach a stored snapshot."""
    return copy.deepcopy(value)
