"""
Proviso Condition Evaluator

Guards, ``until`` predicates and ``failed_when`` / ``changed_when``
expressions are parsed once, at load time, into an immutable tree and
evaluated against a FactStore immediately before use.

Expressions use Jinja2 expression syntax (``x.rc > 0``,
``deploy_type == "upi"``, ``result is succeeded``,
``not check.stat.exists``) but only a fixed node set is accepted and
evaluation applies the strict coercion rules from ``proviso.engine.values``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from jinja2 import nodes
from jinja2.exceptions import TemplateSyntaxError
from jinja2.parser import Parser

from proviso.engine.errors import ConditionSyntaxError, ConditionTypeError
from proviso.engine.facts import FactStore
from proviso.engine.templating import get_template_engine
from proviso.engine.values import (
    ValueKind,
    compare_order,
    contains,
    kind_of,
    require_bool,
    values_equal,
)


RESULT_TESTS = {
    'succeeded': 'succeeded',
    'success': 'succeeded',
    'failed': 'failed',
    'failure': 'failed',
    'changed': 'changed',
    'skipped': 'skipped',
}

EXISTENCE_TESTS = {'defined', 'undefined'}

# Filters are explicit conversions; anything else is rejected at parse time
CONVERSIONS = {'bool', 'int', 'length', 'lower', 'string'}

COMPARISONS = {'eq', 'ne', 'gt', 'gteq', 'lt', 'lteq', 'in', 'notin'}


class Expr:
    """Base class for condition tree nodes."""

    def value(self, facts: FactStore, source: str) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Expr):
    val: Any

    def value(self, facts: FactStore, source: str) -> Any:
        return self.val


@dataclass(frozen=True)
class FactRef(Expr):
    path: Tuple[Union[str, int], ...]

    def value(self, facts: FactStore, source: str) -> Any:
        return facts.lookup(self.path)


@dataclass(frozen=True)
class ListExpr(Expr):
    items: Tuple[Expr, ...]

    def value(self, facts: FactStore, source: str) -> Any:
        return [item.value(facts, source) for item in self.items]


@dataclass(frozen=True)
class Negate(Expr):
    operand: Expr

    def value(self, facts: FactStore, source: str) -> Any:
        val = self.operand.value(facts, source)
        if kind_of(val) is not ValueKind.NUMBER:
            raise ConditionTypeError(f"cannot negate {kind_of(val).value}", source)
        return -val


@dataclass(frozen=True)
class Compare(Expr):
    op: str
    left: Expr
    right: Expr

    def value(self, facts: FactStore, source: str) -> Any:
        left = self.left.value(facts, source)
        right = self.right.value(facts, source)
        if self.op == 'eq':
            return values_equal(left, right)
        if self.op == 'ne':
            return not values_equal(left, right)
        if self.op == 'in':
            return contains(right, left, source)
        if self.op == 'notin':
            return not contains(right, left, source)
        return compare_order(self.op, left, right, source)


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr

    def value(self, facts: FactStore, source: str) -> Any:
        return not require_bool(self.operand.value(facts, source), source)


@dataclass(frozen=True)
class All(Expr):
    """Conjunction, evaluated left to right."""
    operands: Tuple[Expr, ...]

    def value(self, facts: FactStore, source: str) -> Any:
        for operand in self.operands:
            if not require_bool(operand.value(facts, source), source):
                return False
        return True


@dataclass(frozen=True)
class AnyOf(Expr):
    """Disjunction, evaluated left to right."""
    operands: Tuple[Expr, ...]

    def value(self, facts: FactStore, source: str) -> Any:
        for operand in self.operands:
            if require_bool(operand.value(facts, source), source):
                return True
        return False


@dataclass(frozen=True)
class ResultTest(Expr):
    """``x is succeeded`` and friends, over a registered Result."""
    field: str
    operand: Expr

    def value(self, facts: FactStore, source: str) -> Any:
        val = self.operand.value(facts, source)
        if kind_of(val) is not ValueKind.MAPPING or 'status' not in val:
            raise ConditionTypeError(
                f"'is {self.field}' needs a registered result, got {kind_of(val).value}",
                source,
            )
        return require_bool(val[self.field], source)


@dataclass(frozen=True)
class Defined(Expr):
    """Existence probe; the one place a missing fact is not an error."""
    ref: FactRef

    def value(self, facts: FactStore, source: str) -> Any:
        return facts.has_path(self.ref.path)


@dataclass(frozen=True)
class Convert(Expr):
    name: str
    operand: Expr

    def value(self, facts: FactStore, source: str) -> Any:
        val = self.operand.value(facts, source)
        kind = kind_of(val)
        if self.name == 'bool':
            if kind is ValueKind.BOOLEAN:
                return val
            if kind is ValueKind.STRING and val.strip().lower() in ('true', 'yes', 'on'):
                return True
            if kind is ValueKind.STRING and val.strip().lower() in ('false', 'no', 'off'):
                return False
        elif self.name == 'int':
            if kind is ValueKind.NUMBER:
                return int(val)
            if kind is ValueKind.STRING and val.strip().lstrip('-').isdigit():
                return int(val)
        elif self.name == 'length':
            if kind in (ValueKind.STRING, ValueKind.LIST, ValueKind.MAPPING):
                return len(val)
        elif self.name == 'lower':
            if kind is ValueKind.STRING:
                return val.lower()
        elif self.name == 'string':
            if kind in (ValueKind.STRING, ValueKind.NUMBER, ValueKind.BOOLEAN):
                return str(val)
        raise ConditionTypeError(f"cannot apply '{self.name}' to {kind.value} {val!r}", source)


@dataclass(frozen=True)
class Condition:
    """A parsed boolean expression and the text it came from."""
    source: str
    root: Expr

    def __str__(self) -> str:
        return self.source


def parse_condition(value: Any) -> Optional[Condition]:
    """
    Build a Condition from a playbook value.

    Strings are parsed as expressions, booleans become constants, and a
    list means every entry must hold. ``None`` means no condition.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return Condition(str(value).lower(), Literal(value))
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        parts = [parse_condition(item) for item in value]
        roots = tuple(p.root for p in parts if p is not None)
        source = " and ".join(f"({p.source})" for p in parts if p is not None)
        return Condition(source, All(roots))
    if isinstance(value, str):
        source = value.strip()
        if not source:
            raise ConditionSyntaxError("empty expression", value)
        return Condition(source, _parse_expression(source))
    raise ConditionSyntaxError(f"unsupported condition type {type(value).__name__}", str(value))


def evaluate(condition: Optional[Condition], facts: FactStore) -> bool:
    """
    Decide whether a guarded task runs.

    An absent condition is true. Missing facts raise UnresolvedFactError
    and non-boolean results raise ConditionTypeError; neither is ever
    treated as false.
    """
    if condition is None:
        return True
    return require_bool(condition.root.value(facts, condition.source), condition.source)


def _parse_expression(source: str) -> Expr:
    env = get_template_engine().env
    try:
        parser = Parser(env, source, state='variable')
        node = parser.parse_expression()
        if not parser.stream.eos:
            raise ConditionSyntaxError("unexpected text after expression", source)
    except TemplateSyntaxError as e:
        raise ConditionSyntaxError(e.message or str(e), source)
    return _convert(node, source)


def _convert(node: nodes.Node, source: str) -> Expr:
    if isinstance(node, nodes.Const):
        kind_of(node.value)
        return Literal(node.value)
    if isinstance(node, (nodes.List, nodes.Tuple)):
        return ListExpr(tuple(_convert(item, source) for item in node.items))
    if isinstance(node, (nodes.Name, nodes.Getattr, nodes.Getitem)):
        return FactRef(_fact_path(node, source))
    if isinstance(node, nodes.Neg):
        return Negate(_convert(node.node, source))
    if isinstance(node, nodes.Not):
        return Not(_convert(node.node, source))
    if isinstance(node, nodes.And):
        return All(_flatten(node, nodes.And, source))
    if isinstance(node, nodes.Or):
        return AnyOf(_flatten(node, nodes.Or, source))
    if isinstance(node, nodes.Compare):
        return _convert_compare(node, source)
    if isinstance(node, nodes.Test):
        return _convert_test(node, source)
    if isinstance(node, nodes.Filter):
        if node.name not in CONVERSIONS or node.args or node.kwargs:
            raise ConditionSyntaxError(f"filter '{node.name}' is not allowed here", source)
        return Convert(node.name, _convert(node.node, source))
    raise ConditionSyntaxError(f"unsupported syntax {type(node).__name__}", source)


def _flatten(node: nodes.Node, kind: type, source: str) -> Tuple[Expr, ...]:
    operands = []
    for side in (node.left, node.right):
        if isinstance(side, kind):
            operands.extend(_flatten(side, kind, source))
        else:
            operands.append(_convert(side, source))
    return tuple(operands)


def _convert_compare(node: nodes.Compare, source: str) -> Expr:
    # a < b < c becomes (a < b) and (b < c)
    pairs = []
    left = _convert(node.expr, source)
    for operand in node.ops:
        if operand.op not in COMPARISONS:
            raise ConditionSyntaxError(f"unsupported operator '{operand.op}'", source)
        right = _convert(operand.expr, source)
        pairs.append(Compare(operand.op, left, right))
        left = right
    if len(pairs) == 1:
        return pairs[0]
    return All(tuple(pairs))


def _convert_test(node: nodes.Test, source: str) -> Expr:
    if node.args or node.kwargs:
        raise ConditionSyntaxError(f"test '{node.name}' takes no arguments", source)
    if node.name in EXISTENCE_TESTS:
        ref = _convert(node.node, source)
        if not isinstance(ref, FactRef):
            raise ConditionSyntaxError(f"'is {node.name}' needs a fact reference", source)
        probe = Defined(ref)
        return probe if node.name == 'defined' else Not(probe)
    if node.name in RESULT_TESTS:
        return ResultTest(RESULT_TESTS[node.name], _convert(node.node, source))
    raise ConditionSyntaxError(f"unknown test '{node.name}'", source)


def _fact_path(node: nodes.Node, source: str) -> Tuple[Union[str, int], ...]:
    if isinstance(node, nodes.Name):
        return (node.name,)
    if isinstance(node, nodes.Getattr):
        return _fact_path(node.node, source) + (node.attr,)
    if isinstance(node, nodes.Getitem):
        key = node.arg
        if not isinstance(key, nodes.Const) or not isinstance(key.value, (str, int)) \
                or isinstance(key.value, bool):
            raise ConditionSyntaxError("subscripts must be string or integer literals", source)
        return _fact_path(node.node, source) + (key.value,)
    raise ConditionSyntaxError(f"cannot reference a fact through {type(node).__name__}", source)
