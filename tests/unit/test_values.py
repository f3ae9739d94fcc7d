"""
Tests for value kinds and coercion rules.
"""

import pytest

from proviso.engine.errors import ConditionTypeError
from proviso.engine.values import (
    ValueKind,
    compare_order,
    contains,
    freeze,
    kind_of,
    require_bool,
    values_equal,
)


class TestKindOf:

    @pytest.mark.parametrize("value,kind", [
        ("text", ValueKind.STRING),
        (3, ValueKind.NUMBER),
        (2.5, ValueKind.NUMBER),
        (True, ValueKind.BOOLEAN),
        ([1, 2], ValueKind.LIST),
        ({"a": 1}, ValueKind.MAPPING),
        (None, ValueKind.NULL),
    ])
    def test_kinds(self, value, kind):
        assert kind_of(value) is kind

    def test_bool_is_not_a_number(self):
        assert kind_of(False) is ValueKind.BOOLEAN

    def test_rejects_foreign_types(self):
        with pytest.raises(ConditionTypeError):
            kind_of(object())


class TestRequireBool:

    def test_accepts_booleans(self):
        assert require_bool(True) is True
        assert require_bool(False) is False

    @pytest.mark.parametrize("value", ["yes", "", 1, 0, [1], {}, None])
    def test_no_truthiness(self, value):
        with pytest.raises(ConditionTypeError):
            require_bool(value, "x")


class TestEquality:

    def test_same_kind(self):
        assert values_equal("upi", "upi")
        assert values_equal([1, "a"], [1, "a"])
        assert values_equal({"a": [1]}, {"a": [1]})

    def test_cross_kind_is_never_equal(self):
        assert not values_equal("1", 1)
        assert not values_equal(1, True)
        assert not values_equal(0, False)
        assert not values_equal(None, "")


class TestOrdering:

    def test_numbers(self):
        assert compare_order('gt', 2, 1)
        assert compare_order('lteq', 1, 1.0)

    def test_strings(self):
        assert compare_order('lt', "a", "b")

    def test_mixed_kinds_rejected(self):
        with pytest.raises(ConditionTypeError):
            compare_order('gt', "2", 1)

    def test_booleans_rejected(self):
        with pytest.raises(ConditionTypeError):
            compare_order('gt', True, False)


class TestContains:

    def test_list_membership_uses_strict_equality(self):
        assert contains(["a", 1], "a")
        assert not contains([1], True)

    def test_mapping_keys(self):
        assert contains({"bastion": {}}, "bastion")

    def test_substring(self):
        assert contains("Active: active", "active")

    def test_substring_needs_string(self):
        with pytest.raises(ConditionTypeError):
            contains("123", 1)

    def test_number_container_rejected(self):
        with pytest.raises(ConditionTypeError):
            contains(5, 5)

    def test_unhashable_item_against_mapping_rejected(self):
        with pytest.raises(ConditionTypeError):
            contains({"a": 1}, [1])
        with pytest.raises(ConditionTypeError):
            contains({"a": 1}, {"a": 1})


def test_freeze_is_deep():
    original = {"a": [1, 2]}
    copied = freeze(original)
    copied["a"].append(3)
    assert original == {"a": [1, 2]}
