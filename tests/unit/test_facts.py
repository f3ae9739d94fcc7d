"""
Tests for the per-group fact store.
"""

import pytest

from proviso.engine.errors import ConditionTypeError, UnresolvedFactError
from proviso.engine.facts import FactStore


class TestFactStore:

    def test_seeded_facts(self):
        facts = FactStore("g", {"deploy_type": "ipi"})
        assert facts.get("deploy_type") == "ipi"
        assert "deploy_type" in facts
        assert len(facts) == 1

    def test_missing_fact_fails_closed(self):
        facts = FactStore("g")
        with pytest.raises(UnresolvedFactError) as exc_info:
            facts.get("nope")
        assert exc_info.value.kind == "UnresolvedFactError"

    def test_lookup_nested(self):
        facts = FactStore("g", {"check": {"stat": {"exists": True}}, "items": [10, 20]})
        assert facts.lookup(("check", "stat", "exists")) is True
        assert facts.lookup(("items", 1)) == 20

    def test_lookup_missing_segment_names_full_path(self):
        facts = FactStore("g", {"check": {"stat": {}}})
        with pytest.raises(UnresolvedFactError) as exc_info:
            facts.lookup(("check", "stat", "exists"))
        assert "check.stat.exists" in str(exc_info.value)

    def test_lookup_index_out_of_range(self):
        facts = FactStore("g", {"items": [1]})
        assert not facts.has_path(("items", 3))

    def test_register_overwrites(self):
        facts = FactStore("g")
        facts.register("x", 1)
        facts.register("x", 2)
        assert facts.get("x") == 2

    def test_values_are_copied_in_and_out(self):
        value = {"rc": 0}
        facts = FactStore("g")
        facts.register("r", value)
        value["rc"] = 1
        assert facts.get("r") == {"rc": 0}

        snapshot = facts.snapshot()
        snapshot["r"]["rc"] = 5
        assert facts.lookup(("r", "rc")) == 0

    def test_register_rejects_foreign_values(self):
        facts = FactStore("g")
        with pytest.raises(ConditionTypeError):
            facts.register("x", object())

    def test_with_bindings_does_not_touch_store(self):
        facts = FactStore("g", {"a": 1})
        overlay = facts.with_bindings({"item": "x"})
        assert overlay.get("item") == "x"
        assert overlay.get("a") == 1
        assert "item" not in facts

    def test_two_stores_are_independent(self):
        first = FactStore("a")
        second = FactStore("b")
        first.register("x", True)
        assert "x" not in second
