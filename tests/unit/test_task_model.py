"""
Tests for loading task definitions into Task objects.
"""

import pytest

from proviso.engine.errors import MalformedTaskError
from proviso.engine.retry import RetryPolicy
from proviso.engine.task import (
    DEFAULT_UNTIL_ATTEMPTS,
    DEFAULT_UNTIL_DELAY,
    OnError,
    load,
    normalize_action,
)

KNOWN = {"command", "shell", "debug", "set_fact", "stat", "copy", "firewalld", "dnf", "virt"}


def load_one(definition, variables=None):
    return load([definition], KNOWN, variables)[0]


class TestNormalizeAction:

    def test_plain_name(self):
        assert normalize_action("copy", KNOWN) == "copy"

    def test_fqcn(self):
        assert normalize_action("ansible.builtin.copy", KNOWN) == "copy"
        assert normalize_action("ansible.posix.firewalld", KNOWN) == "firewalld"

    def test_unknown(self):
        assert normalize_action("community.general.nope", KNOWN) is None


class TestLoad:

    def test_minimal_task(self):
        task = load_one({"name": "say hi", "debug": {"msg": "hi"}})
        assert task.index == 0
        assert task.id == 0
        assert task.action == "debug"
        assert dict(task.params) == {"msg": "hi"}
        assert task.guard is None
        assert task.retry == RetryPolicy()
        assert task.on_error is OnError.FAIL
        assert task.register_as is None

    def test_order_is_index(self):
        tasks = load([{"debug": None}, {"command": "true"}], KNOWN)
        assert [t.index for t in tasks] == [0, 1]
        assert tasks[1].name == "command #1"

    def test_tasks_are_immutable(self):
        task = load_one({"debug": {"msg": "hi"}})
        with pytest.raises(Exception):
            task.name = "other"
        with pytest.raises(TypeError):
            task.params["msg"] = "changed"

    def test_free_form_command(self):
        task = load_one({"command": "virsh list --all"})
        assert dict(task.params) == {"_raw_params": "virsh list --all"}

    def test_inline_key_values(self):
        task = load_one({"copy": "src=a.txt dest='/tmp/b c'"})
        assert dict(task.params) == {"src": "a.txt", "dest": "/tmp/b c"}

    def test_args_are_merged(self):
        task = load_one({"command": "make", "args": {"chdir": "/src"}})
        assert dict(task.params) == {"_raw_params": "make", "chdir": "/src"}

    def test_guard_and_register(self):
        task = load_one({"debug": None, "when": "x is succeeded", "register": "out"})
        assert str(task.guard) == "x is succeeded"
        assert task.register_as == "out"

    def test_ignore_errors(self):
        assert load_one({"debug": None, "ignore_errors": True}).on_error is OnError.IGNORE
        assert load_one({"debug": None, "on_error": "ignore"}).on_error is OnError.IGNORE

    def test_retries_are_total_attempts(self):
        task = load_one({"command": "true", "retries": 3, "delay": 30})
        assert task.retry.max_attempts == 3
        assert task.retry.delay == 30.0

    def test_until_defaults(self):
        task = load_one({"command": "true", "register": "r", "until": "r is succeeded"})
        assert task.retry.max_attempts == DEFAULT_UNTIL_ATTEMPTS
        assert task.retry.delay == DEFAULT_UNTIL_DELAY
        assert str(task.until) == "r is succeeded"

    def test_templated_retries(self):
        task = load_one(
            {"command": "true", "retries": "{{ n }}", "delay": "{{ d }}", "until": "r is succeeded", "register": "r"},
            {"n": 30, "d": "10"},
        )
        assert task.retry.max_attempts == 30
        assert task.retry.delay == 10.0

    def test_loop(self):
        task = load_one({"firewalld": {"service": "{{ item }}"}, "loop": ["http", "dns"]})
        assert task.loop == ("http", "dns")
        assert task.loop_var == "item"

    def test_loop_var(self):
        task = load_one({"debug": None, "loop": "{{ svc }}", "loop_control": {"loop_var": "svc_name"}})
        assert task.loop == "{{ svc }}"
        assert task.loop_var == "svc_name"

    def test_failed_and_changed_when(self):
        task = load_one({"command": "true", "failed_when": "r.rc > 0", "changed_when": False})
        assert str(task.failed_when) == "r.rc > 0"
        assert str(task.changed_when) == "false"


class TestMalformed:

    @pytest.mark.parametrize("definition,fragment", [
        ({"name": "nothing"}, "no action"),
        ({"nope": {}}, "unknown action 'nope'"),
        ({"debug": None, "command": "ls"}, "more than one action"),
        ({"debug": None, "register": "not valid"}, "invalid register"),
        ({"debug": None, "retries": 0}, "positive whole number"),
        ({"debug": None, "retries": 2.5}, "positive whole number"),
        ({"debug": None, "retries": 2, "delay": -1}, "must not be negative"),
        ({"debug": None, "retries": "many"}, "must be a number"),
        ({"debug": None, "delay": 5}, "without 'retries'"),
        ({"debug": None, "on_error": "explode"}, "on_error"),
        ({"debug": None, "ignore_errors": "yes"}, "ignore_errors"),
        ({"debug": None, "loop": 5}, "'loop'"),
        ({"debug": None, "args": "x"}, "'args'"),
        ({"debug": None, "when": "a +"}, "invalid condition"),
    ])
    def test_rejected(self, definition, fragment):
        with pytest.raises(MalformedTaskError) as exc_info:
            load_one(definition)
        assert fragment in str(exc_info.value)
        assert exc_info.value.task_index == 0

    def test_not_a_mapping(self):
        with pytest.raises(MalformedTaskError):
            load(["debug"], KNOWN)

    def test_error_names_position(self):
        with pytest.raises(MalformedTaskError) as exc_info:
            load([{"debug": None}, {"name": "broken", "bogus": 1}], KNOWN)
        assert exc_info.value.task_index == 1
        assert exc_info.value.task_name == "broken"

    def test_templated_retries_need_facts(self):
        with pytest.raises(MalformedTaskError):
            load_one({"command": "true", "retries": "{{ missing }}"})
