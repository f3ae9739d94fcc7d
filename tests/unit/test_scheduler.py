"""
Tests for group execution: guards, registration, halting, retries,
probing, cancellation and group isolation.
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

import pytest

from proviso.engine.errors import ConnectionError, ExitCode
from proviso.engine.facts import FactStore
from proviso.engine.inventory import Endpoint, ProbePolicy
from proviso.engine.playbook import Play
from proviso.engine.results import Result, TaskState
from proviso.engine.scheduler import GroupContext, Scheduler
from proviso.engine.task import load

KNOWN = {"command", "debug", "set_fact", "firewalld"}


class StubInvoker:
    """Invoker that records calls and answers from a script keyed by the ``id`` param."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = responses or {}
        self.calls: List[tuple] = []

    @property
    def known_actions(self):
        return sorted(KNOWN)

    async def invoke(self, action_ref, params, endpoint, variables=None):
        self.calls.append((action_ref, dict(params), endpoint.name))
        await asyncio.sleep(0)
        response = self.responses.get(params.get("id"))
        if response is None:
            return Result.success(payload={"rc": 0})
        if callable(response):
            return response(params, endpoint)
        if isinstance(response, list):
            return response.pop(0) if len(response) > 1 else response[0]
        return response

    def ids(self):
        return [params.get("id") for _, params, _ in self.calls]


class FakeConnection:

    def __init__(self, endpoint):
        self.endpoint = endpoint

    async def close(self):
        pass


async def connect(endpoint):
    return FakeConnection(endpoint)


class FakeSleep:

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_context(definitions, group="g", members=("h1",), seed=None):
    play = Play(name=f"play {group}", hosts=group, tasks=load(definitions, KNOWN, seed))
    endpoints = [Endpoint(name) for name in members]
    return GroupContext(play=play, endpoints=endpoints, facts=FactStore(group, seed))


def make_scheduler(invoker, **kwargs):
    kwargs.setdefault("connection_factory", connect)
    kwargs.setdefault("probe_policy", ProbePolicy(timeout=1, retries=1, delay=0))
    kwargs.setdefault("sleep", FakeSleep())
    return Scheduler(invoker=invoker, **kwargs)


def states(outcome):
    return [r.state for r in outcome.records]


class TestGuards:

    @pytest.mark.asyncio
    async def test_absent_guard_always_dispatches(self):
        invoker = StubInvoker()
        ctx = make_context([{"debug": {"id": "A"}}])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert invoker.ids() == ["A"]
        assert states(outcome) == [TaskState.COMPLETED]
        assert outcome.passed

    @pytest.mark.asyncio
    async def test_false_guard_skips_without_registering(self):
        invoker = StubInvoker()
        ctx = make_context(
            [{"debug": {"id": "A"}, "when": "deploy_type == 'upi'", "register": "a"}],
            seed={"deploy_type": "ipi"},
        )
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert invoker.calls == []
        assert states(outcome) == [TaskState.SKIPPED]
        assert "a" not in ctx.facts

    @pytest.mark.asyncio
    async def test_registered_result_drives_later_guards(self):
        invoker = StubInvoker({"A": Result.success()})
        ctx = make_context([
            {"debug": {"id": "A"}, "register": "x"},
            {"debug": {"id": "B"}, "when": "x is succeeded"},
            {"debug": {"id": "C"}, "when": "x is failed"},
        ])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert invoker.ids() == ["A", "B"]
        assert states(outcome) == [TaskState.COMPLETED, TaskState.COMPLETED, TaskState.SKIPPED]

    @pytest.mark.asyncio
    async def test_register_overwrite_visible_to_later_tasks_only(self):
        invoker = StubInvoker({
            "A": Result.success(payload={"v": 1}),
            "C": Result.success(payload={"v": 2}),
        })
        ctx = make_context([
            {"debug": {"id": "A"}, "register": "x"},
            {"debug": {"id": "B"}, "when": "x.v == 1"},
            {"debug": {"id": "C"}, "register": "x"},
            {"debug": {"id": "D"}, "when": "x.v == 2"},
            {"debug": {"id": "E"}, "when": "x.v == 1"},
        ])
        await make_scheduler(invoker).run_group(ctx)
        assert invoker.ids() == ["A", "B", "C", "D"]
        assert ctx.facts.lookup(("x", "v")) == 2

    @pytest.mark.asyncio
    async def test_unresolved_fact_is_fatal_to_group(self):
        invoker = StubInvoker()
        ctx = make_context([
            {"debug": {"id": "A"}, "when": "never_registered is succeeded"},
            {"debug": {"id": "B"}},
        ])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert invoker.calls == []
        assert states(outcome) == [TaskState.FAILED, TaskState.NOT_ATTEMPTED]
        assert outcome.error_kind == "UnresolvedFactError"
        assert outcome.stopped_at == 0

    @pytest.mark.asyncio
    async def test_non_boolean_guard_is_fatal(self):
        ctx = make_context([{"debug": {"id": "A"}, "when": "name"}], seed={"name": "bastion"})
        outcome = await make_scheduler(StubInvoker()).run_group(ctx)
        assert outcome.error_kind == "ConditionTypeError"

    @pytest.mark.asyncio
    async def test_missing_param_fact_is_fatal(self):
        invoker = StubInvoker()
        ctx = make_context([{"debug": {"id": "A", "msg": "{{ nope }}"}}])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert invoker.calls == []
        assert outcome.error_kind == "UnresolvedFactError"


class TestFailures:

    @pytest.mark.asyncio
    async def test_failure_halts_group(self):
        invoker = StubInvoker({"A": Result.failure(msg="dnf exploded")})
        ctx = make_context([{"debug": {"id": "A"}}, {"debug": {"id": "B"}}])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert invoker.ids() == ["A"]
        assert states(outcome) == [TaskState.FAILED, TaskState.NOT_ATTEMPTED]
        assert outcome.error_kind == "ActionFailedError"
        assert "dnf exploded" in outcome.error
        assert not outcome.passed

    @pytest.mark.asyncio
    async def test_ignore_never_halts(self):
        invoker = StubInvoker({"A": Result.failure(msg="already there")})
        ctx = make_context([
            {"debug": {"id": "A"}, "register": "a", "ignore_errors": True},
            {"debug": {"id": "B"}, "when": "a is failed"},
        ])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert invoker.ids() == ["A", "B"]
        assert states(outcome) == [TaskState.COMPLETED, TaskState.COMPLETED]
        assert outcome.passed

    @pytest.mark.asyncio
    async def test_failed_when_turns_success_into_failure(self):
        invoker = StubInvoker({"A": Result.success(payload={"rc": 1})})
        ctx = make_context([
            {"command": {"id": "A"}, "register": "fw", "failed_when": "fw.rc > 0"},
            {"debug": {"id": "B"}},
        ])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert states(outcome) == [TaskState.FAILED, TaskState.NOT_ATTEMPTED]

    @pytest.mark.asyncio
    async def test_failed_when_false_accepts_failure(self):
        invoker = StubInvoker({"A": Result.failure(payload={"rc": 2})})
        ctx = make_context([{"command": {"id": "A"}, "failed_when": False, "changed_when": False}])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert states(outcome) == [TaskState.COMPLETED]
        assert outcome.records[0].result.changed is False


class TestRetries:

    @pytest.mark.asyncio
    async def test_two_failures_then_success(self):
        invoker = StubInvoker({"A": [Result.failure(), Result.failure(), Result.success()]})
        sleep = FakeSleep()
        ctx = make_context([{"debug": {"id": "A"}, "retries": 3, "delay": 30}])
        outcome = await make_scheduler(invoker, sleep=sleep).run_group(ctx)
        assert len(invoker.calls) == 3
        assert sleep.delays == [30, 30]
        assert outcome.records[0].attempts == 3
        assert outcome.passed

    @pytest.mark.asyncio
    async def test_until_predicate(self):
        invoker = StubInvoker({"A": [
            Result.success(payload={"rc": 1}),
            Result.success(payload={"rc": 1}),
            Result.success(payload={"rc": 0}),
        ]})
        ctx = make_context([
            {"command": {"id": "A"}, "register": "r", "until": "r.rc == 0", "retries": 5, "delay": 1},
        ])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert len(invoker.calls) == 3
        assert ctx.facts.lookup(("r", "rc")) == 0
        assert outcome.passed

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail(self):
        invoker = StubInvoker({"A": Result.failure()})
        ctx = make_context([{"debug": {"id": "A"}, "retries": 2, "delay": 0}])
        outcome = await make_scheduler(invoker).run_group(ctx)
        assert len(invoker.calls) == 2
        assert "after 2 attempts" in outcome.error


class TestDispatch:

    @pytest.mark.asyncio
    async def test_loop_renders_each_item(self):
        invoker = StubInvoker()
        ctx = make_context([
            {"firewalld": {"id": "fw", "service": "{{ item }}"}, "loop": ["http", "dns"], "register": "fw"},
        ])
        await make_scheduler(invoker).run_group(ctx)
        assert [p["service"] for _, p, _ in invoker.calls] == ["http", "dns"]
        assert len(ctx.facts.lookup(("fw", "results"))) == 2

    @pytest.mark.asyncio
    async def test_loop_from_fact(self):
        invoker = StubInvoker()
        ctx = make_context(
            [{"firewalld": {"id": "fw", "port": "{{ port }}"}, "loop": "{{ ports }}",
              "loop_control": {"loop_var": "port"}}],
            seed={"ports": ["80/tcp", "443/tcp"]},
        )
        await make_scheduler(invoker).run_group(ctx)
        assert [p["port"] for _, p, _ in invoker.calls] == ["80/tcp", "443/tcp"]

    @pytest.mark.asyncio
    async def test_loop_must_be_list(self):
        ctx = make_context([{"debug": {"id": "A"}, "loop": "{{ n }}"}], seed={"n": 3})
        outcome = await make_scheduler(StubInvoker()).run_group(ctx)
        assert outcome.error_kind == "TemplateError"

    @pytest.mark.asyncio
    async def test_members_in_order(self):
        invoker = StubInvoker()
        ctx = make_context([{"debug": {"id": "A"}}], members=("m1", "m2", "m3"))
        await make_scheduler(invoker).run_group(ctx)
        assert [host for _, _, host in invoker.calls] == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_set_fact_results_become_facts(self):
        invoker = StubInvoker({"A": Result.success(facts={"compact": True})})
        ctx = make_context([
            {"set_fact": {"id": "A"}},
            {"debug": {"id": "B"}, "when": "compact"},
        ])
        await make_scheduler(invoker).run_group(ctx)
        assert invoker.ids() == ["A", "B"]


class TestProbe:

    @pytest.mark.asyncio
    async def test_unreachable_group_dispatches_nothing(self):
        async def refuse(endpoint):
            raise ConnectionError(endpoint.name, "connection refused")

        invoker = StubInvoker()
        ctx = make_context([{"debug": {"id": "A"}}, {"debug": {"id": "B"}}])
        outcome = await make_scheduler(invoker, connection_factory=refuse).run_group(ctx)
        assert invoker.calls == []
        assert states(outcome) == [TaskState.NOT_ATTEMPTED, TaskState.NOT_ATTEMPTED]
        assert outcome.error_kind == "UnreachableHostError"

    @pytest.mark.asyncio
    async def test_probe_timeout_dispatches_nothing(self):
        async def hang(endpoint):
            await asyncio.sleep(10)

        invoker = StubInvoker()
        ctx = make_context([{"debug": {"id": "A"}}])
        scheduler = make_scheduler(
            invoker,
            connection_factory=hang,
            probe_policy=ProbePolicy(timeout=0.01, retries=1, delay=0),
        )
        outcome = await scheduler.run_group(ctx)
        assert invoker.calls == []
        assert outcome.error_kind == "UnreachableHostError"


class TestGroups:

    @pytest.mark.asyncio
    async def test_groups_never_see_each_others_facts(self):
        invoker = StubInvoker()
        first = make_context([{"debug": {"id": "A1"}, "register": "x"}], group="a")
        second = make_context([
            {"debug": {"id": "B1"}},
            {"debug": {"id": "B2"}},
            {"debug": {"id": "B3"}, "when": "x is defined"},
        ], group="b")
        report = await make_scheduler(invoker).run_groups([first, second])
        assert "x" in report.outcomes[0].facts
        assert "x" not in report.outcomes[1].facts
        assert report.outcomes[1].records[2].state is TaskState.SKIPPED

    @pytest.mark.asyncio
    async def test_failure_in_one_group_does_not_stop_another(self):
        invoker = StubInvoker({"A1": Result.failure()})
        first = make_context([{"debug": {"id": "A1"}}, {"debug": {"id": "A2"}}], group="a")
        second = make_context([{"debug": {"id": "B1"}}, {"debug": {"id": "B2"}}], group="b")
        report = await make_scheduler(invoker).run_groups([first, second])
        assert "A2" not in invoker.ids()
        assert "B2" in invoker.ids()
        assert report.exit_code == ExitCode.GROUP_FAILED
        assert [o.group for o in report.failed_groups] == ["a"]

    @pytest.mark.asyncio
    async def test_serial_strategy_runs_in_document_order(self):
        invoker = StubInvoker()
        first = make_context([{"debug": {"id": "A1"}}, {"debug": {"id": "A2"}}], group="a")
        second = make_context([{"debug": {"id": "B1"}}, {"debug": {"id": "B2"}}], group="b")
        await make_scheduler(invoker, strategy="serial").run_groups([first, second])
        assert invoker.ids() == ["A1", "A2", "B1", "B2"]

    @pytest.mark.asyncio
    async def test_first_error_is_earliest(self):
        counter = itertools.count()
        invoker = StubInvoker({"A1": Result.failure(), "B1": Result.failure()})
        first = make_context([{"debug": {"id": "A1"}}], group="a")
        second = make_context([{"debug": {"id": "B1"}}], group="b")
        scheduler = make_scheduler(invoker, strategy="serial", clock=lambda: float(next(counter)))
        report = await scheduler.run_groups([first, second])
        assert report.first_error.group == "a"

    @pytest.mark.asyncio
    async def test_arithmetic_error_in_params_stays_in_its_group(self):
        invoker = StubInvoker()
        first = make_context(
            [{"debug": {"id": "A1", "msg": "{{ 10 / zero }}"}}, {"debug": {"id": "A2"}}],
            group="a", seed={"zero": 0},
        )
        second = make_context([{"debug": {"id": "B1"}}], group="b")
        report = await make_scheduler(invoker).run_groups([first, second])

        broken, healthy = report.outcomes
        assert broken.error_kind == "TemplateError"
        assert states(broken) == [TaskState.FAILED, TaskState.NOT_ATTEMPTED]
        assert healthy.passed
        assert invoker.ids() == ["B1"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_only_its_group(self):
        async def flaky_connect(endpoint):
            if endpoint.name == "bad":
                raise RuntimeError("connection plugin crashed")
            return FakeConnection(endpoint)

        invoker = StubInvoker()
        first = make_context([{"debug": {"id": "A1"}}, {"debug": {"id": "A2"}}], group="a", members=("bad",))
        second = make_context([{"debug": {"id": "B1"}}], group="b", members=("good",))
        report = await make_scheduler(invoker, connection_factory=flaky_connect).run_groups([first, second])

        broken, healthy = report.outcomes
        assert broken.error_kind == "UnexpectedError"
        assert "RuntimeError: connection plugin crashed" in broken.error
        assert broken.stopped_at == 0
        assert states(broken) == [TaskState.FAILED, TaskState.NOT_ATTEMPTED]
        assert healthy.passed
        assert report.exit_code == ExitCode.GROUP_FAILED

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            Scheduler(invoker=StubInvoker(), strategy="random")


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_stops_later_tasks(self):
        cancel = asyncio.Event()

        def first_task(params, endpoint):
            cancel.set()
            return Result.success()

        invoker = StubInvoker({"A": first_task})
        ctx = make_context([
            {"debug": {"id": "A"}, "register": "a"},
            {"debug": {"id": "B"}},
        ])
        scheduler = make_scheduler(invoker, cancel_event=cancel)
        report = await scheduler.run_groups([ctx])
        assert invoker.ids() == ["A"]
        assert states(report.outcomes[0]) == [TaskState.COMPLETED, TaskState.NOT_ATTEMPTED]
        assert "a" in report.outcomes[0].facts
        assert report.cancelled
        assert report.exit_code == ExitCode.KEYBOARD_INTERRUPT

    @pytest.mark.asyncio
    async def test_cancel_during_retry_wait(self):
        cancel = asyncio.Event()

        async def sleep(delay):
            cancel.set()

        invoker = StubInvoker({"A": Result.failure()})
        ctx = make_context([{"debug": {"id": "A"}, "retries": 5, "delay": 10}, {"debug": {"id": "B"}}])
        outcome = await make_scheduler(invoker, cancel_event=cancel, sleep=sleep).run_group(ctx)
        assert len(invoker.calls) == 1
        assert outcome.cancelled
        assert outcome.error_kind is None
        assert states(outcome) == [TaskState.FAILED, TaskState.NOT_ATTEMPTED]
        assert outcome.records[0].error_kind == "CancelledRunError"
