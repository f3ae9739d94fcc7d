"""
Proviso Scheduler

Walks each host group's task list in order and runs groups side by side
with asyncio. A group never sees another group's facts, and an error in
one group never stops another.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from proviso.actions.base import ActionInvoker
from proviso.connections.base import open_connection
from proviso.engine.conditions import evaluate
from proviso.engine.display import Display
from proviso.engine.errors import (
    ActionFailedError,
    CancelledRunError,
    ProvisoError,
    TemplateError,
    UnexpectedError,
    UnreachableHostError,
)
from proviso.engine.facts import FactStore
from proviso.engine.inventory import ConnectionFactory, Endpoint, ProbePolicy
from proviso.engine.playbook import Play
from proviso.engine.results import GroupOutcome, Result, ResultStatus, RunReport, TaskRecord, TaskState
from proviso.engine.retry import RetryController, RetryPolicy, succeeded, until_condition
from proviso.engine.task import OnError, Task
from proviso.engine.templating import evaluate_native, render_recursive

logger = logging.getLogger(__name__)

STRATEGIES = ('parallel', 'serial')


@dataclass
class GroupContext:
    """Runtime context for one play bound to one host group."""

    play: Play
    endpoints: List[Endpoint]
    facts: FactStore
    outcome: GroupOutcome = field(init=False)

    def __post_init__(self) -> None:
        self.outcome = GroupOutcome(name=self.play.name, group=self.play.hosts)
        self.outcome.records = [
            TaskRecord(index=t.index, name=t.name, action=t.action) for t in self.play.tasks
        ]

    @property
    def label(self) -> str:
        return self.play.hosts

    def get_vars(self, endpoint: Endpoint, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Variables for templating: endpoint vars under the group's facts."""
        merged = endpoint.get_vars()
        merged.update(self.facts.snapshot())
        merged['inventory_hostname'] = endpoint.name
        if extra:
            merged.update(extra)
        return merged

    def halt(self, start: int) -> None:
        """Mark every task from ``start`` on as not attempted."""
        for record in self.outcome.records[start:]:
            if record.state is TaskState.PENDING:
                record.state = TaskState.NOT_ATTEMPTED


class Scheduler:
    """
    Async scheduler for host groups.

    Each group's tasks run strictly in order inside one coroutine. With the
    ``parallel`` strategy all groups are gathered at once; ``serial`` runs
    them in document order.
    """

    def __init__(
        self,
        invoker: Optional[ActionInvoker] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        probe_policy: Optional[ProbePolicy] = None,
        strategy: str = 'parallel',
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        display: Optional[Display] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the scheduler.

        Args:
            invoker: Action invoker used for every dispatch
            connection_factory: Async callable (endpoint) -> Connection used by the probe
            probe_policy: Timeout and retries for the reachability probe
            strategy: 'parallel' or 'serial'
            cancel_event: Run-level cancellation signal
            sleep: Replacement for the retry delay (tests)
            display: Console reporter
            clock: Source for the failure timestamps that pick the first error
        """
        if strategy not in STRATEGIES:
            raise ValueError(f"unknown strategy {strategy!r}, expected one of {', '.join(STRATEGIES)}")
        self.invoker = invoker or ActionInvoker()
        self.connection_factory = connection_factory or open_connection
        self.probe_policy = probe_policy or ProbePolicy()
        self.strategy = strategy
        self.cancel_event = cancel_event or asyncio.Event()
        self.retry = RetryController(sleep=sleep, cancel_event=self.cancel_event)
        self.display = display or Display(json_output=True)
        self.clock = clock

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def run_groups(self, contexts: Sequence[GroupContext], playbook_path: str = "") -> RunReport:
        """
        Run every group context and collect the outcomes in input order.
        """
        report = RunReport(playbook_path=playbook_path)

        if self.strategy == 'parallel':
            outcomes = await asyncio.gather(*(self.run_group(ctx) for ctx in contexts))
        else:
            outcomes = []
            for ctx in contexts:
                outcomes.append(await self.run_group(ctx))

        for outcome in outcomes:
            report.add_outcome(outcome)
        return report

    async def run_group(self, ctx: GroupContext) -> GroupOutcome:
        """
        Run one group's task list to completion, halt or cancellation.

        Returns:
            GroupOutcome with a record per task and the final facts
        """
        outcome = ctx.outcome
        self.display.play(ctx.play.name, ctx.label)

        try:
            await self._run_group(ctx)
        except Exception as e:
            logger.exception("[%s] unexpected error", ctx.label)
            error = UnexpectedError(e)
            record = next((r for r in outcome.records if r.state in _UNFINISHED), None)
            if record is None:
                outcome.fail(None, error, self.clock())
            else:
                self._fail_task(ctx, record, error)
                ctx.halt(record.index + 1)

        outcome.facts = ctx.facts.snapshot()
        return outcome

    async def _run_group(self, ctx: GroupContext) -> None:
        outcome = ctx.outcome
        try:
            await self._probe(ctx)
        except UnreachableHostError as e:
            logger.warning("[%s] %s", ctx.label, e)
            self.display.error(f"UNREACHABLE [{ctx.label}]: {e}")
            outcome.fail(0 if ctx.play.tasks else None, e, self.clock())
            ctx.halt(0)
            return

        for task in ctx.play.tasks:
            if self.cancelled:
                logger.info("[%s] cancelled before task #%d", ctx.label, task.index)
                outcome.cancelled = True
                ctx.halt(task.index)
                break
            if not await self.run_task(ctx, task):
                ctx.halt(task.index + 1)
                break

    async def _probe(self, ctx: GroupContext) -> None:
        for endpoint in ctx.endpoints:
            await endpoint.probe(self.connection_factory, self.probe_policy)

    async def run_task(self, ctx: GroupContext, task: Task) -> bool:
        """
        Take one task through its states.

        Returns:
            False when the group must stop after this task
        """
        record = ctx.outcome.records[task.index]
        self.display.task(ctx.label, task.index, task.name)

        try:
            should_run = evaluate(task.guard, ctx.facts)
            record.state = TaskState.GUARD_EVALUATED
            if not should_run:
                record.state = TaskState.SKIPPED
                self.display.task_result(ctx.label, record)
                return True

            record.state = TaskState.DISPATCHED
            result = await self._dispatch(ctx, task)
        except ProvisoError as e:
            logger.error("[%s] task #%d %s: %s", ctx.label, task.index, task.name, e)
            self._fail_task(ctx, record, e)
            return False
        except Exception as e:
            logger.exception("[%s] task #%d %s: unexpected error", ctx.label, task.index, task.name)
            self._fail_task(ctx, record, UnexpectedError(e))
            return False

        record.result = result
        record.attempts = result.attempts

        if result.failed and self.cancelled:
            record.state = TaskState.FAILED
            record.error_kind = CancelledRunError().kind
            record.error = result.msg
            ctx.outcome.cancelled = True
            self.display.task_result(ctx.label, record)
            return False

        ignored = result.failed and task.on_error is OnError.IGNORE
        if result.succeeded or ignored:
            record.state = TaskState.COMPLETED
            if task.register_as:
                ctx.facts.register(task.register_as, result.to_fact())
            if result.succeeded:
                for name, value in result.facts.items():
                    ctx.facts.register(name, value)
            self.display.task_result(ctx.label, record, ignored=ignored)
            return True

        self._fail_task(ctx, record, ActionFailedError(task.action, result.msg, result.attempts))
        return False

    def _fail_task(self, ctx: GroupContext, record: TaskRecord, error: ProvisoError) -> None:
        record.state = TaskState.FAILED
        record.error_kind = error.kind
        record.error = str(error)
        ctx.outcome.fail(record.index, error, self.clock())
        self.display.task_result(ctx.label, record)

    async def _dispatch(self, ctx: GroupContext, task: Task) -> Result:
        """Invoke the task once per endpoint (and loop item), in member order."""
        results: List[Result] = []

        for endpoint in ctx.endpoints:
            for item in self._loop_items(ctx, task, endpoint):
                if results and self.cancelled:
                    return Result.combine(results).with_status(ResultStatus.FAILURE)
                bindings = {} if item is _NO_ITEM else {task.loop_var: item}
                results.append(await self._invoke(ctx, task, endpoint, bindings))

        return Result.combine(results)

    def _loop_items(self, ctx: GroupContext, task: Task, endpoint: Endpoint) -> List[Any]:
        if task.loop is None:
            return [_NO_ITEM]
        items = evaluate_native(task.loop, ctx.get_vars(endpoint))
        if isinstance(items, (list, tuple)):
            return list(items)
        raise TemplateError(f"loop must evaluate to a list, got {type(items).__name__}", template=str(task.loop))

    async def _invoke(
        self,
        ctx: GroupContext,
        task: Task,
        endpoint: Endpoint,
        bindings: Dict[str, Any],
    ) -> Result:
        variables = ctx.get_vars(endpoint, bindings)
        params = render_recursive(dict(task.params), variables)
        facts = ctx.facts.with_bindings(bindings) if bindings else ctx.facts

        async def attempt(rendered: Dict[str, Any]) -> Result:
            result = await self.invoker.invoke(task.action, rendered, endpoint, variables)
            return self._apply_overrides(task, result, facts)

        if task.until is not None:
            predicate = until_condition(task.until, facts, task.register_as)
        else:
            predicate = succeeded
        policy = RetryPolicy(
            max_attempts=task.retry.max_attempts,
            delay=task.retry.delay,
            success_predicate=predicate,
        )

        logger.debug("[%s] %s on %s", ctx.label, task.action, endpoint.name)
        return await self.retry.invoke_with_retry(attempt, params, policy)

    def _apply_overrides(self, task: Task, result: Result, facts: FactStore) -> Result:
        """Apply ``changed_when`` and ``failed_when`` to one attempt's Result."""
        if task.changed_when is None and task.failed_when is None:
            return result

        fact = result.to_fact()
        bindings = {'result': fact}
        if task.register_as:
            bindings[task.register_as] = fact
        scope = facts.with_bindings(bindings)

        if task.changed_when is not None and result.succeeded:
            result.changed = evaluate(task.changed_when, scope)
        if task.failed_when is not None:
            failed = evaluate(task.failed_when, scope)
            status = ResultStatus.FAILURE if failed else ResultStatus.SUCCESS
            if status is not result.status:
                result = result.with_status(status)
                if failed and not result.msg:
                    result.msg = f"failed_when matched: {task.failed_when}"
        return result


# Marker for a task without a loop
_NO_ITEM = object()

_UNFINISHED = (TaskState.PENDING, TaskState.GUARD_EVALUATED, TaskState.DISPATCHED)
