"""
Proviso Result Classes

Data structures for action results, per-task records, per-group outcomes
and the run report.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import json

from proviso.engine.errors import ExitCode, ProvisoError


class ResultStatus(Enum):
    """Outcome of one action invocation."""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class Result:
    """Result returned by the Action Invoker for one invocation."""

    status: ResultStatus
    changed: bool = False
    payload: Any = field(default_factory=dict)
    raw_output: str = ""
    msg: str = ""
    # Action decided there was nothing to do (e.g. creates= already present)
    skipped: bool = False
    # Facts the action asks the engine to register (set_fact)
    facts: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1

    @classmethod
    def success(cls, changed: bool = False, **kwargs: Any) -> "Result":
        return cls(status=ResultStatus.SUCCESS, changed=changed, **kwargs)

    @classmethod
    def failure(cls, msg: str = "", **kwargs: Any) -> "Result":
        return cls(status=ResultStatus.FAILURE, msg=msg, **kwargs)

    @property
    def succeeded(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status is ResultStatus.FAILURE

    def with_status(self, status: ResultStatus) -> "Result":
        """Return a copy carrying a different status."""
        return Result(
            status=status,
            changed=self.changed,
            payload=self.payload,
            raw_output=self.raw_output,
            msg=self.msg,
            skipped=self.skipped,
            facts=dict(self.facts),
            attempts=self.attempts,
        )

    def to_fact(self) -> Dict[str, Any]:
        """
        Mapping stored in the Fact Store under a task's register name.

        Payload keys are lifted to the top level so conditions can say
        ``result.rc`` or ``check.stat.exists``.
        """
        fact: Dict[str, Any] = {}
        if isinstance(self.payload, dict):
            fact.update(self.payload)
        fact.update({
            'status': self.status.value,
            'changed': self.changed,
            'failed': self.failed,
            'succeeded': self.succeeded,
            'skipped': self.skipped,
            'raw_output': self.raw_output,
            'msg': self.msg,
            'payload': self.payload,
        })
        return fact

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result: Dict[str, Any] = {
            "status": self.status.value,
            "changed": self.changed,
        }
        if self.skipped:
            result["skipped"] = True
        if self.msg:
            result["msg"] = self.msg
        if self.payload:
            result["payload"] = self.payload
        if self.raw_output:
            result["raw_output"] = self.raw_output
        return result

    @classmethod
    def combine(cls, results: List["Result"]) -> "Result":
        """
        Fold several Results (loop items, group members) into one.

        A single Result passes through unchanged.
        """
        if not results:
            return cls.success(msg="No invocations")
        if len(results) == 1:
            return results[0]

        failed = [r for r in results if r.failed]
        facts: Dict[str, Any] = {}
        for r in results:
            facts.update(r.facts)
        return cls(
            status=ResultStatus.FAILURE if failed else ResultStatus.SUCCESS,
            changed=any(r.changed for r in results),
            payload={'results': [r.to_fact() for r in results]},
            raw_output="\n".join(r.raw_output for r in results if r.raw_output),
            msg=failed[0].msg if failed else f"{len(results)} invocations succeeded",
            skipped=all(r.skipped for r in results),
            facts=facts,
            attempts=max(r.attempts for r in results),
        )


class TaskState(Enum):
    """Lifecycle state of one task within a group run."""
    PENDING = "pending"
    GUARD_EVALUATED = "guard_evaluated"
    SKIPPED = "skipped"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


@dataclass
class TaskRecord:
    """What happened to one task in one group."""

    index: int
    name: str
    action: str
    state: TaskState = TaskState.PENDING
    result: Optional[Result] = None
    attempts: int = 0
    error_kind: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        record: Dict[str, Any] = {
            "index": self.index,
            "task": self.name,
            "action": self.action,
            "state": self.state.value,
            "attempts": self.attempts,
        }
        if self.result is not None:
            record["result"] = self.result.to_dict()
        if self.error_kind:
            record["error_kind"] = self.error_kind
            record["error"] = self.error
        return record


@dataclass
class GroupOutcome:
    """Outcome of running one task list against one host group."""

    name: str
    group: str
    records: List[TaskRecord] = field(default_factory=list)
    facts: Dict[str, Any] = field(default_factory=dict)
    stopped_at: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    # Monotonic timestamp of the fatal error, used to find the first one
    failed_at: Optional[float] = None
    cancelled: bool = False

    def fail(self, index: Optional[int], exc: ProvisoError, when: float) -> None:
        """Record the error that stopped this group."""
        self.stopped_at = index
        self.error_kind = exc.kind
        self.error = str(exc)
        self.failed_at = when

    @property
    def passed(self) -> bool:
        return self.error_kind is None and not self.cancelled

    @property
    def status(self) -> str:
        if self.cancelled and self.error_kind is None:
            return "cancelled"
        return "passed" if self.passed else "failed"

    def count(self, state: TaskState) -> int:
        return sum(1 for r in self.records if r.state is state)

    def stats(self) -> Dict[str, int]:
        changed = sum(
            1 for r in self.records
            if r.state is TaskState.COMPLETED and r.result is not None and r.result.changed
        )
        return {
            "completed": self.count(TaskState.COMPLETED),
            "changed": changed,
            "skipped": self.count(TaskState.SKIPPED),
            "failed": self.count(TaskState.FAILED),
            "not_attempted": self.count(TaskState.NOT_ATTEMPTED),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        outcome: Dict[str, Any] = {
            "play": self.name,
            "group": self.group,
            "status": self.status,
            "stats": self.stats(),
            "tasks": [r.to_dict() for r in self.records],
            "facts": self.facts,
        }
        if self.error_kind:
            outcome["stopped_at"] = self.stopped_at
            outcome["error_kind"] = self.error_kind
            outcome["error"] = self.error
        return outcome


@dataclass
class RunReport:
    """Aggregated outcome of a whole run."""

    playbook_path: str
    outcomes: List[GroupOutcome] = field(default_factory=list)

    def add_outcome(self, outcome: GroupOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def success(self) -> bool:
        return all(o.passed for o in self.outcomes)

    @property
    def cancelled(self) -> bool:
        return any(o.cancelled for o in self.outcomes)

    @property
    def failed_groups(self) -> List[GroupOutcome]:
        return [o for o in self.outcomes if o.error_kind is not None]

    @property
    def first_error(self) -> Optional[GroupOutcome]:
        """The group whose fatal error happened earliest."""
        failed = self.failed_groups
        if not failed:
            return None
        return min(failed, key=lambda o: o.failed_at or 0.0)

    @property
    def exit_code(self) -> int:
        if self.failed_groups:
            return ExitCode.GROUP_FAILED
        if self.cancelled:
            return ExitCode.KEYBOARD_INTERRUPT
        return ExitCode.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        first = self.first_error
        return {
            "playbook": self.playbook_path,
            "success": self.success,
            "groups": [o.to_dict() for o in self.outcomes],
            "first_error": {
                "play": first.name,
                "group": first.group,
                "task_index": first.stopped_at,
                "error_kind": first.error_kind,
                "error": first.error,
            } if first else None,
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)
