"""
Proviso Retry/Backoff Controller

Bounded, fixed-delay retries around a single action invocation. The
controller only sees attempts and outcomes; why an attempt failed is the
action's business.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from proviso.engine.conditions import Condition, evaluate
from proviso.engine.errors import EVALUATION_ERRORS
from proviso.engine.facts import FactStore
from proviso.engine.results import Result, ResultStatus

logger = logging.getLogger(__name__)

Action = Callable[[Dict[str, Any]], Awaitable[Result]]
SuccessPredicate = Callable[[Result], bool]
Sleep = Callable[[float], Awaitable[None]]


def succeeded(result: Result) -> bool:
    """Default predicate: the Result reports success."""
    return result.succeeded


def rc_at_most(threshold: int) -> SuccessPredicate:
    """Predicate: the payload's exit status is at most ``threshold``."""
    def predicate(result: Result) -> bool:
        rc = result.payload.get('rc') if isinstance(result.payload, dict) else None
        return isinstance(rc, int) and not isinstance(rc, bool) and rc <= threshold
    return predicate


def until_condition(condition: Condition, facts: FactStore, bind_as: Optional[str]) -> SuccessPredicate:
    """
    Predicate from an ``until`` expression.

    The attempt's Result is visible as ``result`` and, when the task
    registers, under its register name too.
    """
    def predicate(result: Result) -> bool:
        fact = result.to_fact()
        bindings = {'result': fact}
        if bind_as:
            bindings[bind_as] = fact
        return evaluate(condition, facts.with_bindings(bindings))
    return predicate


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait between tries, what counts as done."""

    max_attempts: int = 1
    delay: float = 0.0
    success_predicate: SuccessPredicate = field(default=succeeded, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive, got {self.max_attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must not be negative, got {self.delay}")


SINGLE_ATTEMPT = RetryPolicy()


class RetryController:
    """
    Wraps action invocation with bounded retry.

    Args:
        sleep: Awaitable used for the delay between attempts
        cancel_event: Run-level cancellation; set during a delay it stops
            further attempts and the last Result is returned as failure
    """

    def __init__(
        self,
        sleep: Optional[Sleep] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._sleep = sleep
        self.cancel_event = cancel_event

    async def invoke_with_retry(
        self,
        action: Action,
        params: Dict[str, Any],
        policy: Optional[RetryPolicy] = None,
    ) -> Result:
        """
        Invoke ``action`` until the policy's predicate holds or attempts run out.

        Returns:
            The first accepted Result, or the last Result forced to failure
            once attempts are exhausted. ``Result.attempts`` carries the count.
        """
        policy = policy or SINGLE_ATTEMPT
        attempts = 0

        while True:
            result = await self._attempt(action, params)
            attempts += 1
            result.attempts = attempts

            if policy.success_predicate(result):
                return result

            if attempts >= policy.max_attempts:
                break

            logger.info(
                "attempt %d/%d did not succeed, retrying in %ss",
                attempts, policy.max_attempts, policy.delay,
            )
            if not await self._wait(policy.delay):
                logger.info("retry abandoned: run cancelled")
                break

        if result.failed:
            return result
        return result.with_status(ResultStatus.FAILURE)

    async def _attempt(self, action: Action, params: Dict[str, Any]) -> Result:
        try:
            return await action(dict(params))
        except (asyncio.CancelledError, *EVALUATION_ERRORS):
            raise
        except Exception as e:
            logger.debug("action raised", exc_info=True)
            return Result.failure(msg=f"{type(e).__name__}: {e}")

    async def _wait(self, delay: float) -> bool:
        """Sleep between attempts; False when cancelled meanwhile."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            return False
        if self._sleep is not None:
            await self._sleep(delay)
            return not (self.cancel_event is not None and self.cancel_event.is_set())
        if self.cancel_event is None:
            await asyncio.sleep(delay)
            return True
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False
