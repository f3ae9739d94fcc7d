# Copyright (c) 2024 Proviso Contributors
# MIT License

"""
Proviso Error Classes.

All custom exceptions for clear error handling and exit codes.
Load-time errors abort a run before anything is dispatched; run-time
errors are scoped to the host group that raised them.
"""

from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Process exit codes reported by the CLI."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    GROUP_FAILED = 2
    LOAD_ERROR = 3
    KEYBOARD_INTERRUPT = 130


class ProvisoError(Exception):
    """Base exception for all Proviso errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message

    @property
    def kind(self) -> str:
        """Short error kind used in run reports."""
        return type(self).__name__


class ParseError(ProvisoError):
    """Error parsing inventory, playbook, or other input files."""

    exit_code: int = ExitCode.LOAD_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        location = f" in {file_path}" if file_path else ""
        super().__init__(f"Parse error{location}: {message}", details)


class InventoryError(ParseError):
    """Error in inventory file or host resolution."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class MalformedTaskError(ParseError):
    """A task definition cannot be turned into an executable Task."""

    def __init__(
        self,
        message: str,
        task_index: int | None = None,
        task_name: str | None = None,
        file_path: str | None = None,
    ) -> None:
        self.reason = message
        self.task_index = task_index
        self.task_name = task_name
        location = ""
        if task_index is not None:
            location = f"task #{task_index}"
            if task_name:
                location += f" ({task_name})"
            location += ": "
        super().__init__(f"malformed {location}{message}", file_path=file_path)


class ConditionSyntaxError(ParseError):
    """A guard or predicate expression uses syntax the evaluator rejects."""

    def __init__(self, message: str, expression: str) -> None:
        self.expression = expression
        super().__init__(f"invalid condition {expression!r}: {message}")


class UnknownGroupError(ProvisoError):
    """A play targets a host group with no members."""

    exit_code: int = ExitCode.LOAD_ERROR

    def __init__(self, group: str) -> None:
        self.group = group
        super().__init__(f"Host group '{group}' has no members")


class ConnectionError(ProvisoError):
    """Error connecting to a remote host."""

    exit_code: int = ExitCode.GROUP_FAILED

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        details: str | None = None,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        conn_info = f" ({connection_type})" if connection_type else ""
        super().__init__(f"Connection to {host}{conn_info} failed: {message}", details)


class UnreachableHostError(ProvisoError):
    """An endpoint could not be reached within the probe bounds."""

    exit_code: int = ExitCode.GROUP_FAILED

    def __init__(self, host: str, attempts: int, last_error: str | None = None) -> None:
        self.host = host
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Host {host} unreachable after {attempts} probe attempt(s)",
            last_error,
        )


class UnresolvedFactError(ProvisoError):
    """A condition or parameter referenced a fact that is not in the store."""

    exit_code: int = ExitCode.GROUP_FAILED

    def __init__(self, fact: str, details: str | None = None) -> None:
        self.fact = fact
        super().__init__(f"Unresolved fact: '{fact}'", details)


class ConditionTypeError(ProvisoError):
    """A condition operand has a kind the operation does not accept."""

    exit_code: int = ExitCode.GROUP_FAILED

    def __init__(self, message: str, expression: str | None = None) -> None:
        self.expression = expression
        details = f"Expression: {expression}" if expression else None
        super().__init__(f"Condition type error: {message}", details)


class TemplateError(ProvisoError):
    """Error rendering a Jinja2 template in task parameters."""

    exit_code: int = ExitCode.GROUP_FAILED

    def __init__(
        self,
        message: str,
        template: str | None = None,
    ) -> None:
        self.template = template

        details = None
        if template:
            # Truncate long templates
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"Template error: {message}", details)


class ActionFailedError(ProvisoError):
    """An action's final Result was a failure and the task does not ignore it."""

    exit_code: int = ExitCode.GROUP_FAILED

    def __init__(self, action: str, message: str, attempts: int = 1) -> None:
        self.action = action
        self.attempts = attempts
        suffix = f" after {attempts} attempts" if attempts > 1 else ""
        super().__init__(f"Action '{action}' failed{suffix}: {message}")


class CancelledRunError(ProvisoError):
    """The run was cancelled before this group finished."""

    exit_code: int = ExitCode.KEYBOARD_INTERRUPT

    def __init__(self) -> None:
        super().__init__("Run cancelled")


class UnexpectedError(ProvisoError):
    """A non-proviso exception escaped while running a group."""

    exit_code: int = ExitCode.GROUP_FAILED

    def __init__(self, error: BaseException) -> None:
        self.error = error
        super().__init__(f"{type(error).__name__}: {error}")


# Errors raised while evaluating guards, predicates or parameters. They are
# fatal to the group and never count as a failed action attempt.
EVALUATION_ERRORS = (UnresolvedFactError, ConditionTypeError, TemplateError)
