"""
Proviso console output

PLAY / TASK banners, colourised per-group status lines and the final
recap. Everything is suppressed in JSON mode; warnings and errors go to
stderr.
"""

import sys
from typing import Optional, TextIO

from proviso.engine.results import GroupOutcome, RunReport, TaskRecord, TaskState

COLORS = {
    'ok': '\033[32m',       # Green
    'changed': '\033[33m',  # Yellow
    'failed': '\033[31m',   # Red
    'skipped': '\033[36m',  # Cyan
    'ignored': '\033[35m',  # Magenta
}
RESET = '\033[0m'


class Display:
    """Console reporter shared by the runner and the group executors."""

    def __init__(self, json_output: bool = False, verbosity: int = 0,
                 out: Optional[TextIO] = None, err: Optional[TextIO] = None):
        self.json_output = json_output
        self.verbosity = verbosity
        self.out = out or sys.stdout
        self.err = err or sys.stderr

    def _print(self, msg: str) -> None:
        if not self.json_output:
            print(msg, file=self.out)

    def header(self, msg: str) -> None:
        self._print(msg)

    def play(self, name: str, group: str) -> None:
        self._print(f"\nPLAY [{name}] ({group}) " + "*" * 50)

    def task(self, group: str, index: int, name: str) -> None:
        self._print(f"\nTASK [{group} #{index}: {name}] " + "-" * 40)

    def task_result(self, group: str, record: TaskRecord, ignored: bool = False) -> None:
        """Print one task's status line for a group."""
        if record.state is TaskState.SKIPPED:
            status = 'skipped'
        elif record.state is TaskState.FAILED:
            status = 'failed'
        elif ignored:
            status = 'ignored'
        elif record.result is not None and record.result.changed:
            status = 'changed'
        else:
            status = 'ok'

        msg = None
        if record.error:
            msg = record.error
        elif record.result is not None and (status in ('failed', 'ignored') or self.verbosity > 0):
            msg = record.result.msg or None
        if record.attempts > 1:
            suffix = f"(attempts: {record.attempts})"
            msg = f"{msg} {suffix}" if msg else suffix

        color = COLORS.get(status, '')
        line = f"{color}{status}: [{group}]{RESET}"
        self._print(f"{line} => {msg}" if msg else line)

        if self.verbosity >= 2 and record.result is not None and record.result.raw_output:
            self._print(f"  output: {record.result.raw_output[:400]}")

    def warning(self, msg: str) -> None:
        if not self.json_output:
            print(f"\033[33m[WARNING]: {msg}{RESET}", file=self.err)

    def error(self, msg: str) -> None:
        if not self.json_output:
            print(f"\033[31m{msg}{RESET}", file=self.err)

    def recap(self, report: RunReport) -> None:
        """Print the per-group recap and the first fatal error."""
        if self.json_output:
            return

        print("\nPLAY RECAP " + "*" * 60, file=self.out)
        for outcome in report.outcomes:
            print(f"{self._label(outcome):40} : {self._stats_line(outcome)}", file=self.out)

        first = report.first_error
        if first is not None:
            print(
                f"\n\033[31mFirst error: [{first.group}] task #{first.stopped_at} "
                f"{first.error_kind}: {first.error}{RESET}",
                file=self.err,
            )

    def _label(self, outcome: GroupOutcome) -> str:
        return f"{outcome.group} ({outcome.status})"

    def _stats_line(self, outcome: GroupOutcome) -> str:
        stats = outcome.stats()
        parts = [
            f"{COLORS['ok']}completed={stats['completed']}{RESET}",
            f"{COLORS['changed']}changed={stats['changed']}{RESET}",
            f"{COLORS['skipped']}skipped={stats['skipped']}{RESET}",
            f"{COLORS['failed']}failed={stats['failed']}{RESET}",
            f"not_attempted={stats['not_attempted']}",
        ]
        if outcome.error_kind:
            parts.append(f"stopped_at={outcome.stopped_at} ({outcome.error_kind})")
        return "  ".join(parts)
