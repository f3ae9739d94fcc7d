"""
Proviso lineinfile and blockinfile actions

Edit text files on the endpoint: the file is read, edited in memory and
written back only when the content actually changes.
"""

import re
from typing import List, Optional, Tuple

from proviso.actions.base import Action, normalize_mode, register_action, to_bool
from proviso.connections.base import shell_quote
from proviso.engine.results import Result


class TextFileAction(Action):
    """Shared read / write / attribute handling for text edits."""

    async def load(self, path: str) -> Tuple[Optional[str], Optional[Result]]:
        """Return the file's text, or an error Result."""
        if self.connection is None:
            return None, Result.failure(msg="No connection available")
        content = await self.connection.read_text(path)
        if content is None:
            if to_bool(self.get_arg("create", False)):
                return "", None
            return None, Result.failure(msg=f"File not found: {path}")
        return content, None

    async def save(self, path: str, content: str, changed: bool, msg: str) -> Result:
        try:
            mode = normalize_mode(self.get_arg("mode"))
        except ValueError:
            return Result.failure(msg=f"invalid mode {self.get_arg('mode')!r}")

        if changed:
            await self.connection.put_content(content, path, mode=mode)

        attributes = self.get_arg("attributes")
        if attributes:
            result = await self.execute(f"chattr {attributes} {shell_quote(path)}")
            if result.rc != 0:
                return self.from_run(result)

        return Result.success(changed=changed, msg=msg, payload={"path": path})


@register_action
class LineinfileAction(TextFileAction):
    """Ensure a particular line is in a file, or replace an existing line."""

    name = "lineinfile"
    required_args = ["path"]
    optional_args = {
        "line": None,
        "regexp": None,
        "state": "present",
        "create": False,
        "insertafter": "EOF",
        "insertbefore": None,
        "mode": None,
        "attributes": None,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state not in ("present", "absent"):
            return f"state must be present or absent, got {state!r}"
        if state == "present" and self.get_arg("line") is None:
            return "'line' is required when state=present"
        if state == "absent" and self.get_arg("line") is None and self.get_arg("regexp") is None:
            return "'line' or 'regexp' required when state=absent"
        return None

    async def run(self) -> Result:
        path = str(self.args["path"])
        content, error = await self.load(path)
        if error:
            return error

        lines = content.splitlines()
        line = self.get_arg("line")
        line = None if line is None else str(line)
        regexp = self.get_arg("regexp")

        if self.get_arg("state") == "present":
            changed = self._ensure_present(lines, line, regexp)
            msg = "Line added" if changed else "Line already present"
        else:
            changed = self._ensure_absent(lines, line, regexp)
            msg = "Line removed" if changed else "Line not present"

        new_content = "\n".join(lines)
        if lines:
            new_content += "\n"
        return await self.save(path, new_content, changed, msg)

    def _ensure_present(self, lines: List[str], line: str, regexp: Optional[str]) -> bool:
        if regexp:
            pattern = re.compile(regexp)
            matches = [i for i, existing in enumerate(lines) if pattern.search(existing)]
            if matches:
                # Last match wins
                index = matches[-1]
                if lines[index] == line:
                    return False
                lines[index] = line
                return True

        if line in lines:
            return False

        lines.insert(self._insert_position(lines), line)
        return True

    def _insert_position(self, lines: List[str]) -> int:
        insertbefore = self.get_arg("insertbefore")
        insertafter = self.get_arg("insertafter")

        if insertbefore == "BOF":
            return 0
        if insertbefore:
            pattern = re.compile(insertbefore)
            for i, existing in enumerate(lines):
                if pattern.search(existing):
                    return i
            return len(lines)
        if insertafter and insertafter != "EOF":
            pattern = re.compile(insertafter)
            position = None
            for i, existing in enumerate(lines):
                if pattern.search(existing):
                    position = i + 1
            if position is not None:
                return position
        return len(lines)

    def _ensure_absent(self, lines: List[str], line: Optional[str], regexp: Optional[str]) -> bool:
        if regexp:
            pattern = re.compile(regexp)
            kept = [existing for existing in lines if not pattern.search(existing)]
        else:
            kept = [existing for existing in lines if existing != line]

        if len(kept) == len(lines):
            return False
        lines[:] = kept
        return True


@register_action
class BlockinfileAction(TextFileAction):
    """Insert, update or remove a marker-delimited block of text."""

    name = "blockinfile"
    required_args = ["path"]
    optional_args = {
        "block": "",
        "marker": "# {mark} PROVISO MANAGED BLOCK",
        "marker_begin": "BEGIN",
        "marker_end": "END",
        "insertafter": "EOF",
        "insertbefore": None,
        "create": False,
        "state": "present",
        "mode": None,
        "attributes": None,
    }

    async def run(self) -> Result:
        path = str(self.args["path"])
        content, error = await self.load(path)
        if error:
            return error

        marker = str(self.get_arg("marker"))
        begin_marker = marker.replace("{mark}", str(self.get_arg("marker_begin")))
        end_marker = marker.replace("{mark}", str(self.get_arg("marker_end")))
        block = str(self.get_arg("block") or "")
        state = self.get_arg("state")

        lines = content.splitlines(keepends=True)
        begin_idx = end_idx = None
        for i, existing in enumerate(lines):
            stripped = existing.rstrip("\r\n")
            if stripped == begin_marker:
                begin_idx = i
            elif stripped == end_marker and begin_idx is not None:
                end_idx = i
                break

        new_block: List[str] = []
        if state == "present" and block:
            if not block.endswith("\n"):
                block += "\n"
            new_block = [begin_marker + "\n", block, end_marker + "\n"]

        if begin_idx is not None and end_idx is not None:
            lines = lines[:begin_idx] + new_block + lines[end_idx + 1:]
        elif new_block:
            if lines and not lines[-1].endswith("\n"):
                lines[-1] += "\n"
            lines = self._insert(lines, new_block)

        new_content = "".join(lines)
        changed = new_content != content
        return await self.save(path, new_content, changed, f"Block {'updated' if changed else 'unchanged'} in {path}")

    def _insert(self, lines: List[str], block: List[str]) -> List[str]:
        insertbefore = self.get_arg("insertbefore")
        insertafter = self.get_arg("insertafter")

        if insertbefore == "BOF":
            return block + lines
        if insertbefore:
            pattern = re.compile(insertbefore)
            for i, existing in enumerate(lines):
                if pattern.search(existing):
                    return lines[:i] + block + lines[i:]
        elif insertafter and insertafter != "EOF":
            pattern = re.compile(insertafter)
            position = None
            for i, existing in enumerate(lines):
                if pattern.search(existing):
                    position = i + 1
            if position is not None:
                return lines[:position] + block + lines[position:]
        return lines + block
