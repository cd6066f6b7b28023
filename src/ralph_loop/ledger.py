"""Backlog ledger: checkbox task lines in a markdown breakdown file.

A pending task is a line starting with ``- [ ] ``; a done task starts with
``- [x] ``. The task's identity is the rest of the line, verbatim.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import LedgerError

logger = logging.getLogger(__name__)

DONE_MARKER = "- [x] "
DISPLAY_WIDTH = 50

PENDING_RE = re.compile(r"^- \[ \] (?P<text>.*?)[ \t]*\r?$", re.MULTILINE)
DONE_RE = re.compile(r"^- \[[xX]\] (?P<text>.*?)[ \t]*\r?$", re.MULTILINE)


@dataclass(frozen=True)
class Task:
    text: str
    line_number: int = 0

    def label(self, width: int = DISPLAY_WIDTH) -> str:
        return self.text[:width]

    def __str__(self) -> str:
        return self.text


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def task_line_pattern(task_text: str) -> re.Pattern[str]:
    """Anchored pattern for the pending line holding exactly ``task_text``.

    The task text is escaped first; backlog lines routinely contain
    brackets, parentheses and dots.
    """
    return re.compile(r"^- \[ \] " + re.escape(task_text) + r"(?P<tail>[ \t]*\r?)$", re.MULTILINE)


class BacklogLedger:
    """Read and mutate the checkbox backlog file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read(self) -> str:
        try:
            # newline="" keeps CRLF backlogs byte-identical on rewrite.
            with self.path.open("r", encoding="utf-8", newline="") as handle:
                return handle.read()
        except OSError as err:
            raise LedgerError(f"Unable to read backlog {self.path}: {err}") from err

    def pending_tasks(self) -> list[Task]:
        text = self._read()
        tasks: list[Task] = []
        for match in PENDING_RE.finditer(text):
            body = match.group("text")
            if not body.strip():
                continue
            line_number = text.count("\n", 0, match.start()) + 1
            tasks.append(Task(text=body, line_number=line_number))
        return tasks

    def next_pending_task(self, exclude: Iterable[str] = ()) -> Task | None:
        skipped = set(exclude)
        for task in self.pending_tasks():
            if task.text not in skipped:
                return task
        return None

    def count_pending(self) -> int:
        return len(self.pending_tasks())

    def count_done(self) -> int:
        return sum(1 for match in DONE_RE.finditer(self._read()) if match.group("text").strip())

    def mark_done(self, task: Task | str) -> bool:
        """Flip the first pending line matching ``task`` to done.

        Returns False when no pending line matches, which is the case when
        the agent already ticked the box itself.
        """
        task_text = task.text if isinstance(task, Task) else str(task)
        text = self._read()
        pattern = task_line_pattern(task_text)
        updated, count = pattern.subn(lambda m: DONE_MARKER + task_text + m.group("tail"), text, count=1)
        if count == 0:
            logger.debug("No pending line for task %r; nothing to mark", task_text)
            return False
        try:
            _write_text_atomic(self.path, updated)
        except OSError as err:
            raise LedgerError(f"Unable to rewrite backlog {self.path}: {err}") from err
        return True


class ProgressLog:
    """Append-only progress notes kept next to the backlog."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def ensure(self, feature: str) -> bool:
        if self.path.exists():
            return False
        logger.warning("progress.txt not found, creating it...")
        header = f"# Ralph Progress for {feature}\n\nStarted: {dt.datetime.now().strftime('%c')}\n\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(header, encoding="utf-8")
        except OSError as err:
            raise LedgerError(f"Unable to create progress log {self.path}: {err}") from err
        return True

    def append(self, status: str, task: Task | str, detail: str = "") -> None:
        text = task.text if isinstance(task, Task) else str(task)
        stamp = dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()
        line = f"- {stamp} [{status}] {text}"
        if detail:
            line = f"{line} :: {detail}"
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as err:
            raise LedgerError(f"Unable to append to progress log {self.path}: {err}") from err
