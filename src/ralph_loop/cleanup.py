"""Scoped cleanup for a whole run: child processes, temp files, worktrees.

``CleanupHandler`` is a context manager wrapped around the orchestrator.
Terminal signals are turned into ``RunInterrupted`` so that ``__exit__``
runs on every path before the process exits.
"""

from __future__ import annotations

import logging
import shutil
import signal
import threading
from pathlib import Path
from typing import Any

from .errors import RunInterrupted
from .gitops import run_git, merged_output, is_dirty

logger = logging.getLogger(__name__)

INTERRUPT_EXIT_CODE = 130
WORKTREE_PREFIX = "agent-"


def _handled_signals() -> list[int]:
    names = ("SIGINT", "SIGTERM", "SIGHUP")
    return [getattr(signal, name) for name in names if hasattr(signal, name)]


def reconcile_worktrees(repo: Path, base: Path) -> tuple[list[Path], list[Path]]:
    """Remove clean ``agent-*`` worktrees under ``base``; keep dirty ones.

    Returns ``(removed, preserved)``. ``base`` itself is deleted only when
    nothing was preserved.
    """
    removed: list[Path] = []
    preserved: list[Path] = []
    if not base.is_dir():
        return removed, preserved
    for worktree in sorted(base.glob(f"{WORKTREE_PREFIX}*")):
        if not worktree.is_dir():
            continue
        if is_dirty(worktree):
            logger.warning("Preserving dirty worktree: %s", worktree)
            preserved.append(worktree)
            continue
        cp = run_git(repo, "worktree", "remove", str(worktree))
        if cp.returncode != 0:
            logger.warning("Unable to remove worktree %s: %s", worktree, merged_output(cp))
            preserved.append(worktree)
            continue
        removed.append(worktree)
    if preserved:
        logger.warning("Preserving worktree base with dirty agents: %s", base)
    else:
        shutil.rmtree(base, ignore_errors=True)
    return removed, preserved


class CleanupHandler:
    """Owns every resource the run creates and releases them on exit."""

    def __init__(self, repo: Path, session: Any = None, worktree_base: Path | None = None) -> None:
        self.repo = Path(repo)
        self.session = session
        self.worktree_base = worktree_base
        self.interrupted: RunInterrupted | None = None
        self._processes: list[Any] = []
        self._monitors: list[tuple[Any, Any]] = []
        self._files: list[Path] = []
        self._previous_handlers: dict[int, Any] = {}

    def __enter__(self) -> "CleanupHandler":
        self.install_signal_handlers()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        interrupted = isinstance(exc, (RunInterrupted, KeyboardInterrupt))
        try:
            self.cleanup(interrupted=interrupted)
        finally:
            self.restore_signal_handlers()
        return False

    def _on_signal(self, signum: int, frame: Any) -> None:
        self.interrupted = RunInterrupted(signum)
        raise self.interrupted

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in _handled_signals():
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._on_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def track_process(self, process: Any) -> None:
        self._processes.append(process)

    def release_process(self, process: Any) -> None:
        if process in self._processes:
            self._processes.remove(process)

    def track_monitor(self, monitor: Any, handle: Any) -> None:
        self._monitors.append((monitor, handle))

    def release_monitor(self, handle: Any) -> None:
        self._monitors = [(m, h) for m, h in self._monitors if h is not handle]

    def track_file(self, path: Path) -> None:
        self._files.append(Path(path))

    def remove_file(self, path: Path) -> None:
        path = Path(path)
        path.unlink(missing_ok=True)
        if path in self._files:
            self._files.remove(path)

    def cleanup(self, interrupted: bool = False) -> None:
        for monitor, handle in list(self._monitors):
            try:
                monitor.stop(handle)
            except Exception as err:  # noqa: BLE001
                logger.debug("Monitor stop failed during cleanup: %s", err)
        self._monitors.clear()

        for process in list(self._processes):
            try:
                process.terminate()
            except Exception as err:  # noqa: BLE001
                logger.debug("Process terminate failed during cleanup: %s", err)
        self._processes.clear()

        for path in list(self._files):
            try:
                path.unlink(missing_ok=True)
            except OSError as err:
                logger.debug("Could not remove %s: %s", path, err)
        self._files.clear()

        if self.worktree_base is not None:
            reconcile_worktrees(self.repo, self.worktree_base)

        if interrupted:
            print("", flush=True)
            logger.warning("Interrupted! Cleaned up.")
            branches = list(getattr(self.session, "branches", []) or [])
            if branches:
                logger.info("Branches created: %s", " ".join(branches))
