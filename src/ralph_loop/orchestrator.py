"""Top-level control loop: one backlog task per iteration until done or capped.

Per task the attempt walks ``IDLE -> (BRANCH_CREATED) -> PROMPTING ->
DRAINING -> PARSED`` and ends in ``SUCCESS``, ``EMPTY_OUTPUT`` or
``ENGINE_ERROR``. The two failure states are retried by the
``RetryController``; when the budget runs out the task is left pending and
the loop moves on.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from .accounting import RunSession, SummaryReport, render_summary
from .cleanup import CleanupHandler
from .config import RunConfig
from .engines import EngineAdapter, NormalizedResult, get_engine, iter_events
from .errors import EmptyOutput, EngineError, RetryExhausted
from .gitops import BranchManager
from .ledger import BacklogLedger, ProgressLog, Task
from .monitor import LABEL_WIDTH, ProgressMonitor
from .retry import RetryController

logger = logging.getLogger(__name__)

COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"
RULE = "-" * 44


class AttemptState(Enum):
    IDLE = "idle"
    BRANCH_CREATED = "branch_created"
    PROMPTING = "prompting"
    DRAINING = "draining"
    PARSED = "parsed"
    SUCCESS = "success"
    EMPTY_OUTPUT = "empty_output"
    ENGINE_ERROR = "engine_error"


class TaskOutcome(Enum):
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ALL_DONE = "all_done"
    NO_TASKS = "no_tasks"
    DRY_RUN = "dry_run"


@dataclass
class Attempt:
    task: Task
    engine: EngineAdapter
    prompt: str
    capture_path: Path
    retries: int = 0
    state: AttemptState = AttemptState.IDLE
    raw: str = ""


def build_prompt(config: RunConfig, task: Task | None = None) -> str:
    """Instruction prompt for one iteration; file references use ``@path``.

    With a ``task`` the agent is pinned to that backlog line, which is the
    line the orchestrator ticks on success.
    """
    rel = Path(config.plans_dir) / config.feature
    refs = [f"@{(rel / 'breakdown.md').as_posix()}", f"@{(rel / 'progress.txt').as_posix()}"]
    if config.design_file.exists():
        refs.append(f"@{(rel / 'design.md').as_posix()}")

    if task is not None:
        steps = [f"Implement this task from the breakdown, and only this task: {task.text}"]
    else:
        steps = ["Find the highest-priority incomplete task and implement it."]
    if not config.skip_tests:
        steps.append("Write tests for the feature.")
        steps.append("Run tests and ensure they pass before proceeding.")
    if not config.skip_lint:
        steps.append("Run linting and ensure it passes before proceeding.")
    steps.append("Update the breakdown to mark the task as complete (change '- [ ]' to '- [x]').")
    steps.append("Append your progress to progress.txt.")
    steps.append("Commit your changes with a descriptive message.")

    rules = "ONLY WORK ON A SINGLE TASK."
    if not config.skip_tests:
        rules += " Do not proceed if tests fail."
    if not config.skip_lint:
        rules += " Do not proceed if linting fails."

    lines = [" ".join(refs), ""]
    lines.extend(f"{idx}. {step}" for idx, step in enumerate(steps, start=1))
    lines.append(rules)
    lines.append(f"If ALL tasks in the breakdown are complete, output {COMPLETION_SENTINEL}.")
    return "\n".join(lines)


class Orchestrator:
    """Sequences ledger, engine, monitor, retries, git and accounting."""

    def __init__(
        self,
        config: RunConfig,
        *,
        engine: EngineAdapter | None = None,
        ledger: BacklogLedger | None = None,
        progress_log: ProgressLog | None = None,
        branches: BranchManager | None = None,
        monitor: ProgressMonitor | None = None,
        cleanup: CleanupHandler | None = None,
        session: RunSession | None = None,
        sleep: Callable[[float], None] = time.sleep,
        capture_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.engine = engine or get_engine(config.engine, config.engine_command)
        self.ledger = ledger or BacklogLedger(config.breakdown_file)
        self.progress_log = progress_log or ProgressLog(config.progress_file)
        self.branches = branches or BranchManager(
            config.workdir,
            enabled=config.branch_per_task,
            base_branch=config.base_branch,
            create_pr=config.create_pr,
            draft_pr=config.draft_pr,
        )
        if monitor is None and config.show_progress:
            monitor = ProgressMonitor()
        self.monitor = monitor
        self.session = session or RunSession(engine=self.engine.name, accounting_mode=self.engine.cost_mode)
        self.cleanup = cleanup or CleanupHandler(config.workdir, session=self.session)
        if self.cleanup.session is None:
            self.cleanup.session = self.session
        self.sleep = sleep
        self.capture_dir = capture_dir
        self.retry = RetryController(config.max_retries, config.retry_delay, sleep=sleep)
        self.report: SummaryReport | None = None

    @property
    def max_iterations(self) -> int:
        if self.config.dry_run and self.config.max_iterations == 0:
            return 1
        return self.config.max_iterations

    def print_banner(self) -> None:
        print("=" * 44, flush=True)
        print("Ralph Loop - Running until breakdown is complete", flush=True)
        print(f"Engine: {self.engine.display_name}", flush=True)
        print(f"Feature: {self.config.feature}", flush=True)
        modes = self.config.modes()
        if self.config.dry_run and self.config.max_iterations == 0:
            modes.append(f"max:{self.max_iterations}")
        if modes:
            print(f"Mode: {' '.join(modes)}", flush=True)
        print("=" * 44, flush=True)

    def run(self) -> int:
        """Loop until the backlog is empty or the iteration cap is hit; returns 0."""
        self.print_banner()
        if self.config.parallel:
            logger.warning("Parallel execution not yet implemented, running sequentially")

        while True:
            self.session.iteration += 1
            outcome = self.run_single_task()

            if outcome is TaskOutcome.ABANDONED:
                logger.warning("Task failed after %d attempts, continuing...", self.config.max_retries)
            elif outcome in {TaskOutcome.NO_TASKS, TaskOutcome.ALL_DONE}:
                reason = "no pending tasks" if outcome is TaskOutcome.NO_TASKS else "all tasks complete"
                return self.finish(reason)

            if self.max_iterations > 0 and self.session.iteration >= self.max_iterations:
                logger.warning("Reached max iterations (%d)", self.max_iterations)
                return self.finish("max iterations reached")

            self.sleep(self.config.iteration_pause_sec)

    def finish(self, stop_reason: str) -> int:
        self.report = self.session.summary(
            pending=self.ledger.count_pending(),
            done=self.ledger.count_done(),
            stop_reason=stop_reason,
        )
        print(render_summary(self.report), flush=True)
        return 0

    def _select_task(self) -> Task | None:
        task = self.ledger.next_pending_task(exclude=self.session.abandoned)
        if task is None and self.session.abandoned:
            if self.ledger.count_pending() > 0:
                logger.info("Every remaining task was abandoned this pass; starting a new pass")
            self.session.abandoned.clear()
            task = self.ledger.next_pending_task()
        return task

    def run_single_task(self) -> TaskOutcome:
        completed = self.ledger.count_done()
        remaining = self.ledger.count_pending()
        print("", flush=True)
        print(f">>> Task {self.session.iteration}", flush=True)
        print(f"    Completed: {completed} | Remaining: {remaining}", flush=True)
        print(RULE, flush=True)

        task = self._select_task()
        if task is None:
            logger.info("No more tasks found")
            return TaskOutcome.NO_TASKS

        prompt = build_prompt(self.config, task)
        if self.config.dry_run:
            logger.info("DRY RUN - Would execute:")
            print(prompt, flush=True)
            return TaskOutcome.DRY_RUN

        branch = ""
        state = AttemptState.IDLE
        if self.config.branch_per_task:
            branch = self.branches.create_task_branch(task.text)
            self.session.add_branch(branch)
            state = AttemptState.BRANCH_CREATED
            logger.info("Working on branch: %s", branch)

        attempt = Attempt(task=task, engine=self.engine, prompt=prompt, capture_path=self._new_capture(), state=state)
        try:
            outcome = self.retry.attempt(lambda number: self._run_attempt(attempt, number))
        except RetryExhausted as exhausted:
            self.session.tasks_failed += 1
            self.session.abandoned.add(task.text)
            self.progress_log.append("abandoned", task, str(exhausted.last_error or exhausted))
            self.branches.return_to_base()
            return TaskOutcome.ABANDONED
        finally:
            self._discard_capture(attempt.capture_path)

        result = outcome.value
        print(f"  ✓ {'Done':<16} │ {task.label(LABEL_WIDTH)}", flush=True)
        if result.response:
            print("", flush=True)
            print(result.response, flush=True)

        self.session.record(result)
        self.session.tasks_completed += 1
        self.ledger.mark_done(task)
        self.progress_log.append("done", task)

        if self.config.create_pr and branch:
            url = self.branches.create_pull_request(branch, task.text)
            if url:
                self.session.pull_requests.append(url)
        self.branches.return_to_base()

        remaining = self.ledger.count_pending()
        if remaining == 0:
            return TaskOutcome.ALL_DONE
        if COMPLETION_SENTINEL in attempt.raw:
            logger.debug("AI claimed completion but %d tasks remain, continuing...", remaining)
        return TaskOutcome.COMPLETED

    def _run_attempt(self, attempt: Attempt, number: int) -> NormalizedResult:
        attempt.retries = number - 1
        attempt.state = AttemptState.PROMPTING
        self.session.attempts += 1
        process = attempt.engine.launch(attempt.prompt, attempt.capture_path, cwd=self.config.workdir)
        self.cleanup.track_process(process)
        for artifact in process.artifacts:
            self.cleanup.track_file(artifact)
        handle = None
        if self.monitor is not None:
            handle = self.monitor.start(attempt.capture_path, attempt.task.label(LABEL_WIDTH))
            self.cleanup.track_monitor(self.monitor, handle)

        attempt.state = AttemptState.DRAINING
        # On interrupt the process stays tracked so the cleanup handler kills it.
        try:
            returncode = process.wait(timeout=self.config.attempt_timeout_sec)
        except subprocess.TimeoutExpired:
            process.terminate()
            self.cleanup.release_process(process)
            attempt.state = AttemptState.ENGINE_ERROR
            raise EngineError(f"attempt timed out after {self.config.attempt_timeout_sec}s")
        finally:
            if handle is not None:
                self.monitor.stop(handle)
                self.cleanup.release_monitor(handle)
        self.cleanup.release_process(process)
        logger.debug("Engine exited with code %s", returncode)

        attempt.raw = process.read_capture()
        attempt.state = AttemptState.PARSED
        if not attempt.raw.strip():
            attempt.state = AttemptState.EMPTY_OUTPUT
            raise EmptyOutput()
        message = attempt.engine.detect_error(attempt.raw)
        if message:
            attempt.state = AttemptState.ENGINE_ERROR
            raise EngineError(message)
        if next(iter_events(attempt.raw), None) is None:
            attempt.state = AttemptState.EMPTY_OUTPUT
            first_line = attempt.raw.strip().splitlines()[0][:120]
            raise EmptyOutput(f"No parseable output: {first_line}")
        result = attempt.engine.normalize(attempt.raw, attempt.capture_path)
        attempt.state = AttemptState.SUCCESS
        return result

    def _new_capture(self) -> Path:
        fd, raw_path = tempfile.mkstemp(prefix="ralph-", suffix=".jsonl", dir=self.capture_dir)
        os.close(fd)
        path = Path(raw_path)
        self.cleanup.track_file(path)
        return path

    def _discard_capture(self, capture_path: Path) -> None:
        self.cleanup.remove_file(capture_path)
        for sidecar in self.engine.sidecar_paths(capture_path):
            self.cleanup.remove_file(sidecar)
