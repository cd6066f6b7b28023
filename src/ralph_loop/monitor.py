"""Live progress indicator for a running engine.

A separate process tails the engine's capture file, guesses what the agent
is doing from keywords in the most recent output, and redraws a one-line
spinner. It is cosmetic: read errors are ignored and it never raises into
the run.
"""

from __future__ import annotations

import ctypes
import logging
import multiprocessing
import re
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .console import paint, supports_color

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 0.12
TAIL_BYTES = 5000
LABEL_WIDTH = 40
SPINNER = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

THINKING = "Thinking"

# Checked in order; the first hit wins.
PHASE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Committing", re.compile(r'git commit|"command":\s*"git commit')),
    ("Staging", re.compile(r'git add|"command":\s*"git add')),
    ("Linting", re.compile(r"lint|eslint|biome|prettier|ruff")),
    ("Testing", re.compile(r"vitest|jest|bun test|npm test|pytest|go test")),
    ("Writing tests", re.compile(r"\.test\.|\.spec\.|__tests__|_test\.go|/tests?/test_")),
    ("Implementing", re.compile(r'"(?:tool|name)":\s*"(?:write|edit|multiedit)"', re.IGNORECASE)),
    ("Reading code", re.compile(r'"(?:tool|name)":\s*"(?:read|glob|grep)"', re.IGNORECASE)),
)

PHASES: tuple[str, ...] = (THINKING,) + tuple(name for name, _ in PHASE_RULES)

PHASE_COLORS = {
    THINKING: "cyan",
    "Reading code": "cyan",
    "Implementing": "magenta",
    "Writing tests": "magenta",
    "Testing": "yellow",
    "Linting": "yellow",
    "Staging": "green",
    "Committing": "green",
}


def classify_phase(content: str, current: str = THINKING) -> str:
    """Map recent agent output to a phase name; keep ``current`` when nothing matches."""
    if not content:
        return current
    for phase, pattern in PHASE_RULES:
        if pattern.search(content):
            return phase
    return current


def read_tail(path: Path, limit: int = TAIL_BYTES) -> str | None:
    try:
        with open(path, "rb") as handle:
            handle.seek(0, 2)
            size = handle.tell()
            handle.seek(max(0, size - limit))
            data = handle.read()
    except OSError:
        return None
    return data.decode("utf-8", errors="replace")


def render_status_line(spinner: str, phase: str, label: str, elapsed_sec: float, color: bool = False) -> str:
    mins, secs = divmod(int(elapsed_sec), 60)
    step = paint(f"{phase:<16}", PHASE_COLORS.get(phase, "blue"), color)
    stamp = paint(f"[{mins:02d}:{secs:02d}]", "dim", color)
    return f"  {spinner} {step} │ {label[:LABEL_WIDTH]} {stamp}"


def clear_line(stream: Any = None) -> None:
    stream = stream or sys.stdout
    try:
        stream.write("\r\033[K")
        stream.flush()
    except (OSError, ValueError):
        pass


def _poll_loop(
    output_file: str,
    label: str,
    stop_event: Any,
    phase_index: Any,
    interval: float,
    render: bool,
    color: bool,
) -> None:
    # The operator's Ctrl-C belongs to the orchestrator, which stops us.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    # A forked child inherits the parent's cleanup handlers; stop() must be able to terminate it.
    for signum in (signal.SIGTERM, getattr(signal, "SIGHUP", None)):
        if signum is not None:
            signal.signal(signum, signal.SIG_DFL)
    path = Path(output_file)
    started = time.monotonic()
    phase = THINKING
    spin_idx = 0
    while not stop_event.is_set():
        try:
            content = read_tail(path)
            if content:
                phase = classify_phase(content, phase)
                phase_index.value = PHASES.index(phase)
            if render:
                line = render_status_line(SPINNER[spin_idx], phase, label, time.monotonic() - started, color)
                sys.stdout.write("\r\033[K" + line)
                sys.stdout.flush()
        except Exception:  # noqa: BLE001
            pass
        spin_idx = (spin_idx + 1) % len(SPINNER)
        stop_event.wait(interval)


@dataclass
class MonitorHandle:
    process: Any
    stop_event: Any
    phase_index: Any
    render: bool

    @property
    def alive(self) -> bool:
        return bool(self.process is not None and self.process.is_alive())

    @property
    def phase(self) -> str:
        try:
            return PHASES[self.phase_index.value]
        except (IndexError, ValueError):
            return THINKING


class ProgressMonitor:
    """Starts and stops the background poller process."""

    def __init__(self, interval: float = POLL_INTERVAL_SEC, render: bool | None = None) -> None:
        self.interval = interval
        self.render = sys.stdout.isatty() if render is None else render
        self._ctx = multiprocessing.get_context()

    def start(self, output_file: Path, task_label: str) -> MonitorHandle:
        stop_event = self._ctx.Event()
        phase_index = self._ctx.Value(ctypes.c_int, 0)
        process = self._ctx.Process(
            target=_poll_loop,
            args=(
                str(output_file),
                task_label[:LABEL_WIDTH],
                stop_event,
                phase_index,
                self.interval,
                self.render,
                self.render and supports_color(sys.stdout),
            ),
            name="ralph-progress-monitor",
            daemon=True,
        )
        process.start()
        logger.debug("Progress monitor started (pid=%s) on %s", process.pid, output_file)
        return MonitorHandle(process=process, stop_event=stop_event, phase_index=phase_index, render=self.render)

    def stop(self, handle: MonitorHandle | None, timeout: float = 2.0) -> None:
        if handle is None or handle.process is None:
            return
        handle.stop_event.set()
        handle.process.join(timeout)
        if handle.process.is_alive():
            handle.process.terminate()
            handle.process.join(timeout)
        if handle.render:
            clear_line()
        logger.debug("Progress monitor stopped in phase %s", handle.phase)

