"""Engine adapters for the external coding-agent CLIs.

Each backend is launched as a detached subprocess whose stdout/stderr go
to a capture file. The capture is a line-delimited JSON event stream whose
shape differs per backend; every adapter reduces it to one
``NormalizedResult``.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import IO, Any, Iterator

from .errors import EngineError, PreflightError

logger = logging.getLogger(__name__)

COST_MODE = "cost"
DURATION_MODE = "duration"

NON_INTERACTIVE_ENV_OVERRIDES = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_PAGER": "cat",
    "PIP_NO_INPUT": "1",
    "PYTHONUNBUFFERED": "1",
    "DEBIAN_FRONTEND": "noninteractive",
}


@dataclass
class NormalizedResult:
    response: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Decimal = Decimal("0")
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def build_subprocess_env(extra_env: dict[str, str] | None = None) -> dict[str, str]:
    env = os.environ.copy()
    env.update(NON_INTERACTIVE_ENV_OVERRIDES)
    if extra_env:
        env.update(extra_env)
    return env


def safe_token_count(value: Any) -> int:
    """Non-negative integer or 0; never lets a non-numeric value through."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if value >= 0 else 0
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def safe_cost(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not amount.is_finite() or amount < 0:
        return Decimal("0")
    return amount


def iter_events(raw: str) -> Iterator[dict[str, Any]]:
    """Yield every line of ``raw`` that parses as a JSON object."""
    for line in raw.splitlines():
        text = line.strip()
        if not text.startswith("{"):
            continue
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            yield payload


def events_of_type(raw: str, event_type: str) -> list[dict[str, Any]]:
    return [event for event in iter_events(raw) if event.get("type") == event_type]


def _dig(payload: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


def _error_message(event: dict[str, Any]) -> str:
    for candidate in (_dig(event, "error", "message"), event.get("message"), event.get("error")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return json.dumps(event, sort_keys=True)


@dataclass
class EngineProcess:
    """Handle on one running engine subprocess and its capture file."""

    engine: str
    process: subprocess.Popen
    capture_path: Path
    capture_handle: IO[str] | None
    artifacts: list[Path] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> int | None:
        return self.process.poll()

    def wait(self, timeout: float | None = None) -> int:
        returncode = self.process.wait(timeout=timeout)
        self.close()
        return returncode

    def terminate(self, grace_sec: float = 2.0) -> None:
        if self.process.poll() is None:
            try:
                self.process.send_signal(signal.SIGTERM)
                self.process.wait(timeout=grace_sec)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
            except ProcessLookupError:
                pass
        self.close()

    def close(self) -> None:
        if self.capture_handle is not None and not self.capture_handle.closed:
            self.capture_handle.flush()
            self.capture_handle.close()
        self.capture_handle = None

    def read_capture(self) -> str:
        try:
            return self.capture_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""


class EngineAdapter(ABC):
    name = ""
    display_name = ""
    binary = ""
    cost_mode = COST_MODE
    reports_tokens = True
    install_hint = ""

    def __init__(self, command: str | None = None) -> None:
        self.command = (command or "").strip() or self.binary

    @abstractmethod
    def build_command(self, prompt: str, capture_path: Path) -> list[str]:
        ...

    @abstractmethod
    def normalize(self, raw: str, capture_path: Path | None = None) -> NormalizedResult:
        ...

    def environment(self) -> dict[str, str]:
        return {}

    def sidecar_paths(self, capture_path: Path) -> list[Path]:
        return []

    def ensure_available(self) -> str:
        resolved = shutil.which(self.command)
        if resolved:
            return resolved
        hint = f" {self.install_hint}" if self.install_hint else ""
        raise PreflightError(f"{self.display_name} CLI not found: {self.command}.{hint}")

    def launch(self, prompt: str, capture_path: Path, cwd: Path | None = None) -> EngineProcess:
        """Start the backend without waiting for it."""
        for sidecar in self.sidecar_paths(capture_path):
            sidecar.unlink(missing_ok=True)
        cmd = self.build_command(prompt, capture_path)
        handle = open(capture_path, "w", encoding="utf-8")
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdin=subprocess.DEVNULL,
                stdout=handle,
                stderr=subprocess.STDOUT,
                env=build_subprocess_env(self.environment()),
            )
        except (FileNotFoundError, PermissionError) as err:
            handle.close()
            missing = getattr(err, "filename", None) or (cmd[0] if cmd else "")
            raise EngineError(f"command not found: {missing}") from err
        logger.debug("Launched %s (pid=%s) capturing to %s", self.name, process.pid, capture_path)
        return EngineProcess(
            engine=self.name,
            process=process,
            capture_path=capture_path,
            capture_handle=handle,
            artifacts=self.sidecar_paths(capture_path),
        )

    def detect_error(self, raw: str) -> str | None:
        for event in iter_events(raw):
            if event.get("type") == "error":
                return _error_message(event)
        return None


class ClaudeEngine(EngineAdapter):
    name = "claude"
    display_name = "Claude Code"
    binary = "claude"
    install_hint = "Install from https://github.com/anthropics/claude-code"

    def build_command(self, prompt: str, capture_path: Path) -> list[str]:
        return [
            self.command,
            "--dangerously-skip-permissions",
            "--verbose",
            "--output-format",
            "stream-json",
            "-p",
            prompt,
        ]

    def detect_error(self, raw: str) -> str | None:
        message = super().detect_error(raw)
        if message:
            return message
        for event in events_of_type(raw, "result"):
            if event.get("is_error") is True:
                detail = event.get("result") or event.get("subtype") or "result reported is_error"
                return str(detail)
        return None

    def normalize(self, raw: str, capture_path: Path | None = None) -> NormalizedResult:
        results = events_of_type(raw, "result")
        if not results:
            return NormalizedResult(response="No result text")
        final = results[-1]
        response = final.get("result")
        usage = final.get("usage") if isinstance(final.get("usage"), dict) else {}
        return NormalizedResult(
            response=response if isinstance(response, str) and response else "No result text",
            input_tokens=safe_token_count(usage.get("input_tokens")),
            output_tokens=safe_token_count(usage.get("output_tokens")),
            cost=safe_cost(final.get("total_cost_usd")),
        )


class OpenCodeEngine(EngineAdapter):
    name = "opencode"
    display_name = "OpenCode"
    binary = "opencode"
    install_hint = "Install from https://opencode.ai/docs/"

    def build_command(self, prompt: str, capture_path: Path) -> list[str]:
        return [self.command, "run", "--format", "json", prompt]

    def environment(self) -> dict[str, str]:
        return {"OPENCODE_PERMISSION": '{"*":"allow"}'}

    def normalize(self, raw: str, capture_path: Path | None = None) -> NormalizedResult:
        input_tokens = output_tokens = 0
        cost = Decimal("0")
        finishes = events_of_type(raw, "step_finish")
        if finishes:
            part = finishes[-1].get("part") if isinstance(finishes[-1].get("part"), dict) else {}
            input_tokens = safe_token_count(_dig(part, "tokens", "input"))
            output_tokens = safe_token_count(_dig(part, "tokens", "output"))
            cost = safe_cost(part.get("cost"))
        chunks = []
        for event in events_of_type(raw, "text"):
            text = _dig(event, "part", "text")
            if isinstance(text, str):
                chunks.append(text)
        response = "".join(chunks)
        return NormalizedResult(
            response=response or "Task completed",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
        )


class CursorEngine(EngineAdapter):
    name = "cursor"
    display_name = "Cursor Agent"
    binary = "agent"
    cost_mode = DURATION_MODE
    reports_tokens = False
    install_hint = "Make sure Cursor is installed and 'agent' is in your PATH."

    def build_command(self, prompt: str, capture_path: Path) -> list[str]:
        return [self.command, "--print", "--force", "--output-format", "stream-json", prompt]

    def normalize(self, raw: str, capture_path: Path | None = None) -> NormalizedResult:
        response = ""
        duration_ms = 0
        results = events_of_type(raw, "result")
        if results:
            final = results[-1]
            text = final.get("result")
            response = text if isinstance(text, str) else ""
            duration_ms = safe_token_count(final.get("duration_ms"))
        if not response or response == "Task completed":
            assistants = events_of_type(raw, "assistant")
            if assistants:
                content = _dig(assistants[-1], "message", "content")
                if isinstance(content, list) and content and isinstance(content[0], dict):
                    text = content[0].get("text")
                    response = text if isinstance(text, str) else response
                elif isinstance(content, str):
                    response = content
        return NormalizedResult(response=response or "Task completed", duration_ms=duration_ms)


class CodexEngine(EngineAdapter):
    name = "codex"
    display_name = "Codex"
    binary = "codex"
    install_hint = "Make sure 'codex' is in your PATH."

    COMPLETION_BOILERPLATE = "Task completed successfully."

    @staticmethod
    def last_message_path(capture_path: Path) -> Path:
        return capture_path.with_name(capture_path.name + ".last")

    def sidecar_paths(self, capture_path: Path) -> list[Path]:
        return [self.last_message_path(capture_path)]

    def build_command(self, prompt: str, capture_path: Path) -> list[str]:
        return [
            self.command,
            "exec",
            "--full-auto",
            "--json",
            "--output-last-message",
            str(self.last_message_path(capture_path)),
            prompt,
        ]

    def detect_error(self, raw: str) -> str | None:
        message = super().detect_error(raw)
        if message:
            return message
        failed = events_of_type(raw, "turn.failed")
        return _error_message(failed[0]) if failed else None

    def _strip_boilerplate(self, text: str) -> str:
        lines = text.splitlines()
        if lines and lines[0].strip() == self.COMPLETION_BOILERPLATE:
            lines = lines[1:]
        return "\n".join(lines).strip()

    def normalize(self, raw: str, capture_path: Path | None = None) -> NormalizedResult:
        response = ""
        if capture_path is not None:
            last = self.last_message_path(capture_path)
            try:
                response = self._strip_boilerplate(last.read_text(encoding="utf-8", errors="replace"))
            except OSError:
                response = ""
        if not response:
            for event in events_of_type(raw, "item.completed"):
                item = event.get("item")
                if isinstance(item, dict) and item.get("type") == "agent_message" and isinstance(item.get("text"), str):
                    response = item["text"]
        input_tokens = output_tokens = 0
        for event in events_of_type(raw, "turn.completed"):
            usage = event.get("usage") if isinstance(event.get("usage"), dict) else {}
            input_tokens += safe_token_count(usage.get("input_tokens"))
            output_tokens += safe_token_count(usage.get("output_tokens"))
        return NormalizedResult(
            response=response or "Task completed",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


ENGINES: dict[str, type[EngineAdapter]] = {
    ClaudeEngine.name: ClaudeEngine,
    OpenCodeEngine.name: OpenCodeEngine,
    CursorEngine.name: CursorEngine,
    CodexEngine.name: CodexEngine,
}


def get_engine(name: str, command: str | None = None) -> EngineAdapter:
    try:
        engine_cls = ENGINES[name]
    except KeyError as err:
        raise PreflightError(f"Unknown engine: {name}") from err
    return engine_cls(command=command)
