"""Run-wide counters and the end-of-run summary."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from .engines import COST_MODE, DURATION_MODE, NormalizedResult, safe_cost, safe_token_count

INPUT_TOKEN_RATE = Decimal("0.000003")
OUTPUT_TOKEN_RATE = Decimal("0.000015")
RULE = "=" * 44


def estimate_cost(input_tokens: int, output_tokens: int) -> Decimal:
    cost = Decimal(input_tokens) * INPUT_TOKEN_RATE + Decimal(output_tokens) * OUTPUT_TOKEN_RATE
    return cost.quantize(Decimal("0.0001"))


def format_duration_ms(duration_ms: int) -> str:
    seconds = duration_ms // 1000
    minutes, rem = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m {rem}s"
    return f"{seconds}s"


@dataclass
class SummaryReport:
    engine: str
    accounting_mode: str
    iterations: int
    attempts: int
    tasks_completed: int
    tasks_failed: int
    pending: int
    done: int
    input_tokens: int
    output_tokens: int
    actual_cost: Decimal
    estimated_cost: Decimal
    duration_ms: int
    branches: list[str]
    pull_requests: list[str]
    stop_reason: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class RunSession:
    """The only mutable run-wide state; owned by the orchestrator."""

    engine: str
    accounting_mode: str = COST_MODE
    iteration: int = 0
    attempts: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    actual_cost: Decimal = Decimal("0")
    duration_ms: int = 0
    branches: list[str] = field(default_factory=list)
    pull_requests: list[str] = field(default_factory=list)
    abandoned: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.accounting_mode not in {COST_MODE, DURATION_MODE}:
            raise ValueError(f"unknown accounting mode: {self.accounting_mode}")

    def record(self, result: NormalizedResult) -> None:
        self.input_tokens += safe_token_count(result.input_tokens)
        self.output_tokens += safe_token_count(result.output_tokens)
        if self.accounting_mode == DURATION_MODE:
            self.duration_ms += safe_token_count(result.duration_ms)
        else:
            self.actual_cost += safe_cost(result.cost)

    def add_branch(self, branch: str) -> None:
        if branch and branch not in self.branches:
            self.branches.append(branch)

    def summary(self, *, pending: int, done: int, stop_reason: str) -> SummaryReport:
        return SummaryReport(
            engine=self.engine,
            accounting_mode=self.accounting_mode,
            iterations=self.iteration,
            attempts=self.attempts,
            tasks_completed=self.tasks_completed,
            tasks_failed=self.tasks_failed,
            pending=pending,
            done=done,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            actual_cost=self.actual_cost,
            estimated_cost=estimate_cost(self.input_tokens, self.output_tokens),
            duration_ms=self.duration_ms,
            branches=list(self.branches),
            pull_requests=list(self.pull_requests),
            stop_reason=stop_reason,
        )


def render_summary(report: SummaryReport) -> str:
    if report.pending == 0 and report.tasks_completed == 0:
        headline = "No tasks pending. Nothing to do."
    elif report.pending == 0:
        headline = f"PRD complete! Finished {report.tasks_completed} task(s)."
    else:
        headline = f"Stopped: {report.stop_reason}. Finished {report.tasks_completed} task(s)."
    lines = [
        "",
        RULE,
        headline,
        RULE,
        f"Iterations: {report.iterations}",
        f"Completed: {report.done} | Remaining: {report.pending}",
    ]
    if report.tasks_failed:
        lines.append(f"Abandoned after retries: {report.tasks_failed}")
    lines.extend(["", ">>> Cost Summary"])
    if report.accounting_mode == DURATION_MODE:
        lines.append("Token usage not available (this engine does not expose it)")
        if report.duration_ms > 0:
            lines.append(f"Total API time: {format_duration_ms(report.duration_ms)}")
    else:
        lines.append(f"Input tokens:  {report.input_tokens}")
        lines.append(f"Output tokens: {report.output_tokens}")
        lines.append(f"Total tokens:  {report.total_tokens}")
        if report.actual_cost > 0:
            lines.append(f"Actual cost:   ${report.actual_cost}")
        else:
            lines.append(f"Est. cost:     ${report.estimated_cost}")
    if report.branches:
        lines.extend(["", ">>> Branches Created"])
        lines.extend(f"  - {branch}" for branch in report.branches)
    if report.pull_requests:
        lines.extend(["", ">>> Pull Requests"])
        lines.extend(f"  - {url}" for url in report.pull_requests)
    lines.append(RULE)
    return "\n".join(lines)
