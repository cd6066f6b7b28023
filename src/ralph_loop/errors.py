"""Error taxonomy for the ralph loop.

Fatal errors (``LedgerError``, ``PreflightError``) abort the run with a
non-zero exit. Everything else is recovered inside a single task iteration.
"""

from __future__ import annotations


class RalphError(RuntimeError):
    """Base class for all ralph loop errors."""


class LedgerError(RalphError):
    """Raised when the backlog file cannot be read or rewritten."""


class PreflightError(RalphError):
    """Raised when a required tool, directory or option is missing before the loop starts."""


class AttemptError(RalphError):
    """A single engine attempt failed in a way the retry controller may retry."""

    kind = "attempt"


class EmptyOutput(AttemptError):
    """The engine subprocess produced no capture, or none of it parsed as events."""

    kind = "empty_output"

    def __init__(self, message: str = "Empty response") -> None:
        super().__init__(message)


class EngineError(AttemptError):
    """The engine capture contains an explicit error event."""

    kind = "engine_error"

    def __init__(self, message: str) -> None:
        super().__init__(f"API error: {message}")
        self.engine_message = message


class RetryExhausted(RalphError):
    """The attempt budget for one task was consumed without success."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"gave up after {attempts} attempt(s){detail}")
        self.attempts = attempts
        self.last_error = last_error


class GitOperationWarning(RalphError):
    """A git or GitHub operation failed; callers log it and carry on."""


class RunInterrupted(RalphError):
    """The operator interrupted the run with a terminal signal."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"interrupted by signal {signum}")
        self.signum = signum
