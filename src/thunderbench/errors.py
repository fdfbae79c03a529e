from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .results import CaseResult


class ConfigurationError(ValueError):
    """Raised when benchmark configuration values are invalid."""


class BenchError(RuntimeError):
    """Base class for failures while running a benchmark."""


class WorkerNotFoundError(BenchError):
    """Raised when the load-generation executable cannot be found or spawned."""


class WorkerExecutionError(BenchError):
    """Raised when a worker process exits abnormally."""

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str] = (),
        returncode: int | None = None,
        stdout_tail: str = "",
        stderr_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stdout_tail = stdout_tail
        self.stderr_tail = stderr_tail

    def __str__(self) -> str:
        msg = super().__str__()
        if not self.stderr_tail:
            return msg
        return f"{msg}\n--- stderr (tail) ---\n{self.stderr_tail}"


class UnparsableOutputError(BenchError):
    """Raised when a worker report lacks the mandatory request-count line."""


class TargetUnreachableError(BenchError):
    """Raised when a comparison target cannot be started or never becomes healthy."""


class BenchmarkAbortedError(BenchError):
    """Raised when the caller aborted the run between groups."""


class GroupFailedError(BenchError):
    """
    Raised when a group ends in the Failed state.

    `failures` maps case name to the exception that case raised. `case_results`
    holds the cases that did complete (in parallel mode siblings are always
    allowed to finish before this is raised).
    """

    def __init__(
        self,
        group: str,
        failures: dict[str, BaseException],
        case_results: Sequence[CaseResult] = (),
    ) -> None:
        names = ", ".join(failures)
        super().__init__(f"group {group!r} failed ({len(failures)} failing case(s): {names})")
        self.group = group
        self.failures = dict(failures)
        self.case_results = tuple(case_results)


__all__ = [
    "BenchError",
    "BenchmarkAbortedError",
    "ConfigurationError",
    "GroupFailedError",
    "TargetUnreachableError",
    "UnparsableOutputError",
    "WorkerExecutionError",
    "WorkerNotFoundError",
]
