from __future__ import annotations

import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from .errors import WorkerExecutionError, WorkerNotFoundError
from .exec import ExecTimeoutError, LineCallback, RunResult, run_process
from .parse import tail_lines

WORKER_ENV_VAR: Final[str] = "THUNDERBENCH_WRK"

# Extra time past -d<N>s before a worker is considered hung.
DEFAULT_TIMEOUT_GRACE_S: Final[float] = 30.0

# `wrk -v` prints its version and usage, then exits 1.
_VERSION_EXIT_CODES: Final[frozenset[int]] = frozenset({0, 1})

_STDERR_TAIL_LINES: Final[int] = 20


def detect_worker(explicit: Path | None = None) -> Path:
    """
    Resolve the worker executable.

    Lookup order: `explicit`, then $THUNDERBENCH_WRK, then `wrk` on PATH.

    Raises
    ------
    WorkerNotFoundError
        If no candidate exists.
    """
    if explicit is None:
        raw = os.environ.get(WORKER_ENV_VAR)
        if raw:
            explicit = Path(raw)

    if explicit is not None:
        if explicit.exists():
            return explicit
        found = shutil.which(str(explicit))
        if found:
            return Path(found)
        raise WorkerNotFoundError(f"Missing worker executable: {explicit}")

    found = shutil.which(_exe_name("wrk"))
    if not found:
        raise WorkerNotFoundError(
            f"Missing required command: wrk (not found on PATH; set {WORKER_ENV_VAR} or pass --wrk)"
        )
    return Path(found)


def _exe_name(base: str) -> str:
    """Return platform-specific executable name."""
    if os.name == "nt" and not base.lower().endswith(".exe"):
        return f"{base}.exe"
    return base


@dataclass(frozen=True, slots=True)
class WorkerInvocation:
    """One worker process run: wrk -t -c -d [-s] [--latency] [--timeout] URL."""

    threads: int
    connections: int
    duration_s: int
    url: str
    script_path: Path | None = None
    latency: bool = True
    request_timeout_s: float | None = None
    timeout_s: float | None = None
    informational_exit_codes: frozenset[int] = frozenset({0})

    def argv(self, executable: Path) -> list[str]:
        argv = [
            str(executable),
            f"-t{self.threads}",
            f"-c{self.connections}",
            f"-d{self.duration_s}s",
        ]
        if self.script_path is not None:
            argv += ["-s", str(self.script_path)]
        if self.latency:
            argv.append("--latency")
        if self.request_timeout_s is not None:
            argv += ["--timeout", f"{_format_seconds(self.request_timeout_s)}s"]
        argv.append(self.url)
        return argv

    def process_timeout_s(self) -> float:
        if self.timeout_s is not None:
            return self.timeout_s
        return self.duration_s + DEFAULT_TIMEOUT_GRACE_S


def _format_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


CommandCallback = Callable[[list[str]], None]


class WorkerInvoker:
    """
    Runs the external load generator.

    `verify()` is meant to be called once per run (engine initialisation);
    `invoke()` once per case. Every failure is raised, never turned into an
    empty result.
    """

    def __init__(self, executable: Path) -> None:
        self.executable = executable

    async def verify(self) -> str:
        """Run `wrk -v` and return its banner."""
        argv = [str(self.executable), "-v"]
        res = await self._run(argv, timeout_s=10.0)
        if res.returncode not in _VERSION_EXIT_CODES:
            raise WorkerExecutionError(
                f"worker self-check failed (exit code {res.returncode}): {self.executable}",
                argv=res.argv,
                returncode=res.returncode,
                stdout_tail=tail_lines(res.stdout, _STDERR_TAIL_LINES),
                stderr_tail=tail_lines(res.stderr, _STDERR_TAIL_LINES),
            )
        banner = (res.stdout or res.stderr).strip().splitlines()
        return banner[0] if banner else ""

    async def invoke(
        self,
        invocation: WorkerInvocation,
        *,
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
        on_command: CommandCallback | None = None,
    ) -> str:
        """
        Run the worker to completion and return its raw stdout.

        Raises
        ------
        WorkerNotFoundError
            If the executable cannot be spawned.
        WorkerExecutionError
            On a timeout or an exit code outside `informational_exit_codes`.
        """
        argv = invocation.argv(self.executable)
        if on_command is not None:
            on_command(argv)

        res = await self._run(
            argv,
            timeout_s=invocation.process_timeout_s(),
            on_stdout_line=on_stdout_line,
            on_stderr_line=on_stderr_line,
        )

        if res.returncode not in invocation.informational_exit_codes:
            raise WorkerExecutionError(
                f"worker exited with code {res.returncode}",
                argv=res.argv,
                returncode=res.returncode,
                stdout_tail=tail_lines(res.stdout, _STDERR_TAIL_LINES),
                stderr_tail=tail_lines(res.stderr, _STDERR_TAIL_LINES),
            )
        return res.stdout

    async def _run(
        self,
        argv: list[str],
        *,
        timeout_s: float,
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
    ) -> RunResult:
        try:
            return await run_process(
                argv,
                timeout_s=timeout_s,
                on_stdout_line=on_stdout_line,
                on_stderr_line=on_stderr_line,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise WorkerNotFoundError(f"cannot spawn worker {self.executable}: {e}") from e
        except ExecTimeoutError as e:
            raise WorkerExecutionError(str(e), argv=argv) from e


__all__ = [
    "DEFAULT_TIMEOUT_GRACE_S",
    "WORKER_ENV_VAR",
    "WorkerInvocation",
    "WorkerInvoker",
    "detect_worker",
]
