"""
Asyncio subprocess execution.

Provides:
- run_process: spawn a process, stream stdout/stderr lines to callbacks, capture
  both, and always kill + reap the child on error, timeout or cancellation.
- format_command / quote_for_display: readable argv for logs.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_CHUNK_SIZE = 16 * 1024

LineCallback = Callable[[str], None]


class ExecTimeoutError(RuntimeError):
    """Raised when a process outlives its timeout (the process has been killed)."""


@dataclass(frozen=True, slots=True)
class RunResult:
    """Result of a subprocess execution."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    elapsed_s: float


def quote_for_display(s: str) -> str:
    """Quote string for display (not shell-safe, for logs only)."""
    if not any(c.isspace() or c in {'"', "\\"} for c in s):
        return s
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'


def format_command(argv: Sequence[str | os.PathLike[str]]) -> str:
    """Format argv as readable one-liner."""
    return " ".join(quote_for_display(os.fspath(a)) for a in argv)


async def run_process(
    argv: Sequence[str | os.PathLike[str]],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_s: float | None = None,
    on_stdout_line: LineCallback | None = None,
    on_stderr_line: LineCallback | None = None,
) -> RunResult:
    """
    Run a process to completion without blocking the event loop.

    Parameters
    ----------
    argv : Sequence
        Command arguments (no shell).
    cwd : Path, optional
        Working directory.
    env : Mapping, optional
        Extra environment variables (merged with os.environ).
    timeout_s : float, optional
        Kill the process if it is still running after this many seconds.
    on_stdout_line, on_stderr_line : callable, optional
        Called for each output line (splits on both newline and carriage return).

    Returns
    -------
    RunResult

    Raises
    ------
    FileNotFoundError, PermissionError
        If the executable cannot be spawned.
    ExecTimeoutError
        If the timeout elapsed.
    """
    if not argv:
        raise ValueError("argv must be non-empty")
    if timeout_s is not None and timeout_s <= 0:
        raise ValueError("timeout_s must be > 0")

    full_env: dict[str, str] | None
    if env is None:
        full_env = None
    else:
        full_env = dict(os.environ)
        full_env.update({k: str(v) for k, v in env.items()})

    args = [os.fspath(a) for a in argv]
    loop = asyncio.get_running_loop()
    started = loop.time()

    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=os.fspath(cwd) if cwd is not None else None,
        env=full_env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    out_chunks: list[str] = []
    err_chunks: list[str] = []

    try:
        readers = asyncio.gather(
            _pump(proc.stdout, sink=out_chunks, cb=on_stdout_line),
            _pump(proc.stderr, sink=err_chunks, cb=on_stderr_line),
        )
        try:
            await asyncio.wait_for(_drain_and_wait(proc, readers), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise ExecTimeoutError(
                f"process exceeded timeout of {timeout_s:.1f}s: {format_command(args)}"
            ) from e
    finally:
        await _kill_and_reap(proc)

    return RunResult(
        argv=tuple(args),
        returncode=int(proc.returncode or 0),
        stdout="".join(out_chunks),
        stderr="".join(err_chunks),
        elapsed_s=loop.time() - started,
    )


async def _drain_and_wait(proc: asyncio.subprocess.Process, readers: asyncio.Future) -> None:
    await readers
    await proc.wait()


async def _pump(
    stream: asyncio.StreamReader | None, *, sink: list[str], cb: LineCallback | None
) -> None:
    if stream is None:
        return
    # Split on both \n and \r so tools that redraw a single line still show updates.
    # Incremental so a multi-byte character split across reads decodes intact.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buf = ""
    while True:
        b = await stream.read(_DEFAULT_CHUNK_SIZE)
        if not b:
            break
        buf += decoder.decode(b)
        while True:
            idx_n = buf.find("\n")
            idx_r = buf.find("\r")
            idxs = [i for i in (idx_n, idx_r) if i != -1]
            if not idxs:
                break
            i = min(idxs)
            line = buf[:i]
            buf = buf[i + 1 :]
            if line:
                _emit(line, sink=sink, cb=cb)
    buf += decoder.decode(b"", final=True)
    if buf:
        _emit(buf, sink=sink, cb=cb)


def _emit(line: str, *, sink: list[str], cb: LineCallback | None) -> None:
    sink.append(line + "\n")
    if cb is not None:
        # Output is still captured even if a display callback misbehaves.
        with contextlib.suppress(Exception):
            cb(line)


async def _kill_and_reap(proc: asyncio.subprocess.Process) -> None:
    """Best-effort kill; always waits so no zombie is left (safe to call twice)."""
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    # Shielded so a cancellation arriving here still reaps the child.
    await asyncio.shield(proc.wait())


__all__ = [
    "ExecTimeoutError",
    "LineCallback",
    "RunResult",
    "format_command",
    "quote_for_display",
    "run_process",
]
