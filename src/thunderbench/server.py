"""
Target server lifecycle for comparison runs.

Provides:
- TargetServer: async context manager that optionally spawns a target with
  PORT in its environment, polls its health endpoint and runs warm-up
  requests.
- WarmupReport: latency summary of the warm-up requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

import httpx

from .config import TargetSpec
from .errors import TargetUnreachableError
from .exec import format_command
from .stats import SampleSummary, summarize_samples

_HEALTH_POLL_INTERVAL_S: Final[float] = 0.1
_HEALTH_REQUEST_TIMEOUT_S: Final[float] = 2.0
_WARMUP_REQUEST_TIMEOUT_S: Final[float] = 5.0
_WARMUP_CONCURRENCY: Final[int] = 10
_STOP_GRACE_S: Final[float] = 5.0
_STDERR_TAIL_LINES: Final[int] = 50


@dataclass(frozen=True, slots=True)
class WarmupReport:
    requests: int
    failed: int
    latency: SampleSummary


class TargetServer:
    """
    Manage one comparison target.

    Targets with a `command` are spawned and shut down here (SIGTERM, then
    kill after a grace period). Targets without one are expected to be
    running already and are only health-checked.
    """

    def __init__(self, spec: TargetSpec, *, on_log: Callable[[str], None] | None = None) -> None:
        self.spec = spec
        self._on_log = on_log
        self._proc: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task[None]] = []
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._started_at = time.monotonic()

    @property
    def base_url(self) -> str:
        return self.spec.base_url

    @property
    def health_url(self) -> str:
        path = self.spec.health_check_path
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path

    async def __aenter__(self) -> TargetServer:
        try:
            await self.start()
            await self.wait_until_healthy()
        except BaseException:
            await self.shutdown()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def start(self) -> None:
        if self.spec.command is None or self._proc is not None:
            return

        argv = list(self.spec.command)
        self._log(f"starting {self.spec.name}: {format_command(argv)}")

        env = dict(os.environ)
        env.update(self.spec.env)
        env["PORT"] = str(self.spec.port)

        self._started_at = time.monotonic()
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.spec.cwd) if self.spec.cwd is not None else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TargetUnreachableError(f"cannot start target {self.spec.name!r}: {e}") from e

        # Keep draining both pipes so a chatty server never blocks on a full pipe.
        self._readers = [
            asyncio.create_task(self._drain(self._proc.stdout, keep=False)),
            asyncio.create_task(self._drain(self._proc.stderr, keep=True)),
        ]

    async def wait_until_healthy(self) -> None:
        """
        Poll the health URL until it answers with a 2xx status.

        Raises
        ------
        TargetUnreachableError
            If the spawned process exits early or `startup_timeout_s` elapses.
        """
        deadline = time.monotonic() + self.spec.startup_timeout_s
        last_error = "no response"

        async with httpx.AsyncClient(timeout=_HEALTH_REQUEST_TIMEOUT_S) as client:
            while True:
                if self._proc is not None and self._proc.returncode is not None:
                    if self._readers:
                        await asyncio.wait(self._readers, timeout=1.0)
                    raise TargetUnreachableError(
                        f"target {self.spec.name!r} exited early:\n"
                        f"  returncode: {self._proc.returncode}\n"
                        f"  elapsed_s: {self._elapsed_s():.3f}\n"
                        "--- stderr (tail) ---\n"
                        f"{self._stderr_tail_text()}\n"
                    )

                try:
                    resp = await client.get(self.health_url)
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}"
                else:
                    if resp.is_success:
                        self._log(f"{self.spec.name} healthy at {self.base_url}")
                        return
                    last_error = f"HTTP {resp.status_code}"

                if time.monotonic() > deadline:
                    raise TargetUnreachableError(
                        f"target {self.spec.name!r} not healthy after "
                        f"{self.spec.startup_timeout_s:g}s ({self.health_url}: {last_error})"
                    )

                await asyncio.sleep(_HEALTH_POLL_INTERVAL_S)

    async def warmup(self, count: int | None = None) -> WarmupReport | None:
        """Send `count` GETs to the health URL in small concurrent batches."""
        n = self.spec.warmup_requests if count is None else count
        if n <= 0:
            return None

        self._log(f"warming up {self.spec.name}: {n} request(s)")
        samples: list[float] = []
        failed = 0

        async with httpx.AsyncClient(timeout=_WARMUP_REQUEST_TIMEOUT_S) as client:

            async def one() -> float | None:
                started = time.perf_counter()
                try:
                    resp = await client.get(self.health_url)
                except httpx.HTTPError:
                    return None
                if not resp.is_success:
                    return None
                return (time.perf_counter() - started) * 1000.0

            for offset in range(0, n, _WARMUP_CONCURRENCY):
                batch = min(_WARMUP_CONCURRENCY, n - offset)
                for ms in await asyncio.gather(*(one() for _ in range(batch))):
                    if ms is None:
                        failed += 1
                    else:
                        samples.append(ms)

        report = WarmupReport(requests=n, failed=failed, latency=summarize_samples(samples))
        self._log(
            f"warm-up {self.spec.name}: ok={len(samples)} failed={failed} "
            f"avg={report.latency.avg:.2f}ms p99={report.latency.p99:.2f}ms"
        )
        return report

    async def shutdown(self) -> None:
        """Best-effort stop (safe to call multiple times)."""
        proc = self._proc
        if proc is None:
            return

        if proc.returncode is None:
            self._log(f"stopping {self.spec.name}")
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=_STOP_GRACE_S)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await asyncio.shield(proc.wait())

        for task in self._readers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._readers = []
        self._proc = None

    async def _drain(self, stream: asyncio.StreamReader | None, *, keep: bool) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                return
            if keep:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line:
                    self._stderr_tail.append(line)

    def _stderr_tail_text(self) -> str:
        return "\n".join(self._stderr_tail)

    def _elapsed_s(self) -> float:
        return time.monotonic() - self._started_at

    def _log(self, message: str) -> None:
        if self._on_log is not None:
            self._on_log(message)


__all__ = ["TargetServer", "WarmupReport"]
