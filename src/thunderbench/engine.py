from __future__ import annotations

import asyncio
import contextlib
import enum
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from .config import BenchmarkConfig, validate_config
from .errors import BenchmarkAbortedError
from .events import EventBus, ProgressEvent, StatsSnapshot
from .results import BenchmarkResult, GroupResult
from .runner import CaseRunner, Invoker
from .scheduler import GroupScheduler, GroupState
from .scripts import Workspace
from .stats import DetailedStats, merge_all, with_throughput
from .worker import WorkerInvoker, detect_worker


class EngineState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


def aggregate_groups(groups: Sequence[GroupResult]) -> DetailedStats:
    """Overall stats: groups run one after another, so throughput spans their summed time."""
    merged = merge_all(g.merged_stats for g in groups)
    return with_throughput(merged, sum(g.merged_stats.duration_s for g in groups))


class BenchmarkEngine:
    """
    Runs the groups of a benchmark in declared order.

    One engine runs once. On any failure the state moves to FAILED and the
    error is raised; no partial result is returned.
    """

    def __init__(
        self,
        config: BenchmarkConfig,
        invoker: Invoker,
        *,
        bus: EventBus | None = None,
        keep_scripts: bool = False,
        workspace_parent: Path | None = None,
        verify_worker: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self.state = EngineState.IDLE
        self.group_states: dict[str, GroupState] = {g.name: GroupState.PENDING for g in config.groups}
        self._invoker = invoker
        self._keep_scripts = keep_scripts
        self._workspace_parent = workspace_parent
        self._clock = clock
        self._abort = asyncio.Event()
        # Already checked by the caller (e.g. one check for a whole comparison).
        self._initialized = not verify_worker

    async def initialize(self) -> None:
        """Check the worker once, before any case runs (no-op for invokers without `verify`)."""
        if self._initialized:
            return
        verify = getattr(self._invoker, "verify", None)
        if verify is not None:
            banner = await verify()
            if banner:
                self.bus.log(f"worker: {banner}", style="dim")
        self._initialized = True

    def abort(self) -> None:
        """Stop before the next group starts (an in-flight group always finishes)."""
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    async def run(self) -> BenchmarkResult:
        if self.state is not EngineState.IDLE:
            raise RuntimeError(f"engine already used (state={self.state.value})")

        try:
            self.state = EngineState.VALIDATING
            validate_config(self.config)
            await self.initialize()

            self.state = EngineState.RUNNING
            result = BenchmarkResult(name=self.config.name, start_time=self._clock())

            with Workspace(keep=self._keep_scripts, parent=self._workspace_parent) as ws:
                if self._keep_scripts:
                    self.bus.log(f"scripts kept in {ws.root}", style="dim")
                runner = CaseRunner(self._invoker, ws, self.bus)
                await self._run_groups(runner, result)

            self.state = EngineState.FINALIZING
            result.overall_stats = aggregate_groups(result.groups)
            result.end_time = self._clock()
        except BaseException:
            self.state = EngineState.FAILED
            raise

        self.state = EngineState.DONE
        return result

    async def _run_groups(self, runner: CaseRunner, result: BenchmarkResult) -> None:
        groups = self.config.groups
        total = len(groups)

        for idx, group in enumerate(groups):
            if self._abort.is_set():
                raise BenchmarkAbortedError(
                    f"benchmark aborted before group {group.name!r} ({idx}/{total} completed)"
                )

            self.bus.log(
                f"group {group.name!r} ({group.execution_mode.value}, {len(group.cases)} case(s))",
                style="bold",
            )
            scheduler = GroupScheduler(group, runner, bus=self.bus)
            try:
                group_result = await scheduler.run()
            finally:
                self.group_states[group.name] = scheduler.state

            result.groups.append(group_result)

            done = idx + 1
            self.bus.publish(
                ProgressEvent(
                    group_name=group.name,
                    completed_groups=done,
                    total_groups=total,
                    percentage=done / total * 100.0,
                )
            )
            self.bus.publish(
                StatsSnapshot(completed_groups=done, stats=aggregate_groups(result.groups))
            )

            delay_ms = group.inter_group_delay_ms()
            if done < total and delay_ms > 0:
                self.bus.log(f"waiting {delay_ms}ms before next group", style="dim")
                await self._pause(delay_ms / 1000.0)

    async def _pause(self, seconds: float) -> None:
        # Returns early when abort() is called.
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._abort.wait(), timeout=seconds)


async def run_benchmark(
    config: BenchmarkConfig,
    *,
    worker: Path | None = None,
    bus: EventBus | None = None,
    keep_scripts: bool = False,
) -> BenchmarkResult:
    """Resolve the worker, then build and run an engine for `config`."""
    invoker = WorkerInvoker(detect_worker(worker))
    engine = BenchmarkEngine(config, invoker, bus=bus, keep_scripts=keep_scripts)
    return await engine.run()


__all__ = [
    "BenchmarkEngine",
    "EngineState",
    "aggregate_groups",
    "run_benchmark",
]
