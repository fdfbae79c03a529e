from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable

from .config import ExecutionMode, TestGroup
from .errors import GroupFailedError
from .events import EventBus
from .results import CaseResult, GroupResult
from .runner import CaseRunner
from .stats import merge_all, with_throughput
from .weights import distribute

SleepFn = Callable[[float], Awaitable[None]]


class GroupState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class GroupScheduler:
    """
    Runs the cases of one group in its execution mode.

    - parallel: every case is started at once; a failure is raised only after
      all siblings have finished (their processes are never orphaned)
    - sequential: declared order, `delay_ms` between cases, halts at the first
      failure
    """

    def __init__(
        self,
        group: TestGroup,
        runner: CaseRunner,
        *,
        bus: EventBus | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.group = group
        self.state = GroupState.PENDING
        self._runner = runner
        self._bus = bus or EventBus()
        self._sleep = sleep

    async def run(self) -> GroupResult:
        if self.state is not GroupState.PENDING:
            raise RuntimeError(f"group {self.group.name!r} already {self.state.value}")

        self.state = GroupState.RUNNING
        g = self.group

        budgets: dict[str, int] = {}
        if g.requests is not None:
            budgets = distribute(g.cases, g.requests)

        try:
            if g.execution_mode is ExecutionMode.PARALLEL:
                results = await self._run_parallel(budgets)
            else:
                results = await self._run_sequential(budgets)
        except BaseException:
            self.state = GroupState.FAILED
            raise

        merged = merge_all(r.to_stats() for r in results)
        if g.execution_mode is ExecutionMode.SEQUENTIAL:
            merged = with_throughput(merged, sum(r.duration_s for r in results))

        self.state = GroupState.COMPLETED
        return GroupResult(
            name=g.name,
            merged_stats=merged,
            case_results=tuple(results),
            execution_mode=g.execution_mode.value,
        )

    async def _run_parallel(self, budgets: dict[str, int]) -> list[CaseResult]:
        g = self.group
        outcomes = await asyncio.gather(
            *(self._runner.run(g, c, request_budget=budgets.get(c.name)) for c in g.cases),
            return_exceptions=True,
        )

        results: list[CaseResult] = []
        failures: dict[str, BaseException] = {}
        for case, outcome in zip(g.cases, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    # Cancellation / interrupts are not case failures.
                    raise outcome
                failures[case.name] = outcome
            else:
                results.append(outcome)

        if failures:
            first = next(iter(failures.values()))
            raise GroupFailedError(g.name, failures, results) from first
        return results

    async def _run_sequential(self, budgets: dict[str, int]) -> list[CaseResult]:
        g = self.group
        results: list[CaseResult] = []
        for i, case in enumerate(g.cases):
            if i > 0 and g.delay_ms:
                self._bus.log(f"{g.name}: waiting {g.delay_ms}ms before {case.name!r}", style="dim")
                await self._sleep(g.delay_ms / 1000.0)
            try:
                results.append(
                    await self._runner.run(g, case, request_budget=budgets.get(case.name))
                )
            except Exception as e:
                raise GroupFailedError(g.name, {case.name: e}, results) from e
        return results


__all__ = ["GroupScheduler", "GroupState"]
