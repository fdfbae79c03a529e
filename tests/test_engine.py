from __future__ import annotations

import asyncio
import stat
import sys
import time
from pathlib import Path

import pytest

from thunderbench.config import BenchmarkConfig, ExecutionMode, TestCase, TestGroup
from thunderbench.engine import BenchmarkEngine, EngineState, run_benchmark
from thunderbench.errors import (
    BenchmarkAbortedError,
    ConfigurationError,
    GroupFailedError,
    UnparsableOutputError,
    WorkerExecutionError,
)
from thunderbench.events import CaseFinished, CaseStarted, Event, EventBus, ProgressEvent
from thunderbench.runner import CaseRunner, allocate_share
from thunderbench.scheduler import GroupScheduler, GroupState
from thunderbench.scripts import Workspace


def _group(name: str = "g", **kw) -> TestGroup:
    base = dict(
        name=name,
        threads=4,
        connections=40,
        duration_s=5,
        base_url="http://127.0.0.1:3000",
        cases=(TestCase(name="a", weight=60), TestCase(name="b", weight=40)),
    )
    base.update(kw)
    return TestGroup(**base)


def _collect(bus: EventBus) -> list[Event]:
    events: list[Event] = []
    bus.subscribe(events.append)
    return events


def test_allocate_share_never_below_one() -> None:
    assert allocate_share(4, 60) == 2
    assert allocate_share(40, 40) == 16
    assert allocate_share(4, 10) == 1
    assert allocate_share(1, 0.5) == 1


@pytest.mark.asyncio
async def test_case_runner_allocates_capacity_and_publishes(tmp_path: Path, fake_invoker) -> None:
    bus = EventBus()
    events = _collect(bus)
    group = _group()

    with Workspace(parent=tmp_path) as ws:
        result = await CaseRunner(fake_invoker, ws, bus).run(group, group.cases[0])

    inv = fake_invoker.call_for("a").invocation
    assert (inv.threads, inv.connections, inv.duration_s) == (2, 24, 5)
    assert inv.url == "http://127.0.0.1:3000/"
    assert (result.threads, result.connections) == (2, 24)
    assert result.total_requests == 60000

    assert isinstance(events[0], CaseStarted)
    assert events[0].argv[1:4] == ("-t2", "-c24", "-d5s")
    assert isinstance(events[-1], CaseFinished)
    assert events[-1].result == result


@pytest.mark.asyncio
async def test_case_runner_reports_failure_and_reraises(tmp_path: Path, fake_invoker) -> None:
    bus = EventBus()
    events = _collect(bus)
    fake_invoker.outcomes = {"a": WorkerExecutionError("boom", returncode=1)}
    group = _group()

    with Workspace(parent=tmp_path) as ws:
        with pytest.raises(WorkerExecutionError):
            await CaseRunner(fake_invoker, ws, bus).run(group, group.cases[0])

    finished = [e for e in events if isinstance(e, CaseFinished)]
    assert finished[0].result is None
    assert finished[0].error == "boom"


@pytest.mark.asyncio
async def test_connections_are_never_below_threads(tmp_path: Path, fake_invoker) -> None:
    group = _group(threads=8, connections=4, cases=(TestCase(name="a", weight=100),))
    with Workspace(parent=tmp_path) as ws:
        await CaseRunner(fake_invoker, ws).run(group, group.cases[0])

    inv = fake_invoker.call_for("a").invocation
    assert (inv.threads, inv.connections) == (8, 8)


@pytest.mark.asyncio
async def test_threads_are_capped_to_request_budget(tmp_path: Path, fake_invoker) -> None:
    group = _group(threads=10, connections=10, cases=(TestCase(name="a", weight=100),))
    with Workspace(parent=tmp_path) as ws:
        await CaseRunner(fake_invoker, ws).run(group, group.cases[0], request_budget=3)

    inv = fake_invoker.call_for("a").invocation
    assert (inv.threads, inv.connections) == (3, 10)
    assert "local quotas = {1, 1, 1}" in fake_invoker.call_for("a").script


@pytest.mark.asyncio
async def test_parallel_group_sums_throughput(tmp_path: Path, fake_invoker) -> None:
    fake_invoker.run_s = 0.05
    with Workspace(parent=tmp_path) as ws:
        sched = GroupScheduler(_group(), CaseRunner(fake_invoker, ws))
        result = await sched.run()

    assert sched.state is GroupState.COMPLETED
    assert result.execution_mode == "parallel"
    assert [c.name for c in result.case_results] == ["a", "b"]
    assert result.merged_stats.total_requests == 120000
    assert result.merged_stats.requests_per_second == pytest.approx(24000.0)
    assert result.merged_stats.duration_s == pytest.approx(5.0)

    a, b = fake_invoker.call_for("a"), fake_invoker.call_for("b")
    # Both cases were in flight at the same time.
    assert b.started < a.finished


@pytest.mark.asyncio
async def test_sequential_group_waits_between_cases(tmp_path: Path, fake_invoker) -> None:
    fake_invoker.run_s = 0.02
    group = _group(execution_mode=ExecutionMode.SEQUENTIAL, delay_ms=200)
    with Workspace(parent=tmp_path) as ws:
        result = await GroupScheduler(group, CaseRunner(fake_invoker, ws)).run()

    a, b = fake_invoker.call_for("a"), fake_invoker.call_for("b")
    assert b.started - a.finished >= 0.19
    # Cases did not overlap: throughput is re-based on the summed durations.
    assert result.merged_stats.requests_per_second == pytest.approx(12000.0)
    assert result.merged_stats.duration_s == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_sequential_group_halts_at_first_failure(tmp_path: Path, fake_invoker) -> None:
    fake_invoker.outcomes = {"a": WorkerExecutionError("boom", returncode=1)}
    group = _group(execution_mode=ExecutionMode.SEQUENTIAL, delay_ms=0)
    with Workspace(parent=tmp_path) as ws:
        sched = GroupScheduler(group, CaseRunner(fake_invoker, ws))
        with pytest.raises(GroupFailedError) as ei:
            await sched.run()

    assert sched.state is GroupState.FAILED
    assert set(ei.value.failures) == {"a"}
    assert [c.case for c in fake_invoker.calls] == ["a"]


@pytest.mark.asyncio
async def test_parallel_failure_waits_for_siblings(tmp_path: Path, fake_invoker) -> None:
    fake_invoker.run_s = 0.05
    fake_invoker.outcomes = {"b": WorkerExecutionError("boom", returncode=1)}
    group = _group(
        cases=(
            TestCase(name="a", weight=40),
            TestCase(name="b", weight=30),
            TestCase(name="c", weight=30),
        )
    )
    with Workspace(parent=tmp_path) as ws:
        sched = GroupScheduler(group, CaseRunner(fake_invoker, ws))
        with pytest.raises(GroupFailedError) as ei:
            await sched.run()

    assert sched.state is GroupState.FAILED
    assert set(ei.value.failures) == {"b"}
    assert isinstance(ei.value.failures["b"], WorkerExecutionError)
    assert [r.name for r in ei.value.case_results] == ["a", "c"]
    assert all(c.finished is not None for c in fake_invoker.calls)


@pytest.mark.asyncio
async def test_parallel_unparsable_output_fails_group(tmp_path: Path, fake_invoker) -> None:
    fake_invoker.outcomes = {"a": "unable to connect to 127.0.0.1:3000 Connection refused\n"}
    group = _group(
        cases=(
            TestCase(name="a", weight=40),
            TestCase(name="b", weight=30),
            TestCase(name="c", weight=30),
        )
    )
    with Workspace(parent=tmp_path) as ws:
        sched = GroupScheduler(group, CaseRunner(fake_invoker, ws))
        with pytest.raises(GroupFailedError) as ei:
            await sched.run()

    assert sched.state is GroupState.FAILED
    assert set(ei.value.failures) == {"a"}
    assert isinstance(ei.value.failures["a"], UnparsableOutputError)
    assert [r.name for r in ei.value.case_results] == ["b", "c"]


@pytest.mark.asyncio
async def test_request_budget_is_split_by_weight(tmp_path: Path, fake_invoker) -> None:
    with Workspace(parent=tmp_path) as ws:
        result = await GroupScheduler(_group(requests=10), CaseRunner(fake_invoker, ws)).run()

    assert [c.request_budget for c in result.case_results] == [6, 4]
    assert "local quotas = {3, 3}" in fake_invoker.call_for("a").script
    assert "local quotas = {4}" in fake_invoker.call_for("b").script


@pytest.mark.asyncio
async def test_zero_budget_case_is_skipped(tmp_path: Path, fake_invoker) -> None:
    with Workspace(parent=tmp_path) as ws:
        result = await GroupScheduler(_group(requests=1), CaseRunner(fake_invoker, ws)).run()

    assert [c.case for c in fake_invoker.calls] == ["a"]
    skipped = result.case_results[1]
    assert skipped.name == "b"
    assert skipped.skipped
    assert skipped.total_requests == 0
    assert result.merged_stats.total_requests == 60000


@pytest.mark.asyncio
async def test_scheduler_runs_once(tmp_path: Path, fake_invoker) -> None:
    with Workspace(parent=tmp_path) as ws:
        sched = GroupScheduler(_group(), CaseRunner(fake_invoker, ws))
        await sched.run()
        with pytest.raises(RuntimeError):
            await sched.run()


@pytest.mark.asyncio
async def test_engine_runs_groups_in_order(tmp_path: Path, fake_invoker) -> None:
    bus = EventBus()
    events = _collect(bus)
    cfg = BenchmarkConfig(name="bench", groups=(_group("first"), _group("second")))
    engine = BenchmarkEngine(cfg, fake_invoker, bus=bus, workspace_parent=tmp_path)

    result = await engine.run()

    assert engine.state is EngineState.DONE
    assert engine.group_states == {"first": GroupState.COMPLETED, "second": GroupState.COMPLETED}
    assert fake_invoker.verify_calls == 1
    assert [g.name for g in result.groups] == ["first", "second"]
    assert [e.percentage for e in events if isinstance(e, ProgressEvent)] == [50.0, 100.0]

    overall = result.overall_stats
    assert overall.total_requests == 240000
    # Groups ran one after another (5s each, 24000 rps each).
    assert overall.requests_per_second == pytest.approx(24000.0)
    assert result.end_time >= result.start_time
    assert list(tmp_path.glob("thunderbench-*")) == []


@pytest.mark.asyncio
async def test_engine_keeps_scripts_when_asked(tmp_path: Path, fake_invoker) -> None:
    cfg = BenchmarkConfig(name="bench", groups=(_group(),))
    await BenchmarkEngine(cfg, fake_invoker, keep_scripts=True, workspace_parent=tmp_path).run()

    scripts = list(tmp_path.glob("thunderbench-*/*.lua"))
    assert len(scripts) == 2


@pytest.mark.asyncio
async def test_engine_validation_failure_runs_nothing(tmp_path: Path, fake_invoker) -> None:
    bad = _group(cases=(TestCase(name="a", weight=50),))
    engine = BenchmarkEngine(BenchmarkConfig(name="b", groups=(bad,)), fake_invoker, workspace_parent=tmp_path)

    with pytest.raises(ConfigurationError):
        await engine.run()

    assert engine.state is EngineState.FAILED
    assert fake_invoker.calls == []
    assert fake_invoker.verify_calls == 0


@pytest.mark.asyncio
async def test_engine_group_failure_is_fatal(tmp_path: Path, fake_invoker) -> None:
    fake_invoker.outcomes = {"b": WorkerExecutionError("boom", returncode=1)}
    second = _group("second", cases=(TestCase(name="z", weight=100),))
    cfg = BenchmarkConfig(name="bench", groups=(_group("first"), second))
    engine = BenchmarkEngine(cfg, fake_invoker, workspace_parent=tmp_path)

    with pytest.raises(GroupFailedError):
        await engine.run()

    assert engine.state is EngineState.FAILED
    assert engine.group_states == {"first": GroupState.FAILED, "second": GroupState.PENDING}
    assert "z" not in [c.case for c in fake_invoker.calls]
    assert list(tmp_path.glob("thunderbench-*")) == []


@pytest.mark.asyncio
async def test_abort_interrupts_inter_group_delay(tmp_path: Path, fake_invoker) -> None:
    bus = EventBus()
    # Sequential without an explicit delay: 1000ms pause before the next group.
    first = _group("first", execution_mode=ExecutionMode.SEQUENTIAL)
    cfg = BenchmarkConfig(name="bench", groups=(first, _group("second")))
    engine = BenchmarkEngine(cfg, fake_invoker, bus=bus, workspace_parent=tmp_path)

    def on_event(event: Event) -> None:
        if isinstance(event, ProgressEvent):
            engine.abort()

    bus.subscribe(on_event)

    started = time.monotonic()
    with pytest.raises(BenchmarkAbortedError):
        await engine.run()

    assert time.monotonic() - started < 0.9
    assert engine.aborted
    assert engine.state is EngineState.FAILED
    assert engine.group_states["second"] is GroupState.PENDING


@pytest.mark.asyncio
async def test_engine_runs_once(tmp_path: Path, fake_invoker) -> None:
    engine = BenchmarkEngine(
        BenchmarkConfig(name="b", groups=(_group(),)), fake_invoker, workspace_parent=tmp_path
    )
    await engine.run()
    with pytest.raises(RuntimeError):
        await engine.run()


@pytest.mark.asyncio
async def test_engine_skips_verify_when_already_checked(tmp_path: Path, fake_invoker) -> None:
    engine = BenchmarkEngine(
        BenchmarkConfig(name="b", groups=(_group(),)),
        fake_invoker,
        verify_worker=False,
        workspace_parent=tmp_path,
    )
    await asyncio.wait_for(engine.run(), timeout=5)
    assert fake_invoker.verify_calls == 0


@pytest.mark.skipif(sys.platform == "win32", reason="uses a /bin/sh script as a fake wrk")
@pytest.mark.asyncio
async def test_run_benchmark_with_worker_path(tmp_path: Path) -> None:
    fixture = Path(__file__).parent / "fixtures" / "wrk_plain_stdout.txt"
    wrk = tmp_path / "wrk"
    wrk.write_text(
        "#!/bin/sh\n"
        'if [ "$1" = "-v" ]; then echo "wrk 4.2.0"; exit 1; fi\n'
        f'cat "{fixture}"\n',
        encoding="utf-8",
    )
    wrk.chmod(wrk.stat().st_mode | stat.S_IXUSR)

    result = await run_benchmark(
        BenchmarkConfig(name="b", groups=(_group(),)), worker=wrk
    )
    assert result.overall_stats.total_requests == 120000
