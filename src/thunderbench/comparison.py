from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .config import (
    BenchmarkConfig,
    ComparisonConfig,
    ExecutionMode,
    TargetSpec,
    TestCase,
    TestGroup,
    validate_comparison,
)
from .engine import BenchmarkEngine
from .errors import TargetUnreachableError
from .events import EventBus
from .results import BenchmarkResult
from .runner import Invoker
from .server import TargetServer, WarmupReport
from .stats import round_half_up


@dataclass(frozen=True, slots=True)
class FrameworkSummary:
    """Headline numbers of one target (latencies in ms, error rate in percent)."""

    total_requests: int
    successful_requests: int
    failed_requests: int
    requests_per_second: float
    avg_latency: float
    p50_latency: float
    p95_latency: float
    p99_latency: float
    max_latency: float
    error_rate: float
    transfer_total: int

    @classmethod
    def from_result(cls, result: BenchmarkResult) -> FrameworkSummary:
        s = result.overall_stats
        return cls(
            total_requests=s.total_requests,
            successful_requests=s.successful_requests,
            failed_requests=s.failed_requests,
            requests_per_second=round_half_up(s.requests_per_second, 2),
            avg_latency=round_half_up(s.average_response_time, 2),
            p50_latency=round_half_up(s.p50_response_time, 2),
            p95_latency=round_half_up(s.p95_response_time, 2),
            p99_latency=round_half_up(s.p99_response_time, 2),
            max_latency=round_half_up(s.max_response_time, 2),
            error_rate=round_half_up(s.error_rate * 100.0, 2),
            transfer_total=s.total_response_size,
        )


@dataclass(frozen=True, slots=True)
class FrameworkResult:
    name: str
    port: int
    result: BenchmarkResult
    summary: FrameworkSummary
    warmup: WarmupReport | None = None


@dataclass(frozen=True, slots=True)
class RankingEntry:
    rank: int
    name: str
    rps: float
    avg_latency: float
    p99_latency: float
    error_rate: float
    relative_performance: int


@dataclass(slots=True)
class ComparisonResult:
    name: str
    start_time: float
    description: str | None = None
    end_time: float = 0.0
    frameworks: list[FrameworkResult] = field(default_factory=list)
    ranking: list[RankingEntry] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float:
        if self.end_time <= 0:
            return 0.0
        return (self.end_time - self.start_time) * 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "frameworks": [
                {
                    "name": f.name,
                    "port": f.port,
                    "summary": asdict(f.summary),
                    "warmup": asdict(f.warmup) if f.warmup is not None else None,
                    "result": f.result.to_dict(),
                }
                for f in self.frameworks
            ],
            "ranking": [asdict(r) for r in self.ranking],
            "failures": dict(self.failures),
        }


def calculate_ranking(results: Sequence[FrameworkResult]) -> list[RankingEntry]:
    """
    Rank by requests/sec, highest first.

    relative_performance = round(rps / top_rps * 100); a top rps of 0 counts as 1.
    """
    ordered = sorted(results, key=lambda r: r.summary.requests_per_second, reverse=True)
    top = ordered[0].summary.requests_per_second if ordered else 0.0
    top = top or 1.0

    return [
        RankingEntry(
            rank=i + 1,
            name=r.name,
            rps=r.summary.requests_per_second,
            avg_latency=r.summary.avg_latency,
            p99_latency=r.summary.p99_latency,
            error_rate=r.summary.error_rate,
            relative_performance=int(round_half_up(r.summary.requests_per_second / top * 100.0)),
        )
        for i, r in enumerate(ordered)
    ]


def build_target_config(cfg: ComparisonConfig, target: TargetSpec) -> BenchmarkConfig:
    """One parallel group of the shared scenarios, pointed at `target`."""
    cases = tuple(
        TestCase(
            name=s.name,
            weight=s.weight,
            method=s.method,
            url=s.path,
            headers=s.headers,
            body=s.body,
        )
        for s in cfg.scenarios
    )
    group = TestGroup(
        name=f"{target.name}-test",
        threads=cfg.threads,
        connections=cfg.connections,
        duration_s=cfg.duration_s,
        cases=cases,
        execution_mode=ExecutionMode.PARALLEL,
        base_url=target.base_url,
        headers={"Content-Type": "application/json"},
        timeout_s=cfg.timeout_s,
    )
    return BenchmarkConfig(
        name=f"{cfg.name} - {target.name}",
        description=cfg.description,
        groups=(group,),
    )


class Target(Protocol):
    async def warmup(self, count: int | None = None) -> WarmupReport | None: ...


ServerFactory = Callable[..., AbstractAsyncContextManager[Target]]


class ComparisonOrchestrator:
    """
    Benchmarks each target in turn with the same scenarios, then ranks them.

    Targets never overlap. A target that cannot be reached is recorded in
    `ComparisonResult.failures` and the remaining targets still run; any other
    error stops the comparison.
    """

    def __init__(
        self,
        config: ComparisonConfig,
        invoker: Invoker,
        *,
        bus: EventBus | None = None,
        keep_scripts: bool = False,
        workspace_parent: Path | None = None,
        server_factory: ServerFactory = TargetServer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self._invoker = invoker
        self._keep_scripts = keep_scripts
        self._workspace_parent = workspace_parent
        self._server_factory = server_factory
        self._clock = clock

    async def run(self) -> ComparisonResult:
        cfg = self.config
        validate_comparison(cfg)

        verify = getattr(self._invoker, "verify", None)
        if verify is not None:
            await verify()

        result = ComparisonResult(
            name=cfg.name,
            description=cfg.description,
            start_time=self._clock(),
        )

        total = len(cfg.targets)
        for idx, target in enumerate(cfg.targets):
            self.bus.log(f"[{idx + 1}/{total}] {target.name} ({target.base_url})", style="bold")
            try:
                fr = await self._run_target(target)
            except TargetUnreachableError as e:
                self.bus.log(f"{target.name}: {e}", style="red")
                result.failures[target.name] = str(e)
                continue

            result.frameworks.append(fr)
            s = fr.summary
            self.bus.log(
                f"{target.name}: rps={s.requests_per_second:.2f} avg={s.avg_latency}ms "
                f"p99={s.p99_latency}ms errors={s.error_rate}%",
                style="green",
            )

        result.ranking = calculate_ranking(result.frameworks)
        result.end_time = self._clock()
        return result

    async def _run_target(self, target: TargetSpec) -> FrameworkResult:
        async with self._server_factory(target, on_log=self.bus.log) as server:
            warmup = await server.warmup()
            engine = BenchmarkEngine(
                build_target_config(self.config, target),
                self._invoker,
                bus=self.bus,
                keep_scripts=self._keep_scripts,
                workspace_parent=self._workspace_parent,
                verify_worker=False,
            )
            bench = await engine.run()

        return FrameworkResult(
            name=target.name,
            port=target.port,
            result=bench,
            summary=FrameworkSummary.from_result(bench),
            warmup=warmup,
        )


__all__ = [
    "ComparisonOrchestrator",
    "ComparisonResult",
    "FrameworkResult",
    "FrameworkSummary",
    "RankingEntry",
    "build_target_config",
    "calculate_ranking",
]
