from __future__ import annotations

from dataclasses import asdict, dataclass, field

from .stats import DetailedStats


@dataclass(frozen=True, slots=True)
class LatencyStats:
    """Latency distribution of one worker run, in milliseconds."""

    avg: float = 0.0
    stdev: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


@dataclass(frozen=True, slots=True)
class SocketErrors:
    connect: int = 0
    read: int = 0
    write: int = 0
    timeout: int = 0

    def total(self) -> int:
        return self.connect + self.read + self.write + self.timeout


@dataclass(frozen=True, slots=True)
class CaseResult:
    """
    Outcome of one case execution.

    `skipped` is only set for cases that were never run because their request
    budget was 0; failed cases never produce a CaseResult.
    """

    name: str
    total_requests: int
    successful_requests: int
    failed_requests: int
    timeout_count: int
    latency: LatencyStats
    bytes_transferred: int
    requests_per_second: float
    duration_s: float = 0.0
    socket_errors: SocketErrors = SocketErrors()
    non_2xx_3xx: int = 0
    threads: int = 0
    connections: int = 0
    request_budget: int | None = None
    skipped: bool = False

    @classmethod
    def skipped_case(cls, name: str) -> CaseResult:
        return cls(
            name=name,
            total_requests=0,
            successful_requests=0,
            failed_requests=0,
            timeout_count=0,
            latency=LatencyStats(),
            bytes_transferred=0,
            requests_per_second=0.0,
            request_budget=0,
            skipped=True,
        )

    def to_stats(self) -> DetailedStats:
        total = self.total_requests
        return DetailedStats(
            total_requests=total,
            successful_requests=self.successful_requests,
            failed_requests=self.failed_requests,
            timeout_requests=self.timeout_count,
            slow_requests=0,
            average_response_time=self.latency.avg,
            min_response_time=self.latency.min,
            max_response_time=self.latency.max,
            p50_response_time=self.latency.p50,
            p90_response_time=self.latency.p90,
            p95_response_time=self.latency.p95,
            p99_response_time=self.latency.p99,
            requests_per_second=self.requests_per_second,
            error_rate=self.failed_requests / total if total > 0 else 0.0,
            timeout_rate=self.timeout_count / total if total > 0 else 0.0,
            slow_rate=0.0,
            total_request_size=0,
            total_response_size=self.bytes_transferred,
            duration_s=self.duration_s,
        )

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class GroupResult:
    name: str
    merged_stats: DetailedStats
    case_results: tuple[CaseResult, ...]
    execution_mode: str = "parallel"

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "execution_mode": self.execution_mode,
            "stats": self.merged_stats.to_dict(),
            "cases": [c.to_dict() for c in self.case_results],
        }


@dataclass(slots=True)
class BenchmarkResult:
    """
    Result of a full run.

    Mutable only while the engine owns it (groups are appended as they
    complete); finalization stamps the end time and overall stats.
    """

    name: str
    start_time: float
    end_time: float = 0.0
    groups: list[GroupResult] = field(default_factory=list)
    overall_stats: DetailedStats = DetailedStats()

    @property
    def duration_ms(self) -> float:
        if self.end_time <= 0:
            return 0.0
        return (self.end_time - self.start_time) * 1000.0

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "groups": [g.to_dict() for g in self.groups],
            "overall_stats": self.overall_stats.to_dict(),
        }


__all__ = [
    "BenchmarkResult",
    "CaseResult",
    "GroupResult",
    "LatencyStats",
    "SocketErrors",
]
