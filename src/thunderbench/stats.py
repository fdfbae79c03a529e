"""
Statistics model and merge rules.

`DetailedStats` is the unit of aggregation at every level (case -> group ->
overall). `merge()` is associative and commutative so partial results can be
folded in any order:

- counts and byte totals add
- rates are recomputed from the merged counts (never re-averaged)
- averages and percentiles are count-weighted
- min/max take the lower/higher side, ignoring a side that saw no requests
- requests/sec adds (sub-runs are assumed to overlap in time) and `duration_s`
  keeps the longest side; use `with_throughput()` when sub-runs were sequential
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, replace


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round halves up (2.5 -> 3), not to even like the builtin round()."""
    mul = 10**ndigits
    return math.floor(value * mul + 0.5) / mul


def percentile(samples: Sequence[float], p: float) -> float:
    """
    Linear-interpolated percentile of `samples`.

    The fractional rank is p/100 * (n-1). An integral rank returns that element
    as-is; otherwise the two neighbours are interpolated and the result rounded
    to 2 decimals. Empty input returns 0.
    """
    if not (0.0 <= p <= 100.0):
        raise ValueError(f"percentile must be within 0-100, got {p!r}")

    n = len(samples)
    if n == 0:
        return 0
    if n == 1:
        return samples[0]

    ordered = sorted(samples)
    idx = p / 100.0 * (n - 1)
    lo = math.floor(idx)
    if idx == lo:
        return ordered[lo]

    hi = math.ceil(idx)
    frac = idx - lo
    value = ordered[lo] + (ordered[hi] - ordered[lo]) * frac
    return round_half_up(value, 2)


@dataclass(frozen=True, slots=True)
class DetailedStats:
    """Canonical mergeable statistics. Latencies are in milliseconds."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeout_requests: int = 0
    slow_requests: int = 0

    average_response_time: float = 0.0
    min_response_time: float = 0.0
    max_response_time: float = 0.0
    p50_response_time: float = 0.0
    p90_response_time: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0

    requests_per_second: float = 0.0

    error_rate: float = 0.0
    timeout_rate: float = 0.0
    slow_rate: float = 0.0

    total_request_size: int = 0
    total_response_size: int = 0

    duration_s: float = 0.0

    @classmethod
    def empty(cls) -> DetailedStats:
        return cls()

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)


def _weighted(a_val: float, a_n: int, b_val: float, b_n: int) -> float:
    n = a_n + b_n
    if n == 0:
        return 0.0
    return (a_val * a_n + b_val * b_n) / n


def _rate(part: int, total: int) -> float:
    return part / total if total > 0 else 0.0


def merge(a: DetailedStats, b: DetailedStats) -> DetailedStats:
    """Merge two partial summaries into one (see module docstring for the rules)."""
    na = a.total_requests
    nb = b.total_requests
    total = na + nb
    failed = a.failed_requests + b.failed_requests
    timeouts = a.timeout_requests + b.timeout_requests
    slow = a.slow_requests + b.slow_requests

    if na == 0:
        min_rt = b.min_response_time
    elif nb == 0:
        min_rt = a.min_response_time
    else:
        min_rt = min(a.min_response_time, b.min_response_time)

    return DetailedStats(
        total_requests=total,
        successful_requests=a.successful_requests + b.successful_requests,
        failed_requests=failed,
        timeout_requests=timeouts,
        slow_requests=slow,
        average_response_time=_weighted(a.average_response_time, na, b.average_response_time, nb),
        min_response_time=min_rt,
        max_response_time=max(a.max_response_time, b.max_response_time),
        p50_response_time=_weighted(a.p50_response_time, na, b.p50_response_time, nb),
        p90_response_time=_weighted(a.p90_response_time, na, b.p90_response_time, nb),
        p95_response_time=_weighted(a.p95_response_time, na, b.p95_response_time, nb),
        p99_response_time=_weighted(a.p99_response_time, na, b.p99_response_time, nb),
        requests_per_second=a.requests_per_second + b.requests_per_second,
        error_rate=_rate(failed, total),
        timeout_rate=_rate(timeouts, total),
        slow_rate=_rate(slow, total),
        total_request_size=a.total_request_size + b.total_request_size,
        total_response_size=a.total_response_size + b.total_response_size,
        duration_s=max(a.duration_s, b.duration_s),
    )


def merge_all(items: Iterable[DetailedStats]) -> DetailedStats:
    out = DetailedStats.empty()
    for s in items:
        out = merge(out, s)
    return out


def with_throughput(stats: DetailedStats, elapsed_s: float) -> DetailedStats:
    """
    Re-base requests/sec on a wall-clock span.

    Used where merged sub-runs did not overlap (sequential cases, successive
    groups), so their rates must not be summed.
    """
    if elapsed_s <= 0:
        return stats
    return replace(
        stats,
        duration_s=elapsed_s,
        requests_per_second=stats.total_requests / elapsed_s,
    )


@dataclass(frozen=True, slots=True)
class SampleSummary:
    count: int
    avg: float
    min: float
    max: float
    p50: float
    p90: float
    p95: float
    p99: float


def summarize_samples(samples: Sequence[float]) -> SampleSummary:
    """Summarize raw latency samples (ms)."""
    if not samples:
        return SampleSummary(count=0, avg=0.0, min=0.0, max=0.0, p50=0.0, p90=0.0, p95=0.0, p99=0.0)
    return SampleSummary(
        count=len(samples),
        avg=sum(samples) / len(samples),
        min=min(samples),
        max=max(samples),
        p50=percentile(samples, 50),
        p90=percentile(samples, 90),
        p95=percentile(samples, 95),
        p99=percentile(samples, 99),
    )


__all__ = [
    "DetailedStats",
    "SampleSummary",
    "merge",
    "merge_all",
    "percentile",
    "round_half_up",
    "summarize_samples",
    "with_throughput",
]
