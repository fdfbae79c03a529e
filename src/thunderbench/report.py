from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from .comparison import ComparisonResult, RankingEntry
from .config import BenchmarkConfig, TestGroup
from .results import BenchmarkResult, GroupResult
from .stats import DetailedStats

REPORT_JSON = "report.json"
REPORT_MD = "report.md"


def _mb_from_bytes(n: int) -> float:
    return float(n) / 1024.0 / 1024.0


def _success_pct(s: DetailedStats) -> float:
    if s.total_requests == 0:
        return 0.0
    return s.successful_requests / s.total_requests * 100.0


def report_dir_name(when: datetime) -> str:
    return when.strftime("%Y-%m-%d_%H-%M-%S")


def _new_report_dir(base_dir: Path, now: Callable[[], datetime]) -> Path:
    out = base_dir / report_dir_name(now())
    out.mkdir(parents=True, exist_ok=True)
    return out


def format_group_summary_line(group: GroupResult) -> str:
    s = group.merged_stats
    return (
        f"{group.name}: rps={s.requests_per_second:.2f} "
        f"requests={s.total_requests} errors={s.error_rate * 100.0:.2f}% | "
        f"latency_ms avg={s.average_response_time:.2f} p50={s.p50_response_time:.2f} "
        f"p95={s.p95_response_time:.2f} p99={s.p99_response_time:.2f} max={s.max_response_time:.2f}"
    )


def format_overall_summary_lines(result: BenchmarkResult) -> list[str]:
    s = result.overall_stats
    return [
        f"benchmark {result.name!r}: {len(result.groups)} group(s) in {result.duration_ms / 1000.0:.1f}s",
        *(format_group_summary_line(g) for g in result.groups),
        (
            f"overall: rps={s.requests_per_second:.2f} requests={s.total_requests} "
            f"ok={s.successful_requests} failed={s.failed_requests} "
            f"timeouts={s.timeout_requests} read_mb={_mb_from_bytes(s.total_response_size):.2f}"
        ),
    ]


def format_ranking_line(entry: RankingEntry) -> str:
    return (
        f"#{entry.rank} {entry.name}: rps={entry.rps:.2f} ({entry.relative_performance}%) "
        f"avg={entry.avg_latency:.2f}ms p99={entry.p99_latency:.2f}ms errors={entry.error_rate:.2f}%"
    )


def format_ranking_lines(result: ComparisonResult) -> list[str]:
    lines = [format_ranking_line(e) for e in result.ranking]
    for name, err in result.failures.items():
        first = err.splitlines()[0] if err else ""
        lines.append(f"FAIL {name}: {first}")
    return lines


def render_markdown(result: BenchmarkResult, config: BenchmarkConfig | None = None) -> str:
    s = result.overall_stats
    out = [
        f"# {result.name}",
        "",
    ]
    if config is not None and config.description:
        out += [config.description, ""]

    out += [
        f"Duration: {result.duration_ms / 1000.0:.1f}s",
        "",
        "## Overall",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total requests | {s.total_requests} |",
        f"| Successful | {s.successful_requests} |",
        f"| Failed | {s.failed_requests} |",
        f"| Success rate | {_success_pct(s):.2f}% |",
        f"| Requests/sec | {s.requests_per_second:.2f} |",
        f"| Avg latency (ms) | {s.average_response_time:.2f} |",
        f"| P95 latency (ms) | {s.p95_response_time:.2f} |",
        f"| P99 latency (ms) | {s.p99_response_time:.2f} |",
        "",
        "## Groups",
        "",
        "| Rank | Group | Requests/sec | Avg latency (ms) | Success rate | Read (MB) |",
        "|------|-------|--------------|------------------|--------------|-----------|",
    ]

    ranked = sorted(result.groups, key=lambda g: g.merged_stats.requests_per_second, reverse=True)
    for rank, g in enumerate(ranked, start=1):
        gs = g.merged_stats
        out.append(
            f"| {rank} | {g.name} | {gs.requests_per_second:.2f} | {gs.average_response_time:.2f} "
            f"| {_success_pct(gs):.2f}% | {_mb_from_bytes(gs.total_response_size):.2f} |"
        )

    groups_by_name: dict[str, TestGroup] = {}
    if config is not None:
        groups_by_name = {g.name: g for g in config.groups}

    for g in result.groups:
        out += ["", f"### {g.name}", ""]
        gc = groups_by_name.get(g.name)
        if gc is not None:
            line = (
                f"Mode: {gc.execution_mode.value} | threads: {gc.threads} | "
                f"connections: {gc.connections} | duration: {gc.duration_s}s"
            )
            if gc.delay_ms:
                line += f" | delay: {gc.delay_ms}ms"
            out += [line, ""]

        out += [
            "| Case | Threads | Connections | Requests | Requests/sec | Avg (ms) | P99 (ms) | Errors |",
            "|------|---------|-------------|----------|--------------|----------|----------|--------|",
        ]
        for c in g.case_results:
            if c.skipped:
                out.append(f"| {c.name} | - | - | 0 | - | - | - | skipped |")
                continue
            out.append(
                f"| {c.name} | {c.threads} | {c.connections} | {c.total_requests} "
                f"| {c.requests_per_second:.2f} | {c.latency.avg:.2f} | {c.latency.p99:.2f} "
                f"| {c.failed_requests} |"
            )

    return "\n".join(out) + "\n"


def render_comparison_markdown(result: ComparisonResult) -> str:
    out = [f"# {result.name}", ""]
    if result.description:
        out += [result.description, ""]
    out += [
        "| Rank | Target | Requests/sec | Relative | Avg latency (ms) | P99 latency (ms) | Error rate |",
        "|------|--------|--------------|----------|------------------|------------------|------------|",
    ]
    for e in result.ranking:
        out.append(
            f"| {e.rank} | {e.name} | {e.rps:.2f} | {e.relative_performance}% "
            f"| {e.avg_latency:.2f} | {e.p99_latency:.2f} | {e.error_rate:.2f}% |"
        )
    if result.failures:
        out += ["", "## Failed targets", ""]
        for name, err in result.failures.items():
            first = err.splitlines()[0] if err else ""
            out.append(f"- {name}: {first}")
    return "\n".join(out) + "\n"


def save_report(
    result: BenchmarkResult,
    config: BenchmarkConfig | None,
    base_dir: Path,
    *,
    now: Callable[[], datetime] = datetime.now,
) -> Path:
    """Write report.json and report.md into a new timestamped directory; returns it."""
    out = _new_report_dir(base_dir, now)
    payload: dict[str, Any] = {"result": result.to_dict()}
    if config is not None:
        payload["config"] = {"name": config.name, "description": config.description}
    (out / REPORT_JSON).write_text(json.dumps(payload, indent=2), encoding="utf-8")
    (out / REPORT_MD).write_text(render_markdown(result, config), encoding="utf-8")
    return out


def save_comparison_report(
    result: ComparisonResult,
    base_dir: Path,
    *,
    now: Callable[[], datetime] = datetime.now,
) -> Path:
    out = _new_report_dir(base_dir, now)
    (out / REPORT_JSON).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    (out / REPORT_MD).write_text(render_comparison_markdown(result), encoding="utf-8")
    return out


__all__ = [
    "format_group_summary_line",
    "format_overall_summary_lines",
    "format_ranking_lines",
    "render_comparison_markdown",
    "render_markdown",
    "report_dir_name",
    "save_comparison_report",
    "save_report",
]
