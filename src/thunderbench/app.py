from __future__ import annotations

import asyncio
import re
from importlib import resources
from dataclasses import dataclass
from pathlib import Path

from rich.text import Text

from .comparison import ComparisonOrchestrator, ComparisonResult
from .config import (
    BenchmarkConfig,
    ComparisonConfig,
    apply_overrides,
    benchmark_config_from_dict,
    comparison_config_from_dict,
    load_raw,
    parse_duration_to_seconds,
    validate_comparison,
    validate_config,
)
from .engine import BenchmarkEngine
from .errors import ConfigurationError
from .events import EventBus
from .report import format_overall_summary_lines, format_ranking_lines, save_comparison_report, save_report
from .results import BenchmarkResult
from .ui import RunUI
from .worker import WorkerInvoker, detect_worker


@dataclass(frozen=True, slots=True)
class OverallOutcome:
    failures: int
    report_dir: Path | None = None

    def ok(self) -> bool:
        return self.failures == 0


def load_any_config(path: Path) -> BenchmarkConfig | ComparisonConfig:
    """Load a benchmark or comparison config (comparison configs declare `scenarios`)."""
    raw = load_raw(path)
    if "scenarios" in raw:
        return comparison_config_from_dict(raw)
    return benchmark_config_from_dict(raw)


def validate_file(path: Path) -> BenchmarkConfig | ComparisonConfig:
    cfg = load_any_config(path)
    if isinstance(cfg, ComparisonConfig):
        validate_comparison(cfg)
    else:
        validate_config(cfg)
    return cfg


def duration_override_seconds(value: str | None) -> int | None:
    """CLI --duration: "30s", "1m", or a bare number of seconds."""
    if value is None:
        return None
    v = value.strip()
    secs = float(v) if re.fullmatch(r"\d+(?:\.\d+)?", v) else parse_duration_to_seconds(v)
    if not secs.is_integer() or secs <= 0:
        raise ConfigurationError(f"--duration must be a positive whole number of seconds, got {value!r}")
    return int(secs)


EXAMPLES: dict[str, tuple[str, str]] = {
    "simple": ("simple.json", "single GET against a local server"),
    "complex": ("complex.toml", "multi-group scenario (parallel and sequential groups)"),
}


def example_text(name: str) -> tuple[str, str]:
    """Return (file name, contents) of a bundled example config."""
    if name not in EXAMPLES:
        known = ", ".join(sorted(EXAMPLES))
        raise ConfigurationError(f"unknown example {name!r} (available: {known})")
    filename, _ = EXAMPLES[name]
    resource = resources.files(__package__).joinpath("example_configs").joinpath(filename)
    return filename, resource.read_text(encoding="utf-8")


def create_example(name: str, dest: Path | None = None, *, force: bool = False) -> Path:
    """
    Write a bundled example config.

    `dest` may be a directory (the example keeps its file name) or a file path;
    defaults to the current directory. Existing files are only replaced with `force`.
    """
    filename, text = example_text(name)
    target = dest if dest is not None else Path.cwd()
    if target.is_dir():
        target = target / filename
    if target.exists() and not force:
        raise ConfigurationError(f"{target} already exists (use --force to overwrite)")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    return target


def timeout_override_seconds(value: str | None) -> float | None:
    """CLI --timeout: "5s", "500ms", or a bare number of seconds."""
    if value is None:
        return None
    v = value.strip()
    secs = float(v) if re.fullmatch(r"\d+(?:\.\d+)?", v) else parse_duration_to_seconds(v)
    if secs <= 0:
        raise ConfigurationError(f"--timeout must be positive, got {value!r}")
    return secs


def run_benchmark_from_file(
    path: Path,
    *,
    worker: Path | None = None,
    output_dir: Path | None = None,
    write_report: bool = True,
    keep_scripts: bool = False,
    threads: int | None = None,
    connections: int | None = None,
    duration: str | None = None,
    timeout: str | None = None,
    color: str = "auto",
    progress: bool = True,
    verbose: bool = False,
) -> OverallOutcome:
    """
    Load, validate and run a benchmark config file, then print and store the report.

    The caller (CLI) is responsible for translating failures into exit codes.
    """
    raw = load_raw(path)
    if "scenarios" in raw:
        raise ConfigurationError(f"{path} is a comparison config; use the `compare` command")

    cfg = apply_overrides(
        benchmark_config_from_dict(raw),
        threads=threads,
        connections=connections,
        duration_s=duration_override_seconds(duration),
        timeout_s=timeout_override_seconds(timeout),
    )
    validate_config(cfg)

    ui = RunUI(color=color, interactive=None if progress else False, verbose=verbose)
    bus = EventBus()
    ui.attach(bus)
    ui.set_total_steps(len(cfg.groups))

    ui.start()
    stopped = False
    try:
        with ui.step("detect worker"):
            invoker = WorkerInvoker(detect_worker(worker))

        ui.set_status(
            {
                "benchmark": cfg.name,
                "groups": str(len(cfg.groups)),
                "worker": str(invoker.executable),
            }
        )

        engine = BenchmarkEngine(cfg, invoker, bus=bus, keep_scripts=keep_scripts)
        with ui.step(f"run {cfg.name}"):
            result = asyncio.run(engine.run())

        report_dir: Path | None = None
        if write_report:
            report_dir = save_report(result, cfg, output_dir or Path("reports"))

        ui.stop()
        stopped = True
        _print_benchmark_summary(ui, result, report_dir)
        return OverallOutcome(failures=0, report_dir=report_dir)
    finally:
        if not stopped:
            ui.stop()


def run_comparison_from_file(
    path: Path,
    *,
    worker: Path | None = None,
    output_dir: Path | None = None,
    write_report: bool = True,
    keep_scripts: bool = False,
    color: str = "auto",
    progress: bool = True,
    verbose: bool = False,
) -> OverallOutcome:
    cfg = comparison_config_from_dict(load_raw(path))
    validate_comparison(cfg)

    ui = RunUI(color=color, interactive=None if progress else False, verbose=verbose)
    bus = EventBus()
    ui.attach(bus)

    ui.start()
    stopped = False
    try:
        with ui.step("detect worker"):
            invoker = WorkerInvoker(detect_worker(worker))

        ui.set_status(
            {
                "comparison": cfg.name,
                "targets": ",".join(t.name for t in cfg.targets),
                "load": f"threads={cfg.threads} conns={cfg.connections} duration={cfg.duration_s}s",
            }
        )

        orchestrator = ComparisonOrchestrator(cfg, invoker, bus=bus, keep_scripts=keep_scripts)
        with ui.step(f"compare {cfg.name}"):
            result = asyncio.run(orchestrator.run())

        report_dir: Path | None = None
        if write_report:
            report_dir = save_comparison_report(result, output_dir or Path("reports"))

        ui.stop()
        stopped = True
        _print_comparison_summary(ui, result, report_dir)
        return OverallOutcome(failures=len(result.failures), report_dir=report_dir)
    finally:
        if not stopped:
            ui.stop()


def _print_benchmark_summary(ui: RunUI, result: BenchmarkResult, report_dir: Path | None) -> None:
    console = ui.console
    console.print(Text("SUMMARY:", style="bold green"))
    for line in format_overall_summary_lines(result):
        console.print(_style_summary_line(line))
    if report_dir is not None:
        console.print(Text(f"report: {report_dir}", style="dim"))


def _print_comparison_summary(ui: RunUI, result: ComparisonResult, report_dir: Path | None) -> None:
    console = ui.console
    console.print(Text("RANKING:", style="bold green"))
    for line in format_ranking_lines(result):
        console.print(_style_summary_line(line))
    if report_dir is not None:
        console.print(Text(f"report: {report_dir}", style="dim"))


def _style_summary_line(line: str) -> Text:
    t = Text(line)

    if line.startswith("FAIL "):
        t.stylize("red")
        return t
    if line.startswith("benchmark ") or line.startswith("overall:"):
        t.stylize("bold")

    # Color rps values.
    idx = 0
    while True:
        i = line.find("rps=", idx)
        if i == -1:
            break
        j = i + 4
        while j < len(line) and (line[j].isdigit() or line[j] == "."):
            j += 1
        t.stylize("cyan", i + 4, j)
        idx = j

    return t


__all__ = [
    "OverallOutcome",
    "duration_override_seconds",
    "load_any_config",
    "run_benchmark_from_file",
    "run_comparison_from_file",
    "validate_file",
]
