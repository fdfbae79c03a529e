from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from .app import (
    EXAMPLES,
    create_example,
    run_benchmark_from_file,
    run_comparison_from_file,
    validate_file,
)
from .config import ComparisonConfig, env_bool, env_int, env_path
from .errors import ConfigurationError
from .ui import COLOR_MODES

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    pretty_exceptions_enable=True,
    help="Weighted multi-case HTTP benchmarks driven by wrk.",
)

ConfigArg = Annotated[
    Path,
    typer.Argument(
        help="Benchmark config file (.json or .toml).",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
]
WorkerOpt = Annotated[
    Path | None,
    typer.Option(
        "--wrk",
        help="Path to the wrk executable (defaults to wrk on PATH).",
        envvar="THUNDERBENCH_WRK",
    ),
]
OutputOpt = Annotated[
    Path | None,
    typer.Option(
        "--output",
        help="Directory for timestamped reports.",
        envvar="THUNDERBENCH_OUTPUT",
        file_okay=False,
    ),
]
NoReportOpt = Annotated[
    bool,
    typer.Option("--no-report", help="Do not write report.json / report.md."),
]
KeepScriptsOpt = Annotated[
    bool,
    typer.Option("--keep-scripts", help="Keep the generated per-case Lua scripts."),
]
ColorOpt = Annotated[
    str,
    typer.Option(
        "--color",
        help="Color output mode (auto|always|never). Use always when piping to tail.",
        envvar="THUNDERBENCH_COLOR",
        show_default=True,
    ),
]

NoProgressOpt = Annotated[
    bool,
    typer.Option("--no-progress", help="Plain log lines instead of the live progress display."),
]
VerboseOpt = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Also print worker output lines when not live."),
]

def _normalize_color(color: str) -> str:
    color_norm = color.strip().lower()
    if color_norm not in COLOR_MODES:
        raise ConfigurationError(
            f"Invalid --color value: {color!r} (expected one of: auto, always, never)"
        )
    return color_norm


def _output_dir(output: Path | None) -> Path:
    if output is not None:
        return output
    env_out = env_path("THUNDERBENCH_OUTPUT")
    return env_out if env_out is not None else Path.cwd() / "reports"


def _keep_scripts(flag: bool) -> bool:
    return flag or env_bool("THUNDERBENCH_KEEP_SCRIPTS", default=False)


@app.command()
def run(
    config: ConfigArg,
    wrk: WorkerOpt = None,
    output: OutputOpt = None,
    no_report: NoReportOpt = False,
    keep_scripts: KeepScriptsOpt = False,
    threads: Annotated[
        int | None,
        typer.Option("--threads", help="Override threads for every group.", min=1),
    ] = None,
    connections: Annotated[
        int | None,
        typer.Option("--connections", help="Override connections for every group.", min=1),
    ] = None,
    duration: Annotated[
        str | None,
        typer.Option("--duration", help="Override duration for every group (e.g. 30s, 1m)."),
    ] = None,
    timeout: Annotated[
        str | None,
        typer.Option(
            "--timeout", help="Override the per-request timeout for every group (e.g. 5s, 500ms)."
        ),
    ] = None,
    color: ColorOpt = "auto",
    no_progress: NoProgressOpt = False,
    verbose: VerboseOpt = False,
) -> None:
    """
    Run every group of a benchmark config in order.
    """
    try:
        outcome = run_benchmark_from_file(
            config,
            worker=wrk,
            output_dir=_output_dir(output),
            write_report=not no_report,
            keep_scripts=_keep_scripts(keep_scripts),
            threads=threads if threads is not None else env_int("THUNDERBENCH_THREADS"),
            connections=(
                connections if connections is not None else env_int("THUNDERBENCH_CONNECTIONS")
            ),
            duration=duration,
            timeout=timeout,
            color=_normalize_color(color),
            progress=not no_progress,
            verbose=verbose,
        )
    except ConfigurationError as e:
        typer.secho(f"CONFIG ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from e
    except Exception as e:
        typer.secho(f"ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from e

    if not outcome.ok():
        raise typer.Exit(code=1)


@app.command()
def validate(config: ConfigArg) -> None:
    """
    Load and validate a config without running anything.
    """
    try:
        cfg = validate_file(config)
    except ConfigurationError as e:
        typer.secho(f"CONFIG ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from e

    if isinstance(cfg, ComparisonConfig):
        typer.secho(
            f"OK: comparison {cfg.name!r} ({len(cfg.scenarios)} scenario(s), "
            f"{len(cfg.targets)} target(s))",
            fg=typer.colors.GREEN,
        )
        return

    cases = sum(len(g.cases) for g in cfg.groups)
    typer.secho(
        f"OK: benchmark {cfg.name!r} ({len(cfg.groups)} group(s), {cases} case(s))",
        fg=typer.colors.GREEN,
    )


@app.command()
def compare(
    config: ConfigArg,
    wrk: WorkerOpt = None,
    output: OutputOpt = None,
    no_report: NoReportOpt = False,
    keep_scripts: KeepScriptsOpt = False,
    color: ColorOpt = "auto",
    no_progress: NoProgressOpt = False,
    verbose: VerboseOpt = False,
) -> None:
    """
    Benchmark several target servers with the same scenarios and rank them.

    Exits non-zero if any target could not be benchmarked.
    """
    try:
        outcome = run_comparison_from_file(
            config,
            worker=wrk,
            output_dir=_output_dir(output),
            write_report=not no_report,
            keep_scripts=_keep_scripts(keep_scripts),
            color=_normalize_color(color),
            progress=not no_progress,
            verbose=verbose,
        )
    except ConfigurationError as e:
        typer.secho(f"CONFIG ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from e
    except Exception as e:
        typer.secho(f"ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from e

    if not outcome.ok():
        raise typer.Exit(code=1)


@app.command("list-examples")
def list_examples() -> None:
    """
    List the bundled example configs.
    """
    for name, (filename, summary) in EXAMPLES.items():
        typer.echo(f"{name:<10} {filename:<14} {summary}")


@app.command("create-example")
def create_example_cmd(
    name: Annotated[str, typer.Argument(help="Example to write (see list-examples).")] = "simple",
    dest: Annotated[
        Path | None,
        typer.Option("--dest", help="Target file or directory (defaults to the current directory)."),
    ] = None,
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing file.")] = False,
) -> None:
    """
    Write a bundled example config to start from.
    """
    try:
        path = create_example(name, dest, force=force)
    except ConfigurationError as e:
        typer.secho(f"CONFIG ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from e

    typer.secho(f"wrote {path}", fg=typer.colors.GREEN)

def main() -> None:
    """
    Programmatic entrypoint used by `project.scripts`.
    """
    app(prog_name="thunderbench")


if __name__ == "__main__":
    main()
