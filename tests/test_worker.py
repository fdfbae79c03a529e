from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from thunderbench.errors import WorkerExecutionError, WorkerNotFoundError
from thunderbench.worker import WorkerInvocation, WorkerInvoker, detect_worker

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh scripts as a fake wrk")

FIXTURES = Path(__file__).parent / "fixtures"


def _fake_wrk(tmp_path: Path, body: str, *, name: str = "wrk") -> Path:
    p = tmp_path / name
    p.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return p


def _report_wrk(tmp_path: Path) -> tuple[Path, Path]:
    args_file = tmp_path / "args.txt"
    exe = _fake_wrk(
        tmp_path,
        'if [ "$1" = "-v" ]; then\n'
        '  echo "wrk 4.2.0 [epoll] Copyright (C) 2012 Will Glozer"\n'
        "  exit 1\n"
        "fi\n"
        f'echo "$@" > "{args_file}"\n'
        f'cat "{FIXTURES / "wrk_plain_stdout.txt"}"\n',
    )
    return exe, args_file


def test_detect_worker_explicit_path(tmp_path: Path) -> None:
    exe = _fake_wrk(tmp_path, "exit 0\n")
    assert detect_worker(exe) == exe


def test_detect_worker_explicit_missing(tmp_path: Path) -> None:
    with pytest.raises(WorkerNotFoundError):
        detect_worker(tmp_path / "nope" / "wrk")


def test_detect_worker_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    exe = _fake_wrk(tmp_path, "exit 0\n", name="my-wrk")
    monkeypatch.setenv("THUNDERBENCH_WRK", str(exe))
    assert detect_worker() == exe


def test_detect_worker_from_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    exe = _fake_wrk(tmp_path, "exit 0\n")
    monkeypatch.delenv("THUNDERBENCH_WRK", raising=False)
    monkeypatch.setenv("PATH", str(tmp_path))
    assert detect_worker() == exe


def test_detect_worker_not_on_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("THUNDERBENCH_WRK", raising=False)
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(WorkerNotFoundError, match="PATH"):
        detect_worker()


def test_invocation_argv() -> None:
    inv = WorkerInvocation(
        threads=2,
        connections=10,
        duration_s=5,
        url="http://h:1/x",
        script_path=Path("/tmp/s.lua"),
        request_timeout_s=2,
    )
    assert inv.argv(Path("wrk")) == [
        "wrk",
        "-t2",
        "-c10",
        "-d5s",
        "-s",
        "/tmp/s.lua",
        "--latency",
        "--timeout",
        "2s",
        "http://h:1/x",
    ]
    assert inv.process_timeout_s() == 35.0


@pytest.mark.asyncio
async def test_verify_accepts_informational_exit(tmp_path: Path) -> None:
    exe, _ = _report_wrk(tmp_path)
    banner = await WorkerInvoker(exe).verify()
    assert banner.startswith("wrk 4.2.0")


@pytest.mark.asyncio
async def test_invoke_returns_stdout_and_passes_flags(tmp_path: Path) -> None:
    exe, args_file = _report_wrk(tmp_path)
    lines: list[str] = []
    commands: list[list[str]] = []

    out = await WorkerInvoker(exe).invoke(
        WorkerInvocation(threads=2, connections=10, duration_s=1, url="http://127.0.0.1:3000/"),
        on_stdout_line=lines.append,
        on_command=commands.append,
    )

    assert "60000 requests in 5.00s" in out
    assert any("Requests/sec" in line for line in lines)
    assert commands[0][1:] == ["-t2", "-c10", "-d1s", "--latency", "http://127.0.0.1:3000/"]
    assert args_file.read_text(encoding="utf-8").split() == commands[0][1:]


@pytest.mark.asyncio
async def test_invoke_nonzero_exit_raises_with_stderr(tmp_path: Path) -> None:
    exe = _fake_wrk(tmp_path, 'echo "unable to connect" >&2\nexit 3\n')
    with pytest.raises(WorkerExecutionError) as ei:
        await WorkerInvoker(exe).invoke(
            WorkerInvocation(threads=1, connections=1, duration_s=1, url="http://h:1/")
        )
    assert ei.value.returncode == 3
    assert "unable to connect" in ei.value.stderr_tail
    assert "unable to connect" in str(ei.value)


@pytest.mark.asyncio
async def test_invoke_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(WorkerNotFoundError):
        await WorkerInvoker(tmp_path / "missing-wrk").invoke(
            WorkerInvocation(threads=1, connections=1, duration_s=1, url="http://h:1/")
        )


@pytest.mark.asyncio
async def test_invoke_timeout_kills_process(tmp_path: Path) -> None:
    exe = _fake_wrk(tmp_path, "exec sleep 30\n")
    with pytest.raises(WorkerExecutionError, match="timeout"):
        await WorkerInvoker(exe).invoke(
            WorkerInvocation(
                threads=1, connections=1, duration_s=1, url="http://h:1/", timeout_s=0.5
            )
        )
