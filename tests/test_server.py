from __future__ import annotations

import socket
import sys
from pathlib import Path

import pytest

from thunderbench.config import TargetSpec
from thunderbench.errors import TargetUnreachableError
from thunderbench.server import TargetServer


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_health_url_joins_path() -> None:
    spec = TargetSpec(name="t", port=8080, health_check_path="health")
    assert TargetServer(spec).health_url == "http://127.0.0.1:8080/health"


@pytest.mark.asyncio
async def test_spawned_target_becomes_healthy_and_warms_up(tmp_path: Path) -> None:
    port = _free_port()
    logs: list[str] = []
    spec = TargetSpec(
        name="static",
        port=port,
        command=(sys.executable, "-m", "http.server", str(port), "--bind", "127.0.0.1"),
        cwd=tmp_path,
        startup_timeout_s=20.0,
        warmup_requests=5,
    )

    async with TargetServer(spec, on_log=logs.append) as server:
        report = await server.warmup()

    assert report is not None
    assert report.requests == 5
    assert report.failed == 0
    assert report.latency.count == 5
    assert any("healthy" in line for line in logs)
    assert any("stopping static" in line for line in logs)


@pytest.mark.asyncio
async def test_warmup_disabled_returns_none() -> None:
    server = TargetServer(TargetSpec(name="t", port=1))
    assert await server.warmup() is None
    assert await server.warmup(count=0) is None


@pytest.mark.asyncio
async def test_early_exit_reports_stderr() -> None:
    spec = TargetSpec(
        name="crashy",
        port=_free_port(),
        command=(sys.executable, "-c", "import sys; sys.stderr.write('boom on start\\n'); sys.exit(3)"),
        startup_timeout_s=20.0,
    )
    with pytest.raises(TargetUnreachableError, match="exited early") as ei:
        async with TargetServer(spec):
            pass
    assert "boom on start" in str(ei.value)


@pytest.mark.asyncio
async def test_unreachable_target_times_out() -> None:
    spec = TargetSpec(name="ghost", port=_free_port(), startup_timeout_s=0.3)
    with pytest.raises(TargetUnreachableError, match="not healthy"):
        async with TargetServer(spec):
            pass


@pytest.mark.asyncio
async def test_missing_command_is_unreachable(tmp_path: Path) -> None:
    spec = TargetSpec(name="nope", port=_free_port(), command=(str(tmp_path / "no-such-binary"),))
    with pytest.raises(TargetUnreachableError, match="cannot start"):
        async with TargetServer(spec):
            pass
