from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from thunderbench.worker import WorkerInvocation


def _read_fixture(name: str) -> str:
    fixtures_dir = Path(__file__).parent / "fixtures"
    return (fixtures_dir / name).read_text(encoding="utf-8")


@dataclass
class Call:
    case: str
    invocation: WorkerInvocation
    script: str
    started: float
    finished: float | None = None


@dataclass
class FakeInvoker:
    """
    Stands in for WorkerInvoker.

    `outcomes` maps case name to the stdout to return or an exception to raise
    (default: the plain wrk fixture). Each call sleeps `run_s` first.
    """

    outcomes: dict[str, str | BaseException] = field(default_factory=dict)
    run_s: float = 0.0
    calls: list[Call] = field(default_factory=list)
    verify_calls: int = 0

    async def verify(self) -> str:
        self.verify_calls += 1
        return "wrk 4.2.0 (fake)"

    async def invoke(
        self,
        invocation: WorkerInvocation,
        *,
        on_stdout_line: Callable[[str], None] | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
        on_command: Callable[[list[str]], None] | None = None,
    ) -> str:
        assert invocation.script_path is not None
        # Script names are "<group>__<case>__<suffix>.lua".
        case = invocation.script_path.name.split("__")[1]
        loop = asyncio.get_running_loop()
        call = Call(
            case=case,
            invocation=invocation,
            script=invocation.script_path.read_text(encoding="utf-8"),
            started=loop.time(),
        )
        self.calls.append(call)
        if on_command is not None:
            on_command(invocation.argv(Path("wrk")))

        if self.run_s:
            await asyncio.sleep(self.run_s)

        outcome = self.outcomes.get(case, _read_fixture("wrk_plain_stdout.txt"))
        call.finished = loop.time()
        if isinstance(outcome, BaseException):
            raise outcome
        if on_stdout_line is not None:
            for line in outcome.splitlines():
                on_stdout_line(line)
        return outcome

    def call_for(self, case: str) -> Call:
        return next(c for c in self.calls if c.case == case)


@pytest.fixture
def fixture_text() -> Callable[[str], str]:
    return _read_fixture


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()
