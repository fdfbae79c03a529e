from __future__ import annotations

import math
from dataclasses import replace
from typing import Protocol

from .config import TestCase, TestGroup
from .events import CaseFinished, CaseStarted, EventBus, LogEvent
from .exec import LineCallback
from .parse import parse_wrk_output
from .results import CaseResult
from .scripts import Workspace, build_request, render_lua_script
from .worker import CommandCallback, WorkerInvocation


class Invoker(Protocol):
    async def invoke(
        self,
        invocation: WorkerInvocation,
        *,
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
        on_command: CommandCallback | None = None,
    ) -> str: ...


def allocate_share(total: int, weight: float) -> int:
    """Weighted share of a thread/connection budget; never below 1."""
    return max(1, math.floor(total * weight / 100.0))


class CaseRunner:
    """
    Runs one case: allocate capacity, render the request script, invoke the
    worker and parse its report.

    Failures are raised to the caller; a failed case never yields a result.
    """

    def __init__(self, invoker: Invoker, workspace: Workspace, bus: EventBus | None = None) -> None:
        self._invoker = invoker
        self._workspace = workspace
        self._bus = bus or EventBus()

    async def run(
        self,
        group: TestGroup,
        case: TestCase,
        *,
        request_budget: int | None = None,
    ) -> CaseResult:
        if request_budget == 0:
            result = CaseResult.skipped_case(case.name)
            self._bus.publish(
                LogEvent(message=f"{group.name}/{case.name}: skipped (request budget 0)", style="dim")
            )
            self._bus.publish(CaseFinished(group_name=group.name, case_name=case.name, result=result))
            return result

        threads = allocate_share(group.threads, case.weight)
        if request_budget is not None:
            threads = min(threads, request_budget)
        # wrk refuses fewer connections than threads.
        connections = max(threads, allocate_share(group.connections, case.weight))

        template = build_request(
            base_url=group.base_url,
            group_headers=group.headers,
            method=case.method,
            url=case.url,
            headers=case.headers,
            body=case.body,
            query=case.query,
        )
        script = render_lua_script(template, request_budget=request_budget, threads=threads)
        script_path = self._workspace.write_script(group.name, case.name, script)

        invocation = WorkerInvocation(
            threads=threads,
            connections=connections,
            duration_s=group.duration_s,
            url=template.full_url(),
            script_path=script_path,
            latency=group.latency,
            request_timeout_s=group.timeout_s,
        )

        def on_command(argv: list[str]) -> None:
            self._bus.publish(
                CaseStarted(group_name=group.name, case_name=case.name, argv=tuple(argv))
            )

        def on_line(line: str) -> None:
            self._bus.publish(LogEvent(message=f"[{case.name}] {line}", tail=True))

        def on_err_line(line: str) -> None:
            self._bus.publish(LogEvent(message=f"[{case.name}] {line}", style="red", tail=True))

        try:
            stdout = await self._invoker.invoke(
                invocation,
                on_stdout_line=on_line,
                on_stderr_line=on_err_line,
                on_command=on_command,
            )
            result = parse_wrk_output(stdout, name=case.name)
        except Exception as e:
            self._bus.publish(
                CaseFinished(group_name=group.name, case_name=case.name, result=None, error=str(e))
            )
            raise

        result = replace(
            result,
            threads=threads,
            connections=connections,
            request_budget=request_budget,
        )
        self._bus.publish(CaseFinished(group_name=group.name, case_name=case.name, result=result))
        return result


__all__ = ["CaseRunner", "Invoker", "allocate_share"]
