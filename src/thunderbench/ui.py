from __future__ import annotations

import sys
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager

from rich.console import Console, Group
from rich.live import Live
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.text import Text

from .events import CaseFinished, CaseStarted, Event, EventBus, LogEvent, ProgressEvent, StatsSnapshot
from .exec import format_command

COLOR_MODES = ("auto", "always", "never")


def console_for_color_mode(color: str) -> Console:
    mode = color.strip().lower()
    if mode == "always":
        # ANSI codes even when piped.
        return Console(force_terminal=True)
    if mode == "never":
        return Console(no_color=True)
    if mode == "auto":
        return Console()
    raise ValueError(f"Invalid color mode: {color!r} (expected auto|always|never)")


def _is_interactive_default() -> bool:
    # Live updates only when stdout is a TTY; CI logs get plain lines.
    try:
        return sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


class RunUI:
    """
    Console front-end for a benchmark run.

    - If stdout is a TTY: Rich Live renders group progress, the running
      case, the latest aggregate stats and the last N lines of worker output.
    - Otherwise: high-level lines only; worker output stays in the tail buffer
      unless `verbose` is set, in which case it is printed as it arrives.

    `attach(bus)` subscribes the UI to engine events.
    """

    def __init__(
        self,
        *,
        tail_lines: int = 10,
        color: str = "auto",
        interactive: bool | None = None,
        verbose: bool = False,
    ) -> None:
        self.console = console_for_color_mode(color)
        self._live_enabled = _is_interactive_default() if interactive is None else interactive
        self._verbose = verbose

        self._tail: deque[Text] = deque(maxlen=tail_lines)
        self._current_cmd: str | None = None
        self._status: Mapping[str, str] | None = None
        self._snapshot: StatsSnapshot | None = None

        self._overall = Progress(
            TextColumn("[bold]groups[/bold]"),
            BarColumn(bar_width=None),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
        )
        self._overall_task_id = self._overall.add_task("groups", total=0)

        self._step = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}[/bold]"),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
        )
        self._step_task_id = self._step.add_task("idle", total=None)

        self._live: Live | None = None
        self._last_refresh_s = 0.0

    @property
    def live_enabled(self) -> bool:
        return self._live_enabled

    @property
    def tail_text(self) -> list[str]:
        return [t.plain for t in self._tail]

    def set_total_steps(self, total: int) -> None:
        self._overall.update(self._overall_task_id, total=total, completed=0)
        self._refresh()

    def set_status(self, values: Mapping[str, str]) -> None:
        self._status = values
        if not self._live_enabled:
            parts = " ".join(f"{k}={v}" for k, v in values.items())
            self.console.print(f"STATUS {parts}")
        self._refresh()

    def start(self) -> None:
        if not self._live_enabled or self._live is not None:
            return
        self._live = Live(self._render(), console=self.console, refresh_per_second=4)
        self._live.start()

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.update(self._render())
        self._live.stop()
        self._live = None

    def _refresh(self) -> None:
        if self._live is None:
            return
        now = time.monotonic()
        if (now - self._last_refresh_s) < 0.20:
            return
        self._last_refresh_s = now
        self._live.update(self._render())

    def tail(self, message: str, *, style: str | None = None) -> None:
        """Append to the rolling tail buffer. Prints in non-TTY mode only when verbose."""
        msg = Text(message)
        if style is not None:
            msg.stylize(style)
        self._tail.append(msg)
        if self._verbose and not self._live_enabled:
            self.console.print(msg)
        self._refresh()

    def log(self, message: str, *, style: str | None = None) -> None:
        """High-level log line (prints in non-TTY, shows in tail in TTY)."""
        if self._live_enabled:
            self.tail(message, style=style)
            return

        text = Text(message)
        if style is not None:
            text.stylize(style)
        self.console.print(text)
        self._tail.append(text)

    def set_current_command(self, *, label: str, argv: Sequence[str]) -> None:
        self._current_cmd = f"{label}: {format_command(argv)}"
        if self._live_enabled:
            self._refresh()
        else:
            self.console.print(Text(f"cmd[{label}]: ", style="bold") + Text(format_command(argv)))

    @contextmanager
    def step(self, title: str) -> Iterator[None]:
        if not self._live_enabled:
            self.console.print(Text("==> ", style="bold cyan") + Text(title))
            try:
                yield
            finally:
                self.console.print(Text("<== ", style="bold cyan") + Text(title))
            return

        self._step.update(self._step_task_id, description=title)
        self._refresh()
        try:
            yield
        finally:
            self._step.update(self._step_task_id, description="idle")
            self._refresh()

    def attach(self, bus: EventBus) -> Callable[[], None]:
        """Render engine events; returns the unsubscribe function."""
        return bus.subscribe(self.handle_event)

    def handle_event(self, event: Event) -> None:
        if isinstance(event, LogEvent):
            if event.tail:
                self.tail(event.message, style=event.style or "dim")
            else:
                self.log(event.message, style=event.style)
        elif isinstance(event, CaseStarted):
            self.set_current_command(label=f"{event.group_name}/{event.case_name}", argv=event.argv)
        elif isinstance(event, CaseFinished):
            self._on_case_finished(event)
        elif isinstance(event, ProgressEvent):
            self._overall.update(
                self._overall_task_id,
                total=event.total_groups,
                completed=event.completed_groups,
            )
            self.log(
                f"progress: {event.completed_groups}/{event.total_groups} group(s) "
                f"({event.percentage:.0f}%) after {event.group_name!r}",
                style="cyan",
            )
        elif isinstance(event, StatsSnapshot):
            self._snapshot = event
            self._refresh()

    def _on_case_finished(self, event: CaseFinished) -> None:
        label = f"{event.group_name}/{event.case_name}"
        if event.error is not None:
            first = event.error.splitlines()[0] if event.error else ""
            self.log(f"FAIL {label}: {first}", style="red")
            return
        r = event.result
        if r is None or r.skipped:
            self.log(f"SKIP {label}", style="yellow")
            return
        self.log(
            f"OK {label}: rps={r.requests_per_second:.2f} requests={r.total_requests} "
            f"avg={r.latency.avg:.2f}ms p99={r.latency.p99:.2f}ms",
            style="green",
        )

    def _render(self) -> Group:
        return Group(
            self._render_status(),
            self._overall,
            self._step,
            self._render_command(),
            self._render_snapshot(),
            self._render_tail(),
        )

    def _render_status(self) -> Text:
        if not self._status:
            return Text("STATUS -", style="dim")
        parts = " ".join(f"{k}={v}" for k, v in self._status.items())
        return Text(f"STATUS {parts}")

    def _render_command(self) -> Text:
        if self._current_cmd is None:
            return Text("CMD -", style="dim")
        return Text("CMD ", style="bold") + Text(self._current_cmd)

    def _render_snapshot(self) -> Text:
        if self._snapshot is None:
            return Text("STATS -", style="dim")
        s = self._snapshot.stats
        return Text(
            f"STATS groups={self._snapshot.completed_groups} requests={s.total_requests} "
            f"rps={s.requests_per_second:.2f} errors={s.error_rate * 100.0:.2f}% "
            f"p99={s.p99_response_time:.2f}ms"
        )

    def _render_tail(self) -> Text:
        if not self._tail:
            return Text("TAIL (empty)", style="dim")
        body = Text("TAIL\n", style="bold")
        body.append(Text("\n").join(self._tail))
        return body


__all__ = ["COLOR_MODES", "RunUI", "console_for_color_mode"]
