"""
Parser for the worker's (wrk) human-readable report.

This is the wire contract with the worker, so it is kept in one place. The
grammar, by example:

    Running 10s test @ http://127.0.0.1:8080/
      4 threads and 64 connections
      Thread Stats   Avg      Stdev     Max   +/- Stdev
        Latency     1.20ms  512.33us  13.70ms   87.31%
        Req/Sec    13.47k     1.02k   15.90k    71.00%
      Latency Distribution
         50%    1.10ms
         75%    1.42ms
         90%    1.83ms
         99%    3.07ms
      536245 requests in 10.01s, 66.48MB read
      Socket errors: connect 0, read 12, write 0, timeout 3
      Non-2xx or 3xx responses: 2
    Requests/sec:  53572.84
    Transfer/sec:      6.64MB

Only the "N requests in D" line is mandatory. Everything else degrades to a
derived value (see `backfill_percentiles`).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from .errors import UnparsableOutputError
from .results import CaseResult, LatencyStats, SocketErrors

_DIAG_MAX_CHARS: Final[int] = 4096

_TIME_RE: Final[re.Pattern[str]] = re.compile(r"^(?P<num>[0-9]+(?:\.[0-9]+)?)(?P<unit>us|ms|s|m|h)?$")
_SIZE_RE: Final[re.Pattern[str]] = re.compile(r"^(?P<num>[0-9]+(?:\.[0-9]+)?)(?P<unit>B|KB|MB|GB|TB)?$")
_REQUESTS_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<count>[0-9]+)\s+requests\s+in\s+(?P<dur>[0-9.]+(?:us|ms|s|m|h)?)"
    r"(?:\s*,\s*(?P<size>[0-9.]+[KMGT]?B)\s+read)?"
)
_PCT_LINE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<pct>[0-9]+(?:\.[0-9]+)?)%\s+(?P<val>[0-9.]+(?:us|ms|s|m|h)?)$"
)

_TIME_TO_MS: Final[dict[str, float]] = {
    "us": 0.001,
    "ms": 1.0,
    "s": 1000.0,
    "m": 60_000.0,
    "h": 3_600_000.0,
}

_SIZE_TO_BYTES: Final[dict[str, int]] = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}

REPORTED_PERCENTILES: Final[tuple[int, ...]] = (50, 75, 90, 95, 99)


@dataclass(frozen=True, slots=True)
class ParseDiagnostics:
    kind: str
    message: str
    stdout_tail: str

    def format(self) -> str:
        out = truncate(self.stdout_tail, _DIAG_MAX_CHARS)
        return f"{self.message}\n--- {self.kind} stdout (tail) ---\n{out}"


def parse_time_ms(token: str) -> float | None:
    """
    Parse a wrk time token to milliseconds.

    Handles: 594.42us, 1.20ms, 10.01s, 1.00m. A bare number is taken as ms.
    """
    m = _TIME_RE.match(token.strip())
    if m is None:
        return None
    unit = m.group("unit") or "ms"
    return float(m.group("num")) * _TIME_TO_MS[unit]


def parse_size_bytes(token: str) -> int | None:
    """Parse a wrk size token (66.48MB, 512.00KB, 10B) to bytes (binary multiples)."""
    m = _SIZE_RE.match(token.strip())
    if m is None:
        return None
    unit = m.group("unit") or "B"
    return int(round(float(m.group("num")) * _SIZE_TO_BYTES[unit]))


def parse_wrk_output(stdout: str, *, name: str = "") -> CaseResult:
    """
    Parse a full wrk report into a CaseResult.

    Raises
    ------
    UnparsableOutputError
        If the "N requests in D" line is missing.
    """
    requests: int | None = None
    duration_ms = 0.0
    bytes_read = 0
    rps: float | None = None

    avg = 0.0
    stdev = 0.0
    max_lat = 0.0
    known: dict[float, float] = {}

    errors = SocketErrors()
    non_2xx = 0

    in_distribution = False

    for raw in stdout.splitlines():
        line = raw.strip()
        if not line:
            continue

        if in_distribution:
            m = _PCT_LINE_RE.match(line)
            if m is not None:
                v = parse_time_ms(m.group("val"))
                if v is not None:
                    known[float(m.group("pct"))] = v
                continue
            in_distribution = False

        if line.startswith("Latency Distribution"):
            in_distribution = True
            continue

        if line.startswith("Latency"):
            # Latency   <avg>  <stdev>  <max>  <+/- stdev%>
            toks = line.split()
            if len(toks) >= 4:
                avg = parse_time_ms(toks[1]) or 0.0
                stdev = parse_time_ms(toks[2]) or 0.0
                max_lat = parse_time_ms(toks[3]) or 0.0
            continue

        m = _REQUESTS_RE.match(line)
        if m is not None:
            requests = int(m.group("count"))
            duration_ms = parse_time_ms(m.group("dur")) or 0.0
            size = m.group("size")
            if size is not None:
                bytes_read = parse_size_bytes(size) or 0
            continue

        if line.startswith("Requests/sec:"):
            rest = line.removeprefix("Requests/sec:").strip()
            token = rest.split()[0] if rest else ""
            try:
                rps = float(token)
            except ValueError:
                rps = None
            continue

        if line.startswith("Socket errors:"):
            errors = parse_socket_errors_line(line)
            continue

        if line.startswith("Non-2xx or 3xx responses:"):
            rest = line.removeprefix("Non-2xx or 3xx responses:").strip()
            token = rest.split()[0] if rest else ""
            try:
                non_2xx = int(token)
            except ValueError:
                non_2xx = 0

    if requests is None:
        diag = ParseDiagnostics(
            kind="wrk",
            message="failed to parse wrk output (no 'N requests in D' line found)",
            stdout_tail=tail_lines(stdout, 12),
        )
        raise UnparsableOutputError(diag.format())

    duration_s = duration_ms / 1000.0
    if rps is None:
        rps = requests / duration_s if duration_s > 0 else 0.0

    pcts = backfill_percentiles(known, avg=avg, max_latency=max_lat)
    min_lat = min([avg, *known.values()]) if known else avg

    failed = min(requests, errors.total() + non_2xx)

    return CaseResult(
        name=name,
        total_requests=requests,
        successful_requests=requests - failed,
        failed_requests=failed,
        timeout_count=errors.timeout,
        latency=LatencyStats(
            avg=avg,
            stdev=stdev,
            min=min_lat,
            max=max(max_lat, pcts[99]),
            p50=pcts[50],
            p75=pcts[75],
            p90=pcts[90],
            p95=pcts[95],
            p99=pcts[99],
        ),
        bytes_transferred=bytes_read,
        requests_per_second=rps,
        duration_s=duration_s,
        socket_errors=errors,
        non_2xx_3xx=non_2xx,
    )


def backfill_percentiles(
    known: dict[float, float], *, avg: float, max_latency: float
) -> dict[int, float]:
    """
    Fill in p50/p75/p90/p95/p99 from whatever the worker reported.

    Policy: build anchor points from the reported percentiles, add (50, avg)
    when nothing at or below p50 was reported and (99, max) when p99 was not
    reported. A missing percentile is interpolated linearly between its
    neighbouring anchors; below the first anchor it takes the first anchor's
    value. Anchors are kept non-decreasing so the result is monotone.
    """
    anchors = dict(known)
    if not any(p <= 50 for p in anchors):
        upper = [v for p, v in sorted(anchors.items()) if p > 50]
        anchors[50.0] = min([avg, *upper[:1]])
    if 99.0 not in anchors:
        anchors[99.0] = max([max_latency, *anchors.values()])

    points: list[tuple[float, float]] = []
    running = 0.0
    for p, v in sorted(anchors.items()):
        running = max(running, v)
        points.append((p, running))

    out: dict[int, float] = {}
    for target in REPORTED_PERCENTILES:
        out[target] = _interpolate(points, float(target))
    return out


def _interpolate(points: list[tuple[float, float]], target: float) -> float:
    if target <= points[0][0]:
        return points[0][1]
    for (p0, v0), (p1, v1) in zip(points, points[1:]):
        if p0 <= target <= p1:
            if p1 == p0:
                return v1
            return v0 + (v1 - v0) * (target - p0) / (p1 - p0)
    return points[-1][1]


def parse_socket_errors_line(line: str) -> SocketErrors:
    """
    Parse a socket errors line.

    Example: Socket errors: connect 0, read 12, write 0, timeout 0
    Unknown or malformed parts are ignored.
    """
    counts = {"connect": 0, "read": 0, "write": 0, "timeout": 0}
    rest = line.removeprefix("Socket errors:").strip()
    for part in rest.split(","):
        toks = part.strip().split()
        if len(toks) != 2:
            continue
        kind, n_s = toks[0], toks[1]
        if kind not in counts:
            continue
        try:
            counts[kind] = int(n_s)
        except ValueError:
            continue
    return SocketErrors(**counts)


def tail_lines(text: str, n: int) -> str:
    if n <= 0:
        return ""
    lines = text.splitlines()
    if len(lines) <= n:
        return text
    return "\n".join(lines[-n:])


def truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


__all__ = [
    "ParseDiagnostics",
    "REPORTED_PERCENTILES",
    "backfill_percentiles",
    "parse_size_bytes",
    "parse_socket_errors_line",
    "parse_time_ms",
    "parse_wrk_output",
    "tail_lines",
    "truncate",
]
