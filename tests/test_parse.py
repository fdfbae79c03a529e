from __future__ import annotations

from pathlib import Path

import pytest

from thunderbench.errors import UnparsableOutputError
from thunderbench.parse import (
    backfill_percentiles,
    parse_size_bytes,
    parse_socket_errors_line,
    parse_time_ms,
    parse_wrk_output,
)


def _read_fixture(name: str) -> str:
    fixtures_dir = Path(__file__).parent / "fixtures"
    return (fixtures_dir / name).read_text(encoding="utf-8")


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        ("594.42us", 0.59442),
        ("1.20ms", 1.2),
        ("10.01s", 10010.0),
        ("1.00m", 60000.0),
        ("7", 7.0),
    ],
)
def test_parse_time_ms(token: str, expected: float) -> None:
    assert parse_time_ms(token) == pytest.approx(expected)


def test_parse_time_ms_rejects_garbage() -> None:
    assert parse_time_ms("fast") is None


def test_parse_size_bytes_uses_binary_multiples() -> None:
    assert parse_size_bytes("10B") == 10
    assert parse_size_bytes("2.00KB") == 2048
    assert parse_size_bytes("1.50MB") == 1572864


def test_parse_wrk_output_with_latency_distribution() -> None:
    out = _read_fixture("wrk_latency_stdout.txt")
    r = parse_wrk_output(out, name="hello")

    assert r.name == "hello"
    assert r.total_requests == 536245
    assert r.duration_s == pytest.approx(10.01)
    assert r.requests_per_second == pytest.approx(53572.84)
    assert r.bytes_transferred == round(66.48 * 1024**2)

    assert r.latency.avg == pytest.approx(1.2)
    assert r.latency.stdev == pytest.approx(0.51233)
    assert r.latency.max == pytest.approx(13.7)
    assert r.latency.min == pytest.approx(1.1)
    assert r.latency.p50 == pytest.approx(1.1)
    assert r.latency.p75 == pytest.approx(1.42)
    assert r.latency.p90 == pytest.approx(1.83)
    # p95 is not printed by wrk: interpolated between p90 and p99.
    assert r.latency.p95 == pytest.approx(1.83 + (3.07 - 1.83) * 5 / 9)
    assert r.latency.p99 == pytest.approx(3.07)

    assert r.socket_errors.read == 12
    assert r.socket_errors.timeout == 3
    assert r.non_2xx_3xx == 2
    assert r.failed_requests == 17
    assert r.successful_requests == 536245 - 17
    assert r.timeout_count == 3


def test_parse_wrk_output_without_percentiles_backfills_from_avg_and_max() -> None:
    out = _read_fixture("wrk_plain_stdout.txt")
    r = parse_wrk_output(out)

    assert r.total_requests == 60000
    assert r.requests_per_second == pytest.approx(12000.0)
    assert r.failed_requests == 0
    assert r.socket_errors.total() == 0

    assert r.latency.min == pytest.approx(0.8)
    assert r.latency.p50 == pytest.approx(0.8)
    assert r.latency.p99 == pytest.approx(5.0)
    assert r.latency.max == pytest.approx(5.0)
    assert r.latency.p50 <= r.latency.p75 <= r.latency.p90 <= r.latency.p95 <= r.latency.p99


def test_parse_wrk_output_derives_rps_when_missing() -> None:
    out = _read_fixture("wrk_errors_stdout.txt")
    r = parse_wrk_output(out)

    assert r.total_requests == 1000
    assert r.requests_per_second == pytest.approx(500.0)
    assert r.bytes_transferred == 102400
    assert r.failed_requests == 17


def test_parse_wrk_output_raises_without_requests_line() -> None:
    out = "Running 10s test @ http://127.0.0.1:8080/\nunable to connect to 127.0.0.1:8080\n"
    with pytest.raises(UnparsableOutputError) as ei:
        parse_wrk_output(out)
    assert "unable to connect" in str(ei.value)


def test_failed_requests_are_clamped_to_total() -> None:
    out = "  3 requests in 1.00s, 1.00KB read\n  Socket errors: connect 50, read 0, write 0, timeout 0\n"
    r = parse_wrk_output(out)
    assert r.failed_requests == 3
    assert r.successful_requests == 0


def test_parse_socket_errors_line_ignores_unknown_parts() -> None:
    e = parse_socket_errors_line("Socket errors: connect 1, read x, bogus 9, timeout 4")
    assert (e.connect, e.read, e.write, e.timeout) == (1, 0, 0, 4)


def test_backfill_keeps_percentiles_monotone() -> None:
    # A reported point below avg must not make p50 exceed later points.
    pcts = backfill_percentiles({90.0: 2.0}, avg=5.0, max_latency=9.0)
    assert pcts[50] == pytest.approx(2.0)
    assert pcts[90] == pytest.approx(2.0)
    assert pcts[99] == pytest.approx(9.0)
    values = [pcts[p] for p in (50, 75, 90, 95, 99)]
    assert values == sorted(values)
