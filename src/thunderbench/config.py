from __future__ import annotations

import enum
import json
import math
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Final

from .errors import ConfigurationError
from .weights import validate_weights

_DURATION_RE: Final[re.Pattern[str]] = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)\s*$")

HTTP_METHODS: Final[frozenset[str]] = frozenset(
    {"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"}
)

# Inter-group pause applied after a sequential group that declares no delay.
DEFAULT_GROUP_DELAY_MS: Final[int] = 1000


class ExecutionMode(str, enum.Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass(frozen=True, slots=True)
class TestCase:
    """One named request definition with its traffic-share weight (0-100)."""

    __test__ = False

    name: str
    weight: float
    method: str = "GET"
    url: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    query: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TestGroup:
    """
    A set of cases sharing worker parameters and an HTTP target.

    Notes:
    - `threads`/`connections` are the group budget; each case gets a share by weight.
    - `delay_ms` is the pause between cases (sequential mode) and after the group.
    - `requests` is an optional request budget split across cases by weight.
    - `timeout_s` and `latency` map to the worker's --timeout / --latency flags.
    """

    __test__ = False

    name: str
    threads: int
    connections: int
    duration_s: int
    cases: tuple[TestCase, ...]
    execution_mode: ExecutionMode = ExecutionMode.PARALLEL
    delay_ms: int | None = None
    base_url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout_s: float | None = None
    latency: bool = True
    requests: int | None = None

    def inter_group_delay_ms(self) -> int:
        """Pause to apply after this group (0 when none)."""
        if self.delay_ms is not None:
            return self.delay_ms
        if self.execution_mode is ExecutionMode.SEQUENTIAL:
            return DEFAULT_GROUP_DELAY_MS
        return 0


@dataclass(frozen=True, slots=True)
class BenchmarkConfig:
    name: str
    groups: tuple[TestGroup, ...]
    description: str | None = None


@dataclass(frozen=True, slots=True)
class TestScenario:
    """Shared scenario for comparison runs (becomes one case per target)."""

    __test__ = False

    name: str
    weight: float
    method: str = "GET"
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass(frozen=True, slots=True)
class TargetSpec:
    """
    A server to compare.

    If `command` is set the server is spawned with PORT in its environment;
    otherwise it is assumed to be running already and is only health-checked.
    """

    name: str
    port: int
    command: tuple[str, ...] | None = None
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    host: str = "127.0.0.1"
    health_check_path: str = "/"
    startup_timeout_s: float = 30.0
    warmup_requests: int = 0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class ComparisonConfig:
    name: str
    scenarios: tuple[TestScenario, ...]
    targets: tuple[TargetSpec, ...]
    threads: int
    connections: int
    duration_s: int
    description: str | None = None
    timeout_s: float | None = 10.0
    warmup_requests: int = 0


def parse_duration_to_seconds(value: str) -> float:
    """
    Parse durations like "5s", "2.5s", "200ms", "1m", "1h" to seconds.

    It is *not* a general-purpose parser; it intentionally supports only what this tool needs.
    """
    m = _DURATION_RE.match(value)
    if not m:
        raise ConfigurationError(
            f"Invalid duration {value!r}. Expected formats like '200ms', '5s', '1m' (decimals allowed)."
        )

    amount = float(m.group(1))
    unit = m.group(2)

    if unit == "ms":
        return amount / 1000.0
    if unit == "s":
        return amount
    if unit == "m":
        return amount * 60.0
    return amount * 3600.0


def env_path(name: str) -> Path | None:
    """
    Read a path-like env var.

    Returns None if unset or empty.
    """
    raw = os.environ.get(name)
    if not raw:
        return None
    return Path(raw)


def env_bool(name: str, *, default: bool) -> bool:
    """
    Parse boolean env vars in a predictable way.

    Truthy: 1, true, yes, y, on
    Falsy:  0, false, no, n, off
    Unset:  default
    """
    raw = os.environ.get(name)
    if raw is None:
        return default

    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False

    raise ConfigurationError(
        f"Invalid boolean value for {name}: {raw!r}. Expected one of "
        "'true/false', '1/0', 'yes/no', 'on/off'."
    )


def env_int(name: str) -> int | None:
    """
    Parse an optional integer env var.

    Returns None if unset/empty.
    """
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid integer value for {name}: {raw!r}") from e


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_config(cfg: BenchmarkConfig) -> None:
    """
    Validate a benchmark configuration before anything is spawned.

    Raises ConfigurationError naming the offending group/case/value.
    """
    if not cfg.groups:
        raise ConfigurationError("at least one test group is required")

    seen: set[str] = set()
    for g in cfg.groups:
        validate_group(g)
        if g.name in seen:
            raise ConfigurationError(f"duplicate group name {g.name!r}")
        seen.add(g.name)


def validate_group(g: TestGroup) -> None:
    """
    Validate one group.

    - name non-empty, execution mode known
    - threads/connections/duration positive integers
    - delay non-negative, optional timeout and request budget positive
    - at least one case, every case valid, weights sum to 100
    """
    if not g.name or not g.name.strip():
        raise ConfigurationError("group name must not be empty")

    where = f"group {g.name!r}"

    if not isinstance(g.execution_mode, ExecutionMode):
        raise ConfigurationError(
            f"{where}: execution mode must be 'parallel' or 'sequential', got {g.execution_mode!r}"
        )

    _require_positive_int(g.threads, f"{where}: threads")
    _require_positive_int(g.connections, f"{where}: connections")
    _require_positive_int(g.duration_s, f"{where}: duration")

    if g.delay_ms is not None:
        _require_int(g.delay_ms, f"{where}: delay")
        if g.delay_ms < 0:
            raise ConfigurationError(f"{where}: delay must be >= 0 ms, got {g.delay_ms}")

    if g.timeout_s is not None and not (g.timeout_s > 0):
        raise ConfigurationError(f"{where}: timeout must be > 0 s, got {g.timeout_s}")

    if g.requests is not None:
        _require_positive_int(g.requests, f"{where}: requests")

    if g.base_url is not None:
        _require_http_url(g.base_url, f"{where}: base URL")

    if not g.cases:
        raise ConfigurationError(f"{where}: at least one test case is required")

    for c in g.cases:
        _validate_case(c, group=g)

    validate_weights(g.cases, group=g.name)


def _validate_case(c: TestCase, *, group: TestGroup) -> None:
    if not c.name or not c.name.strip():
        raise ConfigurationError(f"group {group.name!r}: case name must not be empty")

    where = f"group {group.name!r}, case {c.name!r}"

    if c.method.upper() not in HTTP_METHODS:
        raise ConfigurationError(f"{where}: unsupported HTTP method {c.method!r}")
    if not c.url:
        raise ConfigurationError(f"{where}: url must not be empty")
    if group.base_url is None and not _is_absolute_url(c.url):
        raise ConfigurationError(
            f"{where}: url {c.url!r} is relative but the group declares no base URL"
        )


def validate_comparison(cfg: ComparisonConfig) -> None:
    if not cfg.scenarios:
        raise ConfigurationError(f"comparison {cfg.name!r}: at least one scenario is required")
    if not cfg.targets:
        raise ConfigurationError(f"comparison {cfg.name!r}: at least one target is required")

    _require_positive_int(cfg.threads, "comparison threads")
    _require_positive_int(cfg.connections, "comparison connections")
    _require_positive_int(cfg.duration_s, "comparison duration")

    for s in cfg.scenarios:
        if s.method.upper() not in HTTP_METHODS:
            raise ConfigurationError(f"scenario {s.name!r}: unsupported HTTP method {s.method!r}")
    validate_weights(cfg.scenarios, group=cfg.name)

    seen: set[str] = set()
    for t in cfg.targets:
        if not t.name:
            raise ConfigurationError("target name must not be empty")
        if t.name in seen:
            raise ConfigurationError(f"duplicate target name {t.name!r}")
        seen.add(t.name)
        _require_int(t.port, f"target {t.name!r}: port")
        if not (0 < t.port < 65536):
            raise ConfigurationError(f"target {t.name!r}: port must be 1-65535, got {t.port}")
        if t.startup_timeout_s <= 0:
            raise ConfigurationError(f"target {t.name!r}: startup timeout must be > 0")
        if t.warmup_requests < 0:
            raise ConfigurationError(f"target {t.name!r}: warmup requests must be >= 0")


def _require_int(value: object, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}")


def _require_positive_int(value: object, label: str) -> None:
    _require_int(value, label)
    if value <= 0:  # type: ignore[operator]
        raise ConfigurationError(f"{label} must be > 0, got {value}")


def _require_http_url(value: str, label: str) -> None:
    if not _is_absolute_url(value):
        raise ConfigurationError(f"{label} must start with http:// or https://, got {value!r}")


def _is_absolute_url(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_raw(path: Path) -> dict[str, Any]:
    """Read a JSON or TOML config file into a plain dict."""
    if not path.exists():
        raise ConfigurationError(f"config file does not exist: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        elif suffix == ".toml":
            with path.open("rb") as f:
                data = tomllib.load(f)
        else:
            raise ConfigurationError(f"unsupported config format {suffix!r} (use .json or .toml)")
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"invalid config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain an object at the top level")
    return data


def load_benchmark_config(path: Path) -> BenchmarkConfig:
    return benchmark_config_from_dict(load_raw(path))


def load_comparison_config(path: Path) -> ComparisonConfig:
    return comparison_config_from_dict(load_raw(path))


def benchmark_config_from_dict(data: Mapping[str, Any]) -> BenchmarkConfig:
    """
    Build a BenchmarkConfig from a decoded JSON/TOML document.

    Accepts camelCase or snake_case keys, flat cases (method/url on the case) or the
    nested form (`request: {...}` on the case, `http: {...}` on the group), and
    `tests` as an alias of `cases`.
    """
    raw_groups = _get(data, "groups")
    if not isinstance(raw_groups, list):
        raise ConfigurationError("'groups' must be a list")

    return BenchmarkConfig(
        name=str(_get(data, "name", default="benchmark")),
        description=_opt_str(_get(data, "description", default=None)),
        groups=tuple(_group_from_dict(g, i) for i, g in enumerate(raw_groups)),
    )


def _group_from_dict(raw: Any, index: int) -> TestGroup:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"groups[{index}] must be an object")

    name = str(_get(raw, "name", default=""))
    where = f"group {name or index!r}"

    http = _get(raw, "http", default={}) or {}
    if not isinstance(http, Mapping):
        raise ConfigurationError(f"{where}: 'http' must be an object")

    raw_cases = _get(raw, "cases", "tests", default=None)
    if not isinstance(raw_cases, list):
        raise ConfigurationError(f"{where}: 'cases' must be a list")

    mode_raw = _get(raw, "execution_mode", "executionMode", default="parallel")
    try:
        mode = ExecutionMode(str(mode_raw).strip().lower())
    except ValueError as e:
        raise ConfigurationError(
            f"{where}: execution mode must be 'parallel' or 'sequential', got {mode_raw!r}"
        ) from e

    base_url = _get(raw, "base_url", "baseUrl", default=None)
    if base_url is None:
        base_url = _get(http, "base_url", "baseUrl", default=None)

    headers = dict(_str_map(_get(http, "headers", default={}), f"{where}: http.headers"))
    headers.update(_str_map(_get(raw, "headers", default={}), f"{where}: headers"))

    timeout = _get(raw, "timeout", "timeout_s", default=None)
    if timeout is None:
        timeout = _get(http, "timeout", default=None)

    return TestGroup(
        name=name,
        threads=_int_field(_get(raw, "threads"), f"{where}: threads"),
        connections=_int_field(_get(raw, "connections"), f"{where}: connections"),
        duration_s=_duration_seconds(_get(raw, "duration", "duration_s"), f"{where}: duration"),
        cases=tuple(_case_from_dict(c, where, i) for i, c in enumerate(raw_cases)),
        execution_mode=mode,
        delay_ms=_delay_ms(_get(raw, "delay_ms", "delayMs", "delay", default=None), where),
        base_url=None if base_url is None else str(base_url).rstrip("/"),
        headers=headers,
        timeout_s=None if timeout is None else _seconds(timeout, f"{where}: timeout"),
        latency=_bool_field(_get(raw, "latency", default=True), f"{where}: latency"),
        requests=(
            None
            if _get(raw, "requests", "total_requests", "totalRequests", default=None) is None
            else _int_field(
                _get(raw, "requests", "total_requests", "totalRequests"), f"{where}: requests"
            )
        ),
    )


def _case_from_dict(raw: Any, group_where: str, index: int) -> TestCase:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{group_where}: cases[{index}] must be an object")

    name = str(_get(raw, "name", default=""))
    where = f"{group_where}, case {name or index!r}"

    req = _get(raw, "request", default=None)
    src: Mapping[str, Any] = req if isinstance(req, Mapping) else raw

    weight = _get(raw, "weight")
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise ConfigurationError(f"{where}: weight must be a number, got {weight!r}")

    return TestCase(
        name=name,
        weight=float(weight),
        method=str(_get(src, "method", default="GET")).upper(),
        url=str(_get(src, "url", "path", default="/")),
        headers=_str_map(_get(src, "headers", default={}), f"{where}: headers"),
        body=_get(src, "body", default=None),
        query=dict(_get(src, "query", default={}) or {}),
    )


def comparison_config_from_dict(data: Mapping[str, Any]) -> ComparisonConfig:
    raw_scenarios = _get(data, "scenarios")
    raw_targets = _get(data, "targets", "servers", "frameworks")
    if not isinstance(raw_scenarios, list):
        raise ConfigurationError("'scenarios' must be a list")
    if not isinstance(raw_targets, list):
        raise ConfigurationError("'targets' must be a list")

    default_warmup = _int_field(_get(data, "warmup_requests", "warmupRequests", default=0), "warmup")

    scenarios: list[TestScenario] = []
    for i, s in enumerate(raw_scenarios):
        if not isinstance(s, Mapping):
            raise ConfigurationError(f"scenarios[{i}] must be an object")
        weight = _get(s, "weight")
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise ConfigurationError(f"scenarios[{i}]: weight must be a number, got {weight!r}")
        scenarios.append(
            TestScenario(
                name=str(_get(s, "name")),
                weight=float(weight),
                method=str(_get(s, "method", default="GET")).upper(),
                path=str(_get(s, "path", "url", default="/")),
                headers=_str_map(_get(s, "headers", default={}), f"scenarios[{i}].headers"),
                body=_get(s, "body", default=None),
            )
        )

    targets: list[TargetSpec] = []
    for i, t in enumerate(raw_targets):
        if not isinstance(t, Mapping):
            raise ConfigurationError(f"targets[{i}] must be an object")
        command = _get(t, "command", default=None)
        args = _get(t, "args", default=[]) or []
        argv: tuple[str, ...] | None = None
        if command is not None:
            if isinstance(command, str):
                argv = (command, *(str(a) for a in args))
            elif isinstance(command, list):
                argv = tuple(str(a) for a in (*command, *args))
            else:
                raise ConfigurationError(f"targets[{i}]: command must be a string or list")
        cwd = _get(t, "cwd", default=None)
        targets.append(
            TargetSpec(
                name=str(_get(t, "name")),
                port=_int_field(_get(t, "port"), f"targets[{i}].port"),
                command=argv,
                cwd=None if cwd is None else Path(str(cwd)),
                env=_str_map(_get(t, "env", default={}), f"targets[{i}].env"),
                host=str(_get(t, "host", default="127.0.0.1")),
                health_check_path=str(
                    _get(t, "health_check_path", "healthCheckPath", default="/")
                ),
                startup_timeout_s=_seconds(
                    _get(t, "startup_timeout", "startupTimeout", "startup_timeout_s", default=30),
                    f"targets[{i}].startup_timeout",
                ),
                warmup_requests=_int_field(
                    _get(t, "warmup_requests", "warmupRequests", default=default_warmup),
                    f"targets[{i}].warmup_requests",
                ),
            )
        )

    timeout = _get(data, "timeout", "timeout_s", default=10)

    return ComparisonConfig(
        name=str(_get(data, "name", default="comparison")),
        description=_opt_str(_get(data, "description", default=None)),
        scenarios=tuple(scenarios),
        targets=tuple(targets),
        threads=_int_field(_get(data, "threads"), "threads"),
        connections=_int_field(_get(data, "connections"), "connections"),
        duration_s=_duration_seconds(_get(data, "duration", "duration_s"), "duration"),
        timeout_s=None if timeout is None else _seconds(timeout, "timeout"),
        warmup_requests=default_warmup,
    )


def apply_overrides(
    cfg: BenchmarkConfig,
    *,
    threads: int | None = None,
    connections: int | None = None,
    duration_s: int | None = None,
    timeout_s: float | None = None,
) -> BenchmarkConfig:
    """Apply global CLI overrides to every group."""
    changes: dict[str, int | float] = {}
    if threads is not None:
        changes["threads"] = threads
    if connections is not None:
        changes["connections"] = connections
    if duration_s is not None:
        changes["duration_s"] = duration_s
    if timeout_s is not None:
        changes["timeout_s"] = timeout_s
    if not changes:
        return cfg
    return replace(cfg, groups=tuple(replace(g, **changes) for g in cfg.groups))


_MISSING: Final = object()


def _get(obj: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> Any:
    for k in keys:
        if k in obj:
            return obj[k]
    if default is _MISSING:
        raise ConfigurationError(f"missing required key {keys[0]!r}")
    return default


def _opt_str(v: Any) -> str | None:
    return None if v is None else str(v)


def _str_map(v: Any, label: str) -> dict[str, str]:
    if v is None:
        return {}
    if not isinstance(v, Mapping):
        raise ConfigurationError(f"{label} must be an object")
    return {str(k): str(val) for k, val in v.items()}


def _int_field(v: Any, label: str) -> int:
    if isinstance(v, bool):
        raise ConfigurationError(f"{label} must be an integer, got {v!r}")
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    if isinstance(v, str):
        try:
            return int(v.strip())
        except ValueError:
            pass
    raise ConfigurationError(f"{label} must be an integer, got {v!r}")


def _seconds(v: Any, label: str) -> float:
    """Number of seconds, or a duration string."""
    if isinstance(v, bool):
        raise ConfigurationError(f"{label} must be a number or duration, got {v!r}")
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        return parse_duration_to_seconds(v)
    raise ConfigurationError(f"{label} must be a number or duration, got {v!r}")


def _duration_seconds(v: Any, label: str) -> int:
    """Worker durations must be whole seconds (the worker is invoked with -d<N>s)."""
    secs = _seconds(v, label)
    if not secs.is_integer():
        raise ConfigurationError(f"{label} must be a whole number of seconds, got {v!r}")
    return int(secs)


def _bool_field(v: Any, label: str) -> bool:
    if not isinstance(v, bool):
        raise ConfigurationError(f"{label} must be true or false, got {v!r}")
    return v


def _delay_ms(v: Any, where: str) -> int | None:
    """Delay in milliseconds: an integer is ms, a string is a duration ("2s", "500ms")."""
    if v is None:
        return None
    if isinstance(v, bool):
        raise ConfigurationError(f"{where}: delay must be a number or duration, got {v!r}")
    if isinstance(v, (int, float)):
        if not math.isfinite(v):
            raise ConfigurationError(f"{where}: delay must be a finite number, got {v!r}")
        if float(v) != int(v):
            raise ConfigurationError(
                f"{where}: delay must be a whole number of milliseconds, got {v!r}"
            )
        return int(v)
    if isinstance(v, str):
        return int(round(parse_duration_to_seconds(v) * 1000.0))
    raise ConfigurationError(f"{where}: delay must be a number or duration, got {v!r}")


__all__ = [
    "BenchmarkConfig",
    "ComparisonConfig",
    "DEFAULT_GROUP_DELAY_MS",
    "ExecutionMode",
    "HTTP_METHODS",
    "TargetSpec",
    "TestCase",
    "TestGroup",
    "TestScenario",
    "apply_overrides",
    "benchmark_config_from_dict",
    "comparison_config_from_dict",
    "env_bool",
    "env_int",
    "env_path",
    "load_benchmark_config",
    "load_comparison_config",
    "load_raw",
    "parse_duration_to_seconds",
    "validate_comparison",
    "validate_config",
    "validate_group",
]
