"""
Per-case request scripts and the run-scoped scratch directory.

The worker only knows a URL; method, headers, body and an optional request
budget are handed to it as a generated Lua script (`wrk -s`).
"""

from __future__ import annotations

import json
import re
import shutil
import tempfile
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final
from urllib.parse import urlencode, urlsplit, urlunsplit

_SLUG_RE: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True, slots=True)
class RequestTemplate:
    """The request a case sends, after merging group defaults and case overrides."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    query: Mapping[str, Any] = field(default_factory=dict)

    def full_url(self) -> str:
        """URL with `query` appended to any query string already present."""
        if not self.query:
            return self.url
        parts = urlsplit(self.url)
        extra = urlencode(
            {k: _query_value(v) for k, v in self.query.items()},
            doseq=True,
        )
        query = f"{parts.query}&{extra}" if parts.query else extra
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    def request_path(self) -> str:
        parts = urlsplit(self.full_url())
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path

    def encoded_body(self) -> str | None:
        if self.body is None:
            return None
        if isinstance(self.body, (dict, list)):
            return json.dumps(self.body, separators=(",", ":"))
        return str(self.body)


def _query_value(v: Any) -> Any:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (list, tuple)):
        return [_query_value(x) for x in v]
    return v


def build_request(
    *,
    base_url: str | None,
    group_headers: Mapping[str, str],
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: Any,
    query: Mapping[str, Any],
) -> RequestTemplate:
    """
    Merge group-level HTTP defaults with a case's own request.

    Case headers override group headers; an absolute case URL replaces the
    group base URL. JSON bodies get `Content-Type: application/json` unless a
    content type was set explicitly.
    """
    if url.startswith("http://") or url.startswith("https://"):
        full = url
    elif base_url is None:
        full = url
    else:
        full = base_url.rstrip("/") + "/" + url.lstrip("/")

    merged = dict(group_headers)
    merged.update(headers)

    if isinstance(body, (dict, list)) and not any(k.lower() == "content-type" for k in merged):
        merged["Content-Type"] = "application/json"

    return RequestTemplate(
        method=method.upper(),
        url=full,
        headers=merged,
        body=body,
        query=dict(query),
    )


def lua_quote(s: str) -> str:
    """Quote a Python string as a Lua string literal."""
    out = ['"']
    for ch in s:
        if ch == "\\":
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif ord(ch) < 32 or ord(ch) == 127:
            out.append(f"\\{ord(ch):03d}")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)


def split_budget(budget: int, threads: int) -> list[int]:
    """Split a request budget across worker threads, first threads take the remainder."""
    if threads <= 0:
        raise ValueError("threads must be > 0")
    base, extra = divmod(budget, threads)
    return [base + (1 if i < extra else 0) for i in range(threads)]


def render_lua_script(
    template: RequestTemplate,
    *,
    request_budget: int | None = None,
    threads: int = 1,
) -> str:
    """
    Render the wrk script for one case.

    With a `request_budget`, each worker thread is given its share through
    `setup()` and stops itself once that many responses have arrived.
    """
    lines = [
        f"wrk.method = {lua_quote(template.method)}",
        "wrk.headers = {}",
    ]
    for k, v in template.headers.items():
        lines.append(f"wrk.headers[{lua_quote(k)}] = {lua_quote(v)}")

    body = template.encoded_body()
    lines.append(f"wrk.body = {lua_quote(body)}" if body is not None else "wrk.body = nil")
    lines.append(f"local request_path = {lua_quote(template.request_path())}")
    lines.append("")
    lines.append("request = function()")
    lines.append("  return wrk.format(nil, request_path)")
    lines.append("end")

    if request_budget is not None:
        quotas = ", ".join(str(q) for q in split_budget(request_budget, threads))
        lines += [
            "",
            f"local quotas = {{{quotas}}}",
            "local assigned = 0",
            "",
            "setup = function(thread)",
            "  assigned = assigned + 1",
            '  thread:set("quota", quotas[assigned] or 0)',
            "end",
            "",
            "local received = 0",
            "",
            "response = function(status, headers, body)",
            "  received = received + 1",
            "  if quota ~= nil and received >= quota then",
            "    wrk.thread:stop()",
            "  end",
            "end",
        ]

    return "\n".join(lines) + "\n"


class Workspace:
    """
    Run-scoped scratch directory for generated scripts.

    Use as a context manager; the directory is removed on exit (success or
    failure) unless `keep=True`.
    """

    def __init__(self, *, keep: bool = False, parent: Path | None = None) -> None:
        self.keep = keep
        self._parent = parent
        self._root: Path | None = None

    @property
    def root(self) -> Path:
        if self._root is None:
            raise RuntimeError("workspace is not open")
        return self._root

    def __enter__(self) -> Workspace:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> Path:
        if self._root is None:
            self._root = Path(
                tempfile.mkdtemp(
                    prefix="thunderbench-",
                    dir=str(self._parent) if self._parent is not None else None,
                )
            )
        return self._root

    def close(self) -> None:
        if self._root is None:
            return
        if not self.keep:
            shutil.rmtree(self._root, ignore_errors=True)
        self._root = None

    def script_path(self, group: str, case: str) -> Path:
        """A fresh, unique path for one case's script."""
        name = f"{_slug(group)}__{_slug(case)}__{uuid.uuid4().hex[:8]}.lua"
        return self.root / name

    def write_script(self, group: str, case: str, content: str) -> Path:
        path = self.script_path(group, case)
        path.write_text(content, encoding="utf-8")
        return path


def _slug(s: str) -> str:
    out = _SLUG_RE.sub("-", s).strip("-")
    return out or "x"


__all__ = [
    "RequestTemplate",
    "Workspace",
    "build_request",
    "lua_quote",
    "render_lua_script",
    "split_budget",
]
