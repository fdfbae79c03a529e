from __future__ import annotations

from pathlib import Path

import pytest

from thunderbench.scripts import (
    RequestTemplate,
    Workspace,
    build_request,
    lua_quote,
    render_lua_script,
    split_budget,
)


def _build(**kw) -> RequestTemplate:
    base = dict(
        base_url="http://127.0.0.1:3000",
        group_headers={"Accept": "application/json", "X-Env": "group"},
        method="get",
        url="/api/users",
        headers={},
        body=None,
        query={},
    )
    base.update(kw)
    return build_request(**base)


def test_case_headers_override_group_headers() -> None:
    t = _build(headers={"X-Env": "case", "X-Case": "1"})
    assert t.headers == {"Accept": "application/json", "X-Env": "case", "X-Case": "1"}
    assert t.method == "GET"
    assert t.url == "http://127.0.0.1:3000/api/users"


def test_absolute_case_url_wins_over_base_url() -> None:
    t = _build(url="http://other:9000/x")
    assert t.url == "http://other:9000/x"


def test_base_url_and_path_are_joined_once() -> None:
    assert _build(base_url="http://h:1/", url="a").url == "http://h:1/a"


def test_json_body_gets_content_type() -> None:
    t = _build(method="POST", body={"name": "x"})
    assert t.headers["Content-Type"] == "application/json"
    assert t.encoded_body() == '{"name":"x"}'


def test_explicit_content_type_is_kept() -> None:
    t = _build(method="POST", body={"a": 1}, headers={"content-type": "application/vnd+json"})
    assert t.headers["content-type"] == "application/vnd+json"
    assert "Content-Type" not in t.headers


def test_query_is_appended() -> None:
    t = _build(url="/search?lang=en", query={"q": "a b", "exact": True, "tag": ["x", "y"]})
    assert t.full_url() == "http://127.0.0.1:3000/search?lang=en&q=a+b&exact=true&tag=x&tag=y"
    assert t.request_path() == "/search?lang=en&q=a+b&exact=true&tag=x&tag=y"


def test_request_path_defaults_to_root() -> None:
    t = RequestTemplate(method="GET", url="http://h:1")
    assert t.request_path() == "/"


def test_lua_quote_escapes() -> None:
    assert lua_quote('say "hi"\n') == '"say \\"hi\\"\\n"'
    assert lua_quote("a\\b") == '"a\\\\b"'
    assert lua_quote("\x01") == '"\\001"'


def test_render_script_without_budget() -> None:
    t = _build(method="POST", body={"k": "v"}, headers={"X-Token": "t"})
    script = render_lua_script(t)
    assert 'wrk.method = "POST"' in script
    assert 'wrk.headers["X-Token"] = "t"' in script
    assert 'wrk.body = "{\\"k\\":\\"v\\"}"' in script
    assert 'local request_path = "/api/users"' in script
    assert "setup = function" not in script


def test_render_script_with_budget_splits_across_threads() -> None:
    script = render_lua_script(_build(), request_budget=8, threads=3)
    assert "local quotas = {3, 3, 2}" in script
    assert "wrk.thread:stop()" in script


def test_split_budget() -> None:
    assert split_budget(10, 4) == [3, 3, 2, 2]
    assert split_budget(2, 2) == [1, 1]
    with pytest.raises(ValueError):
        split_budget(1, 0)


def test_workspace_paths_are_unique_and_removed(tmp_path: Path) -> None:
    with Workspace(parent=tmp_path) as ws:
        root = ws.root
        p1 = ws.write_script("group one", "case/a", "-- a")
        p2 = ws.write_script("group one", "case/a", "-- b")
        assert p1 != p2
        assert p1.parent == root
        assert p1.read_text(encoding="utf-8") == "-- a"
        assert "/" not in p1.name.removesuffix(".lua")
    assert not root.exists()


def test_workspace_keep(tmp_path: Path) -> None:
    ws = Workspace(keep=True, parent=tmp_path)
    with ws:
        root = ws.root
        ws.write_script("g", "c", "--")
    assert root.exists()
    with pytest.raises(RuntimeError):
        _ = ws.root
