from __future__ import annotations

import pytest

from worker_bundler.patching import normalize_markers


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        ("__require('fs')", "require('fs')"),
        ("__require2('path')", "require('path')"),
        ("__require.resolve('x')", "require.resolve('x')"),
        ("__require3.cache", "require.cache"),
        ("var __require = createRequire();", "var __require = createRequire();"),
        ("a(__require);", "a(__require);"),
        ("__require(__require2('a'))", "require(require('a'))"),
    ],
)
def test_normalize_markers_rewrites_call_and_member_forms(source: str, expected: str) -> None:
    assert normalize_markers(source) == expected


def test_normalize_markers_is_idempotent() -> None:
    source = "x=__require(1);y=__require7.main;z=__require;w=require(2);"

    once = normalize_markers(source)

    assert normalize_markers(once) == once
    assert "__require(" not in once
    assert "__require7." not in once
