from __future__ import annotations

import logging
import shutil
from pathlib import Path

import pytest

from worker_bundler.patching import (
    InProcessPatch,
    SedPatch,
    SkipPatch,
    StreamingPatch,
    normalize_markers,
    patch_bundled_artifact,
)

LOGGER = logging.getLogger("tests.patching")

BUNDLE = (
    "import {setTimeout} from \"node:timers\";\n"
    "var __require = createRequire(import.meta.url);\n"
    "const fs = __require(\"fs\");\n"
    "const p = __require2(\"path\");\n"
    "const r = __require.resolve(\"x\");\n"
    "export const handler = () => __require3.cache;\n"
)


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "handler.mjs"
    path.write_text(text, encoding="utf-8")
    return path


def test_in_process_patch_rewrites_file(tmp_path: Path) -> None:
    path = _write(tmp_path, BUNDLE)

    report = patch_bundled_artifact(path, logger=LOGGER)

    assert report.strategy == "in-process"
    assert report.patched is True
    assert path.read_text(encoding="utf-8") == normalize_markers(BUNDLE)


def test_in_process_patch_twice_is_a_no_op(tmp_path: Path) -> None:
    path = _write(tmp_path, BUNDLE)

    InProcessPatch().apply(path, size=path.stat().st_size, logger=LOGGER)
    once = path.read_text(encoding="utf-8")
    InProcessPatch().apply(path, size=path.stat().st_size, logger=LOGGER)

    assert path.read_text(encoding="utf-8") == once


@pytest.mark.parametrize("chunk_chars", [64, 65, 70, 97, 4096])
def test_streaming_patch_matches_in_process_result_across_chunk_boundaries(
    tmp_path: Path, chunk_chars: int
) -> None:
    text = ("x" * 50 + "__require12(a)." + "__require.main;") * 40
    path = _write(tmp_path, text)

    patched = StreamingPatch(chunk_chars=chunk_chars).apply(path, size=len(text), logger=LOGGER)

    assert patched is True
    assert path.read_text(encoding="utf-8") == normalize_markers(text)
    assert list(tmp_path.iterdir()) == [path]


def test_streaming_patch_keeps_trailing_partial_marker(tmp_path: Path) -> None:
    text = "y" * 100 + "__requi"
    path = _write(tmp_path, text)

    StreamingPatch(chunk_chars=64).apply(path, size=len(text), logger=LOGGER)

    assert path.read_text(encoding="utf-8") == text


@pytest.mark.skipif(shutil.which("sed") is None, reason="sed not available")
def test_sed_patch_matches_in_process_result_and_is_idempotent(tmp_path: Path) -> None:
    path = _write(tmp_path, BUNDLE)
    strategy = SedPatch(executable=shutil.which("sed") or "sed")

    assert strategy.apply(path, size=path.stat().st_size, logger=LOGGER) is True
    once = path.read_text(encoding="utf-8")
    assert strategy.apply(path, size=path.stat().st_size, logger=LOGGER) is True

    assert once == normalize_markers(BUNDLE)
    assert path.read_text(encoding="utf-8") == once
    assert not Path(f"{path}.bak").exists()


def test_sed_failure_is_logged_and_skipped(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = _write(tmp_path, BUNDLE)
    strategy = SedPatch(executable=str(tmp_path / "no-such-sed"))

    with caplog.at_level(logging.WARNING, logger=LOGGER.name):
        patched = strategy.apply(path, size=path.stat().st_size, logger=LOGGER)

    assert patched is False
    assert path.read_text(encoding="utf-8") == BUNDLE
    assert "sed patching failed" in caplog.text


def test_large_strategy_is_used_for_middle_tier(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, BUNDLE)
    monkeypatch.setattr("worker_bundler.patching.IN_PROCESS_MAX_BYTES", 10)

    report = patch_bundled_artifact(path, large=StreamingPatch(), logger=LOGGER)

    assert report.strategy == "streaming"
    assert path.read_text(encoding="utf-8") == normalize_markers(BUNDLE)


def test_skip_tier_leaves_file_untouched(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, BUNDLE)
    monkeypatch.setattr("worker_bundler.patching.EXTERNAL_TOOL_MAX_BYTES", 10)

    report = patch_bundled_artifact(path, logger=LOGGER)

    assert report.strategy == SkipPatch.name
    assert report.patched is False
    assert path.read_text(encoding="utf-8") == BUNDLE
