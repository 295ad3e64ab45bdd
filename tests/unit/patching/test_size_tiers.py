from __future__ import annotations

import pytest

from worker_bundler.patching import (
    EXTERNAL_TOOL_MAX_BYTES,
    IN_PROCESS_MAX_BYTES,
    MIB,
    InProcessPatch,
    SkipPatch,
    StreamingPatch,
    select_patch_strategy,
)


def test_thresholds() -> None:
    assert IN_PROCESS_MAX_BYTES == 100 * MIB
    assert EXTERNAL_TOOL_MAX_BYTES == 500 * MIB


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "in-process"),
        (100 * MIB, "in-process"),
        (100 * MIB + 1, "large"),
        (500 * MIB, "large"),
        (500 * MIB + 1, "skip"),
        (2048 * MIB, "skip"),
    ],
)
def test_strategy_selection_boundaries(size: int, expected: str) -> None:
    large = StreamingPatch()

    strategy = select_patch_strategy(size, large=large)

    if expected == "in-process":
        assert isinstance(strategy, InProcessPatch)
    elif expected == "large":
        assert strategy is large
    else:
        assert isinstance(strategy, SkipPatch)
