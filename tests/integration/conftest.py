from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from support import ServerTree, make_server_tree as _make_server_tree


@pytest.fixture
def make_server_tree(tmp_path: Path) -> Callable[..., ServerTree]:
    def factory(**kwargs: object) -> ServerTree:
        return _make_server_tree(tmp_path, **kwargs)

    return factory
