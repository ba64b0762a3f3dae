from __future__ import annotations

from pathlib import Path

import pytest

from taskhub.graph import RequestGraph
from taskhub.hub import TaskHub
from taskhub.model import Request


class TickClock:
    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TASKHUB_STATE_DIR", "TASKHUB_EAGER_CYCLE_CHECK", "TASKHUB_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def graph() -> RequestGraph:
    return RequestGraph(
        request=Request(id="req-1", original_request="Ship the release"),
        clock=TickClock(),
    )


@pytest.fixture
def hub(tmp_path: Path) -> TaskHub:
    return TaskHub.from_workdir(state_dir=tmp_path / ".taskhub")
