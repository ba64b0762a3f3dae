from __future__ import annotations

import pytest

from taskhub.errors import InvalidOperationError
from taskhub.lifecycle import (
    TRANSITIONS,
    auto_complete,
    can_transition,
    mark_done,
    mark_failed,
    transition,
)
from taskhub.model import TASK_STATUSES, Task


def _task(status: str = "active") -> Task:
    return Task(id="task-1", request_id="req-1", title="Work", status=status, updated_at=5)


def test_transition_table_covers_every_status() -> None:
    assert set(TRANSITIONS) == set(TASK_STATUSES)
    assert TRANSITIONS["done"] == frozenset()
    assert TRANSITIONS["failed"] == frozenset()
    assert can_transition("pending", "active")
    assert can_transition("active", "requires-clarification")
    assert can_transition("requires-clarification", "active")
    assert not can_transition("done", "active")
    assert not can_transition("pending", "done")


def test_mark_done_records_details_and_artifacts() -> None:
    task = _task()
    task.artifacts = ["build.log"]

    assert mark_done(task, now=9, completed_details="shipped", artifacts=["build.log", "dist.tgz"])
    assert task.status == "done"
    assert task.completed_details == "shipped"
    assert task.artifacts == ["build.log", "dist.tgz"]
    assert task.updated_at == 9


def test_marking_done_twice_is_idempotent() -> None:
    task = _task("done")

    assert mark_done(task, now=99) is False
    assert task.updated_at == 5


def test_opposite_terminal_report_is_rejected() -> None:
    with pytest.raises(InvalidOperationError, match="already done"):
        mark_failed(_task("done"), now=9)
    with pytest.raises(InvalidOperationError, match="already failed"):
        mark_done(_task("failed"), now=9)
    assert mark_failed(_task("failed"), now=9) is False


def test_split_task_cannot_be_reported_directly() -> None:
    with pytest.raises(InvalidOperationError, match="resolve its subtasks first"):
        mark_done(_task("split"), now=9)
    with pytest.raises(InvalidOperationError, match="resolve its subtasks first"):
        mark_failed(_task("split"), now=9)


def test_pending_task_must_be_started_first() -> None:
    with pytest.raises(InvalidOperationError, match="not been started"):
        mark_done(_task("pending"), now=9)


def test_clarification_round_trip_and_report() -> None:
    task = _task()

    transition(task, "requires-clarification", now=6)
    transition(task, "active", now=7)
    transition(task, "requires-clarification", now=8)
    assert mark_failed(task, now=9, reason="requirements unclear", suggested_retry_strategy="ask PM")
    assert (task.status, task.failure_reason) == ("failed", "requirements unclear")
    assert task.suggested_retry_strategy == "ask PM"

    with pytest.raises(InvalidOperationError, match="cannot move"):
        transition(task, "active", now=10)


def test_auto_complete_only_from_open_or_container_states() -> None:
    for status in ("pending", "active", "split"):
        task = _task(status)
        assert auto_complete(task, now=9) is True
        assert task.status == "done"
    assert auto_complete(_task("requires-clarification"), now=9) is False
    assert auto_complete(_task("failed"), now=9) is False
