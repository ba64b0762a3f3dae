from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from taskhub.cascade import archive_tree
from taskhub.errors import NotFoundError, PersistenceError
from taskhub.model import TaskDraft
from taskhub.stores import task as task_store_module
from taskhub.stores.task import TaskStore


def _store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / ".taskhub")


def test_commit_and_load_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    graph = store.new_graph("Write docs", split_details="by chapter")
    intro, body = graph.add_drafts(
        [
            TaskDraft(title="Intro", artifacts=("intro.md",)),
            TaskDraft(title="Body", depends_on=("#1",), priority="high"),
        ]
    )
    graph.new_task("Body part", parent_id=body.id)
    store.commit(graph)

    loaded = store.load_graph(graph.request.id)

    assert loaded.request.original_request == "Write docs"
    assert loaded.request.split_details == "by chapter"
    assert loaded.request.task_ids == [intro.id, body.id, "task-3"]
    assert [t.to_dict() for t in loaded.ordered()] == [t.to_dict() for t in graph.ordered()]


def test_counters_survive_new_store_instances(tmp_path: Path) -> None:
    first = _store(tmp_path)
    graph = first.new_graph("One")
    graph.add_drafts([TaskDraft(title="A"), TaskDraft(title="B")])
    first.commit(graph)

    second = _store(tmp_path)
    other = second.new_graph("Two")
    (task,) = other.add_drafts([TaskDraft(title="C")])

    assert (graph.request.id, other.request.id) == ("req-1", "req-2")
    assert task.id == "task-3"
    assert second.counter_value("task") == 3
    assert second.counter_value("req") == 2


def test_load_unknown_request_raises(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError, match="request not found: req-7"):
        _store(tmp_path).load_graph("req-7")


def test_removed_tasks_are_deleted_on_commit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    graph = store.new_graph("Cleanup")
    keep, drop = graph.add_drafts([TaskDraft(title="Keep"), TaskDraft(title="Drop")])
    store.commit(graph)

    graph = store.load_graph(graph.request.id)
    graph.remove_tree(drop.id)
    store.commit(graph)

    assert store.find_task(drop.id) is None
    assert store.find_task(keep.id) is not None
    assert list(store.load_graph(graph.request.id).tasks) == [keep.id]


def test_archives_are_persisted_and_searchable(tmp_path: Path) -> None:
    store = _store(tmp_path)
    graph = store.new_graph("Release")
    (root,) = graph.add_drafts([TaskDraft(title="Root")])
    child = graph.new_task("Child", parent_id=root.id)
    root.status = child.status = "done"
    archive_tree(graph, root.id)
    store.commit(graph)

    archives = store.list_archives(graph.request.id)
    assert len(archives) == 1
    assert archives[0].root_task_id == root.id
    assert archives[0].request_text == "Release"
    assert store.list_archives("req-99") == []

    found = store.find_archived_task(child.id)
    assert found is not None
    entry, snapshot = found
    assert entry.id == archives[0].id
    assert snapshot["title"] == "Child"
    assert store.find_task(child.id) is None


def test_failed_commit_rolls_back_everything(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = _store(tmp_path)
    graph = store.new_graph("Atomic")
    first, second = graph.add_drafts([TaskDraft(title="First"), TaskDraft(title="Second")])
    store.commit(graph)

    graph = store.load_graph(graph.request.id)
    graph.tasks[first.id].status = "active"
    graph.tasks[second.id].title = "Renamed"
    graph.request.completed = True

    real_params = task_store_module._task_params
    calls = {"n": 0}

    def flaky_params(task):
        calls["n"] += 1
        if calls["n"] == 2:
            raise sqlite3.OperationalError("disk I/O error")
        return real_params(task)

    monkeypatch.setattr(task_store_module, "_task_params", flaky_params)

    with pytest.raises(PersistenceError, match="disk I/O error"):
        store.commit(graph)

    monkeypatch.setattr(task_store_module, "_task_params", real_params)
    reloaded = store.load_graph(graph.request.id)
    assert reloaded.tasks[first.id].status == "pending"
    assert reloaded.tasks[second.id].title == "Second"
    assert reloaded.request.completed is False


def test_list_requests_counts_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    graph = store.new_graph("Counting")
    a, _ = graph.add_drafts([TaskDraft(title="A"), TaskDraft(title="B")])
    a.status = "done"
    store.commit(graph)

    (row,) = store.list_requests()

    assert row["id"] == graph.request.id
    assert (row["task_count"], row["terminal_count"], row["archive_count"]) == (2, 1, 0)
    assert row["completed"] is False
