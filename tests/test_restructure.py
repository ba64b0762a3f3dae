from __future__ import annotations

import pytest

from taskhub.errors import InvalidOperationError, NotFoundError
from taskhub.graph import RequestGraph
from taskhub.lifecycle import mark_done
from taskhub.model import TaskDraft
from taskhub.restructure import merge_tasks, split_task


def test_split_creates_pending_children_and_blocks_direct_completion(
    graph: RequestGraph,
) -> None:
    task = graph.new_task(
        "Build feature",
        description="Original scope",
        priority="high",
        type="implementation",
        environment_context="repo: api",
    )
    task.status = "active"

    s1, s2 = split_task(
        graph,
        task.id,
        [TaskDraft(title="S1"), TaskDraft(title="S2", priority="low", depends_on=("#1",))],
        reason="too large",
    )

    assert task.status == "split"
    assert task.subtask_ids == [s1.id, s2.id]
    assert (s1.status, s2.status) == ("pending", "pending")
    assert s1.parent_id == task.id and s2.parent_id == task.id
    assert (s1.priority, s1.type, s1.environment_context) == ("high", "implementation", "repo: api")
    assert s2.priority == "low"
    assert s2.depends_on == [s1.id]
    assert task.description.startswith("Original scope")
    assert f"[split into {s1.id}, {s2.id}] too large" in task.description

    with pytest.raises(InvalidOperationError, match="resolve its subtasks first"):
        mark_done(task, now=graph.clock())


@pytest.mark.parametrize("status", ["done", "failed", "split", "requires-clarification"])
def test_split_rejects_non_splittable_status(graph: RequestGraph, status: str) -> None:
    task = graph.new_task("Task")
    task.status = status

    with pytest.raises(InvalidOperationError, match="cannot split"):
        split_task(graph, task.id, [TaskDraft(title="Part")])
    assert task.subtask_ids == []
    assert len(graph) == 1


def test_split_requires_subtasks(graph: RequestGraph) -> None:
    task = graph.new_task("Task")

    with pytest.raises(InvalidOperationError, match="at least one subtask"):
        split_task(graph, task.id, [])
    assert task.status == "pending"


def test_merge_reparents_subtasks_and_rewrites_dependents(graph: RequestGraph) -> None:
    a = graph.new_task("A", description="alpha", artifacts=["a.txt"])
    b = graph.new_task("B", description="beta", artifacts=["b.txt", "a.txt"])
    c = graph.new_task("C", parent_id=b.id)
    d = graph.new_task("D", depends_on=[b.id])

    result = merge_tasks(graph, a.id, [b.id])

    assert c.parent_id == a.id
    assert a.subtask_ids == [c.id]
    assert b.id not in graph
    assert d.depends_on == [a.id]
    assert result.reparented == [c.id]
    assert result.rewritten == [d.id]
    assert a.artifacts == ["a.txt", "b.txt"]
    assert a.description == f"alpha\n\n--- merged from {b.id}: B ---\nbeta"


def test_merge_unions_dependencies_outside_merged_set(graph: RequestGraph) -> None:
    x = graph.new_task("X")
    y = graph.new_task("Y")
    a = graph.new_task("A", depends_on=[x.id])
    b = graph.new_task("B", depends_on=[a.id, y.id])

    merge_tasks(graph, a.id, [b.id], title="A+B", priority="critical")

    assert a.depends_on == [x.id, y.id]
    assert (a.title, a.priority) == ("A+B", "critical")


def test_merge_rejects_terminal_or_split_tasks(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    c = graph.new_task("C")
    b.status = "done"
    c.status = "split"

    with pytest.raises(InvalidOperationError, match="cannot merge task"):
        merge_tasks(graph, a.id, [b.id])
    with pytest.raises(InvalidOperationError, match="cannot merge task"):
        merge_tasks(graph, c.id, [a.id])
    assert len(graph) == 3


def test_merge_rejects_bad_source_lists(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")

    with pytest.raises(InvalidOperationError, match="into itself"):
        merge_tasks(graph, a.id, [a.id])
    with pytest.raises(InvalidOperationError, match="distinct"):
        merge_tasks(graph, a.id, [b.id, b.id])
    with pytest.raises(InvalidOperationError, match="at least one"):
        merge_tasks(graph, a.id, [])
    with pytest.raises(NotFoundError):
        merge_tasks(graph, a.id, ["task-50"])


def test_merge_rejects_ancestor_into_descendant(graph: RequestGraph) -> None:
    parent = graph.new_task("Parent")
    child = graph.new_task("Child", parent_id=parent.id)

    with pytest.raises(InvalidOperationError, match="into its descendant"):
        merge_tasks(graph, child.id, [parent.id])
    assert parent.subtask_ids == [child.id]


def test_merge_rejects_merges_that_would_close_a_cycle(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    x = graph.new_task("X", depends_on=[b.id])
    a.depends_on = [x.id]

    with pytest.raises(InvalidOperationError, match="cycle"):
        merge_tasks(graph, a.id, [b.id])
    assert b.id in graph
    assert x.depends_on == [b.id]
    assert a.depends_on == [x.id]


def test_merging_a_child_into_its_parent(graph: RequestGraph) -> None:
    parent = graph.new_task("Parent")
    child = graph.new_task("Child", parent_id=parent.id)
    grandchild = graph.new_task("Grandchild", parent_id=child.id)

    merge_tasks(graph, parent.id, [child.id])

    assert parent.subtask_ids == [grandchild.id]
    assert grandchild.parent_id == parent.id
    assert child.id not in graph


def test_merge_reopens_stale_completed_request(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    graph.request.completed = True

    merge_tasks(graph, a.id, [b.id])

    assert graph.request.completed is False
