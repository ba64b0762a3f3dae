from __future__ import annotations

import pytest

from taskhub.deps import (
    add_dependency,
    cycle_edges,
    dependencies_met,
    remove_dependency,
    validate_dependencies,
)
from taskhub.errors import InvalidOperationError, NotFoundError
from taskhub.graph import RequestGraph


def test_add_dependency_rejects_self_reference(graph: RequestGraph) -> None:
    task = graph.new_task("Solo")

    with pytest.raises(InvalidOperationError, match="cannot depend on itself"):
        add_dependency(graph, task.id, task.id)
    assert task.depends_on == []


def test_add_dependency_rejects_immediate_cycle(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B", depends_on=[a.id])

    with pytest.raises(InvalidOperationError, match="would create a cycle"):
        add_dependency(graph, a.id, b.id)
    assert a.depends_on == []
    assert b.depends_on == [a.id]


def test_add_dependency_requires_existing_target(graph: RequestGraph) -> None:
    a = graph.new_task("A")

    with pytest.raises(NotFoundError, match="task-42"):
        add_dependency(graph, a.id, "task-42")


def test_add_dependency_is_noop_for_existing_edge(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")

    assert add_dependency(graph, b.id, a.id) is True
    assert add_dependency(graph, b.id, a.id) is False
    assert b.depends_on == [a.id]


def test_terminal_task_cannot_gain_dependencies(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    b.status = "done"

    with pytest.raises(InvalidOperationError, match="terminal"):
        add_dependency(graph, b.id, a.id)


def test_lazy_mode_accepts_long_cycle_and_validation_reports_it(
    graph: RequestGraph,
) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    c = graph.new_task("C")
    add_dependency(graph, a.id, b.id)
    add_dependency(graph, b.id, c.id)
    add_dependency(graph, c.id, a.id)

    issues = validate_dependencies(graph.tasks)

    assert len(issues) == 1
    issue = issues[0]
    assert issue["code"] == "dependency_cycle"
    assert (issue["id"], issue["target"]) == (c.id, a.id)
    assert issue["cycle"] == [a.id, b.id, c.id, a.id]


def test_eager_mode_rejects_long_cycle_without_mutation(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    c = graph.new_task("C")
    add_dependency(graph, a.id, b.id, eager=True)
    add_dependency(graph, b.id, c.id, eager=True)

    with pytest.raises(InvalidOperationError, match="transitively"):
        add_dependency(graph, c.id, a.id, eager=True)
    assert c.depends_on == []
    assert validate_dependencies(graph.tasks) == []


def test_validation_reports_missing_references_and_every_cycle(
    graph: RequestGraph,
) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    c = graph.new_task("C")
    d = graph.new_task("D")
    a.depends_on = [b.id, "task-99"]
    b.depends_on = [a.id]
    c.depends_on = [d.id]
    d.depends_on = [c.id]

    issues = validate_dependencies(graph.tasks)

    assert [(i["code"], i["id"], i["target"]) for i in issues] == [
        ("missing_dependency", a.id, "task-99"),
        ("dependency_cycle", b.id, a.id),
        ("dependency_cycle", d.id, c.id),
    ]


def test_cycle_edges_handles_diamonds_without_false_positives() -> None:
    edges = {
        "a": ["b", "c"],
        "b": ["d"],
        "c": ["d"],
        "d": [],
    }

    assert cycle_edges(edges) == []
    assert cycle_edges({}) == []


def test_remove_dependency(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B", depends_on=[a.id])

    assert remove_dependency(graph, b.id, a.id) is True
    assert remove_dependency(graph, b.id, a.id) is False
    assert b.depends_on == []


def test_dependencies_met_requires_done(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B", depends_on=[a.id])

    a.status = "failed"
    assert dependencies_met(graph, b) is False
    a.status = "done"
    assert dependencies_met(graph, b) is True
    b.depends_on.append("task-404")
    assert dependencies_met(graph, b) is False
