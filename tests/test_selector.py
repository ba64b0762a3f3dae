from __future__ import annotations

from taskhub.graph import RequestGraph
from taskhub.selector import select_next


def test_higher_priority_wins_deterministically(graph: RequestGraph) -> None:
    low = graph.new_task("Low", priority="low")
    high = graph.new_task("High", priority="high")

    first = select_next(graph)
    second = select_next(graph)

    assert first.task is high
    assert second.task is high
    assert first.activated == [high.id]
    assert second.activated == []
    assert low.status == "pending"


def test_active_work_is_resumed_before_new_work(graph: RequestGraph) -> None:
    in_flight = graph.new_task("In flight", priority="low")
    graph.new_task("Urgent", priority="critical")
    in_flight.status = "active"

    assert select_next(graph).task is in_flight


def test_clarification_tasks_rank_last(graph: RequestGraph) -> None:
    blocked = graph.new_task("Blocked on input", priority="critical")
    ready = graph.new_task("Ready", priority="low")
    blocked.status = "requires-clarification"

    assert select_next(graph).task is ready
    ready.status = "done"
    assert select_next(graph).task is blocked


def test_creation_order_breaks_ties(graph: RequestGraph) -> None:
    first = graph.new_task("First")
    graph.new_task("Second")

    assert select_next(graph).task is first


def test_dependency_gate_requires_done(graph: RequestGraph) -> None:
    base = graph.new_task("Base", priority="low")
    top = graph.new_task("Top", priority="critical", depends_on=[base.id])

    assert select_next(graph).task is base
    base.status = "failed"
    selection = select_next(graph)
    assert selection.task is None
    assert selection.completed is False
    base.status = "done"
    assert select_next(graph).task is top


def test_activation_flows_top_down_one_level_at_a_time(graph: RequestGraph) -> None:
    parent = graph.new_task("Parent")
    child = graph.new_task("Child", parent_id=parent.id, priority="critical")
    grandchild = graph.new_task("Grandchild", parent_id=child.id, priority="critical")

    assert select_next(graph).task is parent
    assert parent.status == "active"
    assert select_next(graph).task is child
    assert select_next(graph).task is grandchild
    assert [parent.status, child.status, grandchild.status] == ["active"] * 3


def test_children_of_split_container_are_offered(graph: RequestGraph) -> None:
    container = graph.new_task("Container")
    part = graph.new_task("Part", parent_id=container.id)
    container.status = "split"

    assert select_next(graph).task is part


def test_children_stay_available_while_parent_needs_clarification(graph: RequestGraph) -> None:
    parent = graph.new_task("Parent")
    child = graph.new_task("Child", parent_id=parent.id)
    parent.status = "requires-clarification"

    selection = select_next(graph)

    assert selection.task is child
    assert selection.activated == [child.id]
    assert parent.status == "requires-clarification"


def test_request_completes_when_everything_is_terminal(graph: RequestGraph) -> None:
    a = graph.new_task("A")
    b = graph.new_task("B")
    a.status = "done"
    b.status = "failed"

    selection = select_next(graph)

    assert selection.task is None
    assert selection.completed is True
    assert graph.request.completed is True
