from __future__ import annotations

from dataclasses import dataclass, field

from .deps import dependencies_met
from .graph import RequestGraph
from .lifecycle import transition
from .model import Task, priority_rank


STATUS_RANK = {
    "active": 0,
    "pending": 1,
    "requires-clarification": 2,
}


@dataclass
class Selection:
    task: Task | None
    activated: list[str] = field(default_factory=list)
    completed: bool = False


def _parent_admits(graph: RequestGraph, task: Task) -> bool:
    if task.parent_id is None:
        return True
    parent = graph.tasks.get(task.parent_id)
    if parent is None:
        return True
    if parent.status == "pending":
        return False
    if parent.status in {"active", "split"}:
        return task.id in parent.subtask_ids
    return True


def _has_open_subtasks(graph: RequestGraph, task: Task) -> bool:
    return any(
        not child.is_terminal
        for child in (graph.tasks.get(cid) for cid in task.subtask_ids)
        if child is not None
    )


def candidates(graph: RequestGraph) -> list[Task]:
    out: list[Task] = []
    for task in graph.ordered():
        if task.status not in STATUS_RANK:
            continue
        if not _parent_admits(graph, task):
            continue
        if task.status == "active" and _has_open_subtasks(graph, task):
            continue
        if not dependencies_met(graph, task):
            continue
        out.append(task)
    out.sort(
        key=lambda task: (
            STATUS_RANK[task.status],
            priority_rank(task.priority),
            task.seq,
        )
    )
    return out


def select_next(graph: RequestGraph) -> Selection:
    ranked = candidates(graph)
    if not ranked:
        settled = graph.is_settled()
        graph.refresh_completion()
        return Selection(task=None, completed=settled)

    picked = ranked[0]
    activated: list[str] = []
    if picked.status == "pending":
        transition(picked, "active", now=graph.clock())
        activated.append(picked.id)
    return Selection(task=picked, activated=activated)
