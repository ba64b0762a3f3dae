from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from .errors import InvalidOperationError, NotFoundError
from .graph import RequestGraph
from .lifecycle import ensure_mutable
from .model import Task


def add_dependency(
    graph: RequestGraph,
    task_id: str,
    target_id: str,
    *,
    eager: bool = False,
) -> bool:
    """Make ``task_id`` depend on ``target_id``; False if the edge existed.

    Only the self and immediate two-task cycles are rejected unless ``eager``
    is set, in which case any cycle the edge would close is rejected.
    """
    task = graph.get(task_id)
    if target_id not in graph:
        raise NotFoundError("dependency task", target_id)
    target = graph.tasks[target_id]
    if task_id == target_id:
        raise InvalidOperationError("a task cannot depend on itself")
    ensure_mutable(task)
    if target_id in task.depends_on:
        return False
    if task_id in target.depends_on:
        raise InvalidOperationError(
            f"{target_id} already depends on {task_id}; adding this edge would create a cycle"
        )
    if eager and reaches(edge_map(graph.tasks), target_id, task_id):
        raise InvalidOperationError(
            f"{target_id} transitively depends on {task_id}; adding this edge would create a cycle"
        )
    task.depends_on.append(target_id)
    graph.touch(task)
    return True


def remove_dependency(graph: RequestGraph, task_id: str, target_id: str) -> bool:
    task = graph.get(task_id)
    if target_id not in task.depends_on:
        return False
    ensure_mutable(task)
    task.depends_on.remove(target_id)
    graph.touch(task)
    return True


def edge_map(tasks: Mapping[str, Task]) -> dict[str, list[str]]:
    return {task_id: list(task.depends_on) for task_id, task in tasks.items()}


def reaches(
    edges: Mapping[str, Sequence[str]],
    start_id: str,
    goal_id: str,
) -> bool:
    stack = [start_id]
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current == goal_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(edges.get(current, ()))
    return False


def dependencies_met(graph: RequestGraph, task: Task) -> bool:
    for dep_id in task.depends_on:
        dep = graph.tasks.get(dep_id)
        if dep is None or dep.status != "done":
            return False
    return True


def cycle_edges(edges: Mapping[str, Sequence[str]]) -> list[tuple[str, str, list[str]]]:
    """Return every distinct cycle-closing edge as ``(src, dst, cycle)``.

    Depth-first search with an explicit stack; ``state`` is 1 while a node is
    on the recursion stack and 2 once it is finished.
    """
    state: dict[str, int] = {}
    found: list[tuple[str, str, list[str]]] = []
    seen_edges: set[tuple[str, str]] = set()

    for start in edges:
        if state.get(start):
            continue
        state[start] = 1
        path = [start]
        stack = [(start, iter(edges.get(start, ())))]
        while stack:
            node, children = stack[-1]
            nxt = next(children, None)
            if nxt is None:
                stack.pop()
                path.pop()
                state[node] = 2
                continue
            if nxt not in edges:
                continue
            mark = state.get(nxt, 0)
            if mark == 0:
                state[nxt] = 1
                path.append(nxt)
                stack.append((nxt, iter(edges.get(nxt, ()))))
            elif mark == 1 and (node, nxt) not in seen_edges:
                seen_edges.add((node, nxt))
                found.append((node, nxt, [*path[path.index(nxt) :], nxt]))
    return found


def validate_dependencies(tasks: Mapping[str, Task]) -> list[dict[str, Any]]:
    issues: list[dict[str, Any]] = []
    ordered = sorted(tasks.values(), key=lambda task: task.seq)
    for task in ordered:
        for dep_id in task.depends_on:
            if dep_id not in tasks:
                issues.append(
                    {
                        "code": "missing_dependency",
                        "id": task.id,
                        "target": dep_id,
                        "message": f"{task.id} depends on missing task {dep_id}",
                    }
                )

    edges = {task.id: list(task.depends_on) for task in ordered}
    for src, dst, cycle in cycle_edges(edges):
        issues.append(
            {
                "code": "dependency_cycle",
                "id": src,
                "target": dst,
                "cycle": cycle,
                "message": "dependency cycle: " + " -> ".join(cycle),
            }
        )
    return issues
