from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .graph import RequestGraph
from .model import Task


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


def tree_rows(graph: RequestGraph) -> list[tuple[int, Task]]:
    """Tasks in display order: roots by creation order, children under parents."""
    rows: list[tuple[int, Task]] = []
    seen: set[str] = set()
    roots = [
        task
        for task in graph.ordered()
        if task.parent_id is None or task.parent_id not in graph
    ]
    stack: list[tuple[int, Task]] = [(0, task) for task in reversed(roots)]
    while stack:
        depth, task = stack.pop()
        if task.id in seen:
            continue
        seen.add(task.id)
        rows.append((depth, task))
        children = [graph.tasks[cid] for cid in task.subtask_ids if cid in graph]
        stack.extend((depth + 1, child) for child in reversed(children))
    # anything unreachable from a root still gets listed
    rows.extend((0, task) for task in graph.ordered() if task.id not in seen)
    return rows


def format_progress_table(graph: RequestGraph) -> str:
    if not graph.tasks:
        return "No live tasks."
    lines = [
        f"Progress for {graph.request.id}:",
        "ID | Title | Status | Priority | Type | Depends On",
        "---|-------|--------|----------|------|-----------",
    ]
    for depth, task in tree_rows(graph):
        title = "  " * depth + truncate(task.title, 30)
        lines.append(
            " | ".join(
                [
                    task.id,
                    title,
                    task.status,
                    task.priority,
                    task.type or "-",
                    ", ".join(task.depends_on) or "-",
                ]
            )
        )
    return "\n".join(lines)


def format_requests_list(requests: Sequence[dict[str, Any]]) -> str:
    if not requests:
        return "No requests found."
    lines = [
        "Requests:",
        "ID | Original Request | Tasks | Archived | Completed",
        "---|------------------|-------|----------|----------",
    ]
    for req in requests:
        lines.append(
            " | ".join(
                [
                    str(req["id"]),
                    truncate(str(req["original_request"]), 40),
                    f"{req['terminal_count']}/{req['task_count']}",
                    str(req["archive_count"]),
                    "yes" if req["completed"] else "no",
                ]
            )
        )
    return "\n".join(lines)
