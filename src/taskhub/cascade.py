from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .graph import RequestGraph
from .lifecycle import AUTO_COMPLETE_FROM, auto_complete
from .model import ArchiveEntry, Task

logger = logging.getLogger(__name__)


@dataclass
class CascadeResult:
    completed_parents: list[str] = field(default_factory=list)
    archived: ArchiveEntry | None = None
    request_completed: bool = False

    def merge(self, other: "CascadeResult") -> None:
        self.completed_parents.extend(other.completed_parents)
        self.archived = other.archived or self.archived
        self.request_completed = self.request_completed or other.request_completed

    def message(self, request_id: str) -> str:
        parts = [f" Parent task '{tid}' auto-completed." for tid in self.completed_parents]
        if self.archived is not None:
            parts.append(
                f" Task tree '{self.archived.root_task_id}' with "
                f"{len(self.archived.tasks)} task(s) auto-archived."
            )
        if self.request_completed:
            parts.append(f" Request '{request_id}' completed.")
        return "".join(parts)


def _resolved(graph: RequestGraph, task: Task) -> bool:
    """Terminal, or a split container whose whole subtree is resolved."""
    stack = [task]
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current.id in seen:
            continue
        seen.add(current.id)
        if current.is_terminal:
            continue
        if current.status != "split":
            return False
        stack.extend(graph.tasks[cid] for cid in current.subtask_ids if cid in graph.tasks)
    return True


def children_resolved(graph: RequestGraph, parent: Task) -> bool:
    return all(
        _resolved(graph, graph.tasks[cid])
        for cid in parent.subtask_ids
        if cid in graph.tasks
    )


def fully_terminal(graph: RequestGraph, root: Task) -> bool:
    return all(task.is_terminal for task in graph.tree(root.id))


def archive_tree(graph: RequestGraph, root_id: str) -> ArchiveEntry:
    doomed = graph.remove_tree(root_id)
    entry = ArchiveEntry(
        request_id=graph.request.id,
        request_text=graph.request.original_request,
        root_task_id=root_id,
        tasks=tuple(task.to_dict() for task in doomed),
        archived_at=graph.clock(),
    )
    graph.archives.append(entry)
    logger.info("archived task tree %s (%d tasks)", root_id, len(doomed))
    return entry


def cascade(graph: RequestGraph, task_id: str) -> CascadeResult:
    """Propagate a terminal status change from ``task_id`` upward.

    Ancestors whose children are all resolved become done, even when some
    children failed. If the walk reaches a top-level task that is done and
    whose whole tree is terminal, that tree is archived and removed from the
    live graph. A failed top-level task stays live.
    """
    result = CascadeResult()
    was_completed = graph.request.completed
    current = graph.get(task_id)
    seen = {current.id}

    while current.parent_id is not None:
        parent = graph.tasks.get(current.parent_id)
        if parent is None or parent.id in seen:
            break
        seen.add(parent.id)
        if not children_resolved(graph, parent):
            break
        if parent.status in AUTO_COMPLETE_FROM:
            auto_complete(parent, now=graph.clock())
            result.completed_parents.append(parent.id)
            logger.info("auto-completed parent task %s", parent.id)
        elif not parent.is_terminal:
            break
        current = parent

    root = current
    if root.parent_id is None and root.status == "done" and fully_terminal(graph, root):
        result.archived = archive_tree(graph, root.id)

    graph.refresh_completion()
    result.request_completed = graph.request.completed and not was_completed
    return result


def settle_parent(graph: RequestGraph, parent_id: str | None) -> CascadeResult:
    """Re-check a parent after one of its children was removed."""
    if parent_id is None or parent_id not in graph:
        return CascadeResult()
    parent = graph.tasks[parent_id]
    if parent.is_terminal:
        return cascade(graph, parent.id)
    if parent.status not in AUTO_COMPLETE_FROM:
        return CascadeResult()
    live_children = [cid for cid in parent.subtask_ids if cid in graph]
    if live_children:
        if not children_resolved(graph, parent):
            return CascadeResult()
    elif parent.status != "split":
        return CascadeResult()

    auto_complete(parent, now=graph.clock())
    logger.info("auto-completed parent task %s", parent.id)
    result = CascadeResult(completed_parents=[parent.id])
    result.merge(cascade(graph, parent.id))
    return result
