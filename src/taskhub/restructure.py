from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .cascade import CascadeResult, settle_parent
from .deps import edge_map, reaches
from .errors import InvalidOperationError
from .graph import RequestGraph
from .lifecycle import transition
from .model import Task, TaskDraft, unique

logger = logging.getLogger(__name__)


SPLITTABLE_STATUSES = frozenset({"pending", "active"})


def split_task(
    graph: RequestGraph,
    task_id: str,
    drafts: Sequence[TaskDraft],
    *,
    reason: str | None = None,
    default_priority: str = "medium",
) -> list[Task]:
    """Turn a task into a container and create its new pending subtasks."""
    task = graph.get(task_id)
    if task.status not in SPLITTABLE_STATUSES:
        raise InvalidOperationError(
            f"cannot split task {task.id} with status {task.status}; "
            "only pending or active tasks can be split"
        )
    if not drafts:
        raise InvalidOperationError("split requires at least one subtask")

    created = graph.add_drafts(drafts, parent_id=task.id, default_priority=default_priority)
    transition(task, "split", now=graph.clock())
    note = f"[split into {', '.join(child.id for child in created)}]"
    if reason:
        note = f"{note} {reason}"
    task.description = f"{task.description}\n\n{note}" if task.description else note
    logger.info("split task %s into %d subtasks", task.id, len(created))
    return created


@dataclass
class MergeResult:
    primary: Task
    merged_ids: list[str]
    reparented: list[str] = field(default_factory=list)
    rewritten: list[str] = field(default_factory=list)
    cascade: CascadeResult = field(default_factory=CascadeResult)


def _ensure_mergeable(task: Task) -> None:
    if task.is_terminal or task.status == "split":
        raise InvalidOperationError(
            f"cannot merge task {task.id} with status {task.status}"
        )


def _merged_description(primary: Task, sources: Sequence[Task]) -> str:
    parts = [primary.description] if primary.description else []
    for source in sources:
        block = f"--- merged from {source.id}: {source.title} ---"
        if source.description:
            block = f"{block}\n{source.description}"
        parts.append(block)
    return "\n\n".join(parts)


def merge_tasks(
    graph: RequestGraph,
    primary_id: str,
    source_ids: Sequence[str],
    *,
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    type: str | None = None,
    environment_context: str | None = None,
    artifacts: Sequence[str] | None = None,
) -> MergeResult:
    """Fold ``source_ids`` into ``primary_id`` and delete the sources.

    Subtasks, dependencies and artifacts are unioned onto the primary and any
    task that depended on a source now depends on the primary.
    """
    primary = graph.get(primary_id)
    if not source_ids:
        raise InvalidOperationError("merge requires at least one task to merge")
    if len(set(source_ids)) != len(source_ids):
        raise InvalidOperationError("tasks to merge must be distinct")
    if primary_id in source_ids:
        raise InvalidOperationError("the primary task cannot be merged into itself")
    sources = [graph.get(source_id) for source_id in source_ids]
    _ensure_mergeable(primary)
    for source in sources:
        _ensure_mergeable(source)

    ancestors = set(graph.ancestor_ids(primary.id))
    for source in sources:
        if source.id in ancestors:
            raise InvalidOperationError(
                f"cannot merge {source.id} into its descendant {primary.id}"
            )

    merged = {primary.id, *source_ids}
    new_deps = [
        dep
        for dep in unique([*primary.depends_on, *(d for s in sources for d in s.depends_on)])
        if dep not in merged
    ]
    projected = edge_map(graph.tasks)
    for source_id in source_ids:
        projected.pop(source_id, None)
    projected[primary.id] = new_deps
    for task_id, deps in projected.items():
        if task_id != primary.id and any(dep in merged for dep in deps):
            projected[task_id] = unique(primary.id if dep in merged else dep for dep in deps)
    if any(reaches(projected, dep, primary.id) for dep in new_deps):
        raise InvalidOperationError(
            f"merging into {primary.id} would create a dependency cycle"
        )

    result = MergeResult(primary=primary, merged_ids=list(source_ids))
    primary.description = (
        description if description is not None else _merged_description(primary, sources)
    )
    primary.depends_on = new_deps
    primary.artifacts = (
        unique(artifacts)
        if artifacts is not None
        else unique([*primary.artifacts, *(a for s in sources for a in s.artifacts)])
    )
    for source in sources:
        for child_id in list(source.subtask_ids):
            if child_id in graph:
                graph.attach_subtask(primary.id, child_id)
                result.reparented.append(child_id)

    for task in graph.ordered():
        if task.id in merged:
            continue
        if any(dep in merged for dep in task.depends_on):
            task.depends_on = unique(
                primary.id if dep in merged else dep for dep in task.depends_on
            )
            graph.touch(task)
            result.rewritten.append(task.id)

    former_parents: list[str] = []
    for source in sources:
        if source.parent_id is not None and source.parent_id not in merged:
            former_parents.append(source.parent_id)
        graph.remove_tree(source.id)

    if title is not None:
        primary.title = title
    if priority is not None:
        primary.priority = priority
    if type is not None:
        primary.type = type
    if environment_context is not None:
        primary.environment_context = environment_context
    graph.touch(primary)

    for parent_id in unique(former_parents):
        result.cascade.merge(settle_parent(graph, parent_id))
    graph.refresh_completion()
    logger.info("merged %s into %s", ", ".join(source_ids), primary.id)
    return result
