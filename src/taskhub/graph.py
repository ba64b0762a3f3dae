from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field

from .errors import InvalidOperationError, NotFoundError
from .model import ArchiveEntry, IdSequence, Request, Task, TaskDraft, now_ms, unique


@dataclass
class RequestGraph:
    """Live tasks of one request, keyed by id.

    Parent/child and dependency links are plain ids resolved through
    ``tasks``. ``removed`` and ``archives`` record what a store must delete and
    write on the next commit.
    """

    request: Request
    tasks: dict[str, Task] = field(default_factory=dict)
    task_ids: IdSequence = field(default_factory=lambda: IdSequence("task"))
    clock: Callable[[], int] = now_ms
    removed: set[str] = field(default_factory=set)
    archives: list[ArchiveEntry] = field(default_factory=list)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self.ordered())

    def __len__(self) -> int:
        return len(self.tasks)

    def ordered(self) -> list[Task]:
        return sorted(self.tasks.values(), key=lambda task: task.seq)

    def get(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def touch(self, task: Task) -> None:
        task.updated_at = self.clock()

    def new_task(
        self,
        title: str,
        *,
        description: str = "",
        priority: str = "medium",
        type: str | None = None,
        depends_on: Iterable[str] = (),
        parent_id: str | None = None,
        environment_context: str | None = None,
        artifacts: Iterable[str] = (),
    ) -> Task:
        deps = unique(depends_on)
        for dep_id in deps:
            if dep_id not in self.tasks:
                raise NotFoundError("dependency task", dep_id)
        if parent_id is not None:
            self.get(parent_id)

        ts = self.clock()
        task = Task(
            id=self.task_ids.next(),
            request_id=self.request.id,
            title=title,
            description=description,
            priority=priority,
            type=type,
            depends_on=deps,
            environment_context=environment_context,
            artifacts=unique(artifacts),
            created_at=ts,
            updated_at=ts,
        )
        self.tasks[task.id] = task
        self.removed.discard(task.id)
        if parent_id is not None:
            self.attach_subtask(parent_id, task.id)
        return task

    def children(self, task_id: str) -> list[Task]:
        parent = self.get(task_id)
        return [self.tasks[cid] for cid in parent.subtask_ids if cid in self.tasks]

    def attach_subtask(self, parent_id: str, child_id: str) -> None:
        if parent_id == child_id:
            raise InvalidOperationError("a task cannot be its own subtask")
        parent = self.get(parent_id)
        child = self.get(child_id)
        if child_id in self.ancestor_ids(parent_id):
            raise InvalidOperationError(
                f"task {child_id} is an ancestor of {parent_id}"
            )
        if child.parent_id == parent_id and child_id in parent.subtask_ids:
            return
        if child.parent_id is not None and child.parent_id != parent_id:
            self.detach_subtask(child.parent_id, child_id)
        child.parent_id = parent_id
        if child_id not in parent.subtask_ids:
            parent.subtask_ids.append(child_id)
        self.touch(parent)
        self.touch(child)

    def detach_subtask(self, parent_id: str, child_id: str) -> None:
        parent = self.tasks.get(parent_id)
        if parent is not None and child_id in parent.subtask_ids:
            parent.subtask_ids.remove(child_id)
            self.touch(parent)
        child = self.tasks.get(child_id)
        if child is not None and child.parent_id == parent_id:
            child.parent_id = None
            self.touch(child)

    def ancestor_ids(self, task_id: str) -> list[str]:
        out: list[str] = []
        seen = {task_id}
        current = self.tasks.get(task_id)
        while current is not None and current.parent_id is not None:
            parent_id = current.parent_id
            if parent_id in seen:
                break
            seen.add(parent_id)
            out.append(parent_id)
            current = self.tasks.get(parent_id)
        return out

    def descendants(self, task_id: str) -> list[Task]:
        root = self.get(task_id)
        out: list[Task] = []
        seen = {root.id}
        queue = list(root.subtask_ids)
        cursor = 0
        while cursor < len(queue):
            child_id = queue[cursor]
            cursor += 1
            if child_id in seen:
                continue
            seen.add(child_id)
            child = self.tasks.get(child_id)
            if child is None:
                continue
            out.append(child)
            queue.extend(child.subtask_ids)
        return out

    def tree(self, task_id: str) -> list[Task]:
        return [self.get(task_id), *self.descendants(task_id)]

    def remove_tree(self, task_id: str) -> list[Task]:
        """Remove a task and all descendants; return them root first.

        The parent drops the root id, surviving tasks lose dependencies on the
        removed set, and any survivor whose parent pointer leads into the
        removed set becomes parent-less instead of being removed too.
        """
        doomed = self.tree(task_id)
        root = doomed[0]
        doomed_ids = {task.id for task in doomed}

        if root.parent_id is not None:
            parent = self.tasks.get(root.parent_id)
            if parent is not None and root.id in parent.subtask_ids:
                parent.subtask_ids.remove(root.id)
                self.touch(parent)

        for task in doomed:
            del self.tasks[task.id]
        self.removed.update(doomed_ids)

        for survivor in self.tasks.values():
            changed = False
            if any(dep in doomed_ids for dep in survivor.depends_on):
                survivor.depends_on = [
                    dep for dep in survivor.depends_on if dep not in doomed_ids
                ]
                changed = True
            if any(cid in doomed_ids for cid in survivor.subtask_ids):
                survivor.subtask_ids = [
                    cid for cid in survivor.subtask_ids if cid not in doomed_ids
                ]
                changed = True
            if survivor.parent_id in doomed_ids:
                survivor.parent_id = None
                changed = True
            if changed:
                self.touch(survivor)
        return doomed

    def is_settled(self) -> bool:
        return all(
            task.is_terminal for task in self.tasks.values() if task.status != "split"
        )

    def refresh_completion(self) -> bool:
        """Recompute ``request.completed``; return True when it flipped."""
        completed = self.is_settled()
        self.request.task_ids = [task.id for task in self.ordered()]
        if completed == self.request.completed:
            return False
        self.request.completed = completed
        self.request.updated_at = self.clock()
        return True

    def add_drafts(
        self,
        drafts: Sequence[TaskDraft],
        *,
        parent_id: str | None = None,
        default_priority: str = "medium",
    ) -> list[Task]:
        """Create tasks in order; children inherit unset fields from the parent.

        ``depends_on`` entries name existing tasks of the request, or ``#N`` for
        the N-th (1-based) definition of the same batch. All references are
        checked before anything is created.
        """
        from .deps import cycle_edges

        parent = self.get(parent_id) if parent_id is not None else None
        batch_edges: dict[str, list[str]] = {}
        for pos, draft in enumerate(drafts, start=1):
            refs: list[str] = []
            for ref in draft.depends_on:
                if ref.startswith("#"):
                    try:
                        index = int(ref[1:])
                    except ValueError:
                        raise InvalidOperationError(f"invalid batch reference: {ref}") from None
                    if not 1 <= index <= len(drafts):
                        raise NotFoundError("batch task", ref)
                    if index == pos:
                        raise InvalidOperationError("a task cannot depend on itself")
                    refs.append(f"#{index}")
                elif ref not in self.tasks:
                    raise NotFoundError("dependency task", ref)
            batch_edges[f"#{pos}"] = refs
        cycles = cycle_edges(batch_edges)
        if cycles:
            raise InvalidOperationError(
                "dependency cycle in task definitions: " + " -> ".join(cycles[0][2])
            )

        created: list[Task] = []
        for draft in drafts:
            priority = draft.priority or (parent.priority if parent else default_priority)
            task_type = draft.type or (parent.type if parent else None)
            context = draft.environment_context
            if context is None and parent is not None:
                context = parent.environment_context
            created.append(
                self.new_task(
                    draft.title,
                    description=draft.description,
                    priority=priority,
                    type=task_type,
                    depends_on=[ref for ref in draft.depends_on if not ref.startswith("#")],
                    parent_id=parent_id,
                    environment_context=context,
                    artifacts=draft.artifacts,
                )
            )
        for task, draft in zip(created, drafts):
            batch_deps = [
                created[int(ref[1:]) - 1].id
                for ref in draft.depends_on
                if ref.startswith("#")
            ]
            if batch_deps:
                task.depends_on = unique([*task.depends_on, *batch_deps])
        return created
