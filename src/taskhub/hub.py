from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import deps
from .cascade import archive_tree, cascade, fully_terminal, settle_parent
from .config import TaskHubConfig, load_config
from .errors import InvalidOperationError, NotFoundError
from .graph import RequestGraph
from .lifecycle import ensure_mutable, mark_done, mark_failed, transition
from .model import TaskDraft, unique
from .report import format_progress_table, format_requests_list
from .restructure import merge_tasks, split_task
from .selector import select_next
from .stores.summary import StagedSummary, SummaryStore
from .stores.task import TaskStore

logger = logging.getLogger(__name__)


def _drafts(items: Iterable[TaskDraft | Mapping[str, Any]]) -> list[TaskDraft]:
    return [
        item if isinstance(item, TaskDraft) else TaskDraft.from_dict(dict(item))
        for item in items
    ]


@dataclass
class TaskHub:
    """Named task operations over a ``TaskStore``.

    Every mutating operation loads the request graph under a per-request lock,
    runs the engines against it and commits the result in one transaction. An
    exception anywhere before the commit leaves storage untouched.
    """

    store: TaskStore
    summaries: SummaryStore
    config: TaskHubConfig
    _locks: dict[str, threading.Lock] = field(default_factory=dict, init=False, repr=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_workdir(
        cls,
        cwd: Path | None = None,
        *,
        state_dir: Path | None = None,
    ) -> "TaskHub":
        config = load_config(cwd, state_dir=state_dir)
        return cls(
            store=TaskStore(config.state_dir),
            summaries=SummaryStore(config.state_dir),
            config=config,
        )

    def _lock_for(self, request_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(request_id, threading.Lock())

    @contextmanager
    def _mutate(self, request_id: str) -> Iterator[RequestGraph]:
        with self._lock_for(request_id):
            graph = self.store.load_graph(request_id)
            yield graph
            self.store.commit(graph)

    @contextmanager
    def _summaries_after_commit(self) -> Iterator[list[StagedSummary]]:
        """Publish staged summaries only once the enclosed commit succeeded."""
        staged: list[StagedSummary] = []
        try:
            yield staged
        except BaseException:
            for item in staged:
                item.discard()
            raise
        for item in staged:
            item.publish()

    @contextmanager
    def _read(self, request_id: str) -> Iterator[RequestGraph]:
        with self._lock_for(request_id):
            yield self.store.load_graph(request_id)

    def _result(
        self,
        graph: RequestGraph,
        status: str,
        message: str,
        **payload: Any,
    ) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": status,
            "message": message,
            "request_id": graph.request.id,
            **payload,
            "request_completed": graph.request.completed,
        }
        if self.config.progress_in_results:
            out["progress"] = format_progress_table(graph)
        return out

    def dispatch(self, operation: str, params: Mapping[str, Any]) -> dict[str, Any]:
        from .schemas import OPERATIONS

        if operation not in OPERATIONS:
            raise NotFoundError("operation", operation)
        logger.debug("dispatch %s", operation)
        return getattr(self, operation)(**dict(params))

    # Planning

    def request_planning(
        self,
        original_request: str,
        tasks: Iterable[TaskDraft | Mapping[str, Any]],
        split_details: str | None = None,
    ) -> dict[str, Any]:
        drafts = _drafts(tasks)
        if not drafts:
            raise InvalidOperationError("a request needs at least one task")
        graph = self.store.new_graph(original_request, split_details=split_details)
        with self._lock_for(graph.request.id):
            created = graph.add_drafts(drafts, default_priority=self.config.default_priority)
            graph.refresh_completion()
            self.store.commit(graph)
        logger.info("planned request %s with %d tasks", graph.request.id, len(created))
        return self._result(
            graph,
            "planned",
            f"Request '{graph.request.id}' planned with {len(created)} task(s).",
            task_ids=[task.id for task in created],
        )

    def add_tasks_to_request(
        self,
        request_id: str,
        tasks: Iterable[TaskDraft | Mapping[str, Any]],
    ) -> dict[str, Any]:
        drafts = _drafts(tasks)
        if not drafts:
            raise InvalidOperationError("no tasks to add")
        with self._mutate(request_id) as graph:
            created = graph.add_drafts(drafts, default_priority=self.config.default_priority)
            graph.refresh_completion()
        return self._result(
            graph,
            "tasks_added",
            f"Added {len(created)} task(s) to request '{request_id}'.",
            task_ids=[task.id for task in created],
        )

    # Selection and status reports

    def get_next_task(self, request_id: str) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            selection = select_next(graph)
        if selection.task is not None:
            task = selection.task
            return self._result(
                graph,
                "next_task",
                f"Next task: '{task.id}' {task.title}",
                task=task.to_dict(),
                activated=selection.activated,
            )
        if selection.completed:
            return self._result(
                graph,
                "request_completed",
                f"All tasks in request '{request_id}' are complete.",
            )
        return self._result(
            graph,
            "no_actionable_task",
            f"No actionable task in request '{request_id}'; remaining tasks are "
            "waiting on dependencies, clarification or their parents.",
        )

    def mark_task_done(
        self,
        request_id: str,
        task_id: str,
        completed_details: str | None = None,
        artifacts: list[str] | None = None,
        summary: str | None = None,
    ) -> dict[str, Any]:
        with self._summaries_after_commit() as staged, self._mutate(request_id) as graph:
            task = graph.get(task_id)
            changed = mark_done(
                task,
                now=graph.clock(),
                completed_details=completed_details,
                artifacts=artifacts,
            )
            if not changed:
                return self._result(
                    graph,
                    "already_done",
                    f"Task '{task_id}' is already done.",
                    task=task.to_dict(),
                )
            if summary:
                staged.append(self.summaries.stage(task.id, summary))
                task.summary_ref = staged[-1].ref
            snapshot = task.to_dict()
            result = cascade(graph, task.id)
        logger.debug("task %s done", task_id)
        return self._result(
            graph,
            "task_done",
            f"Task '{task_id}' marked done.{result.message(request_id)}",
            task=snapshot,
            auto_completed=result.completed_parents,
            archived_root=result.archived.root_task_id if result.archived else None,
        )

    def mark_task_failed(
        self,
        request_id: str,
        task_id: str,
        reason: str | None = None,
        suggested_retry_strategy: str | None = None,
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            task = graph.get(task_id)
            changed = mark_failed(
                task,
                now=graph.clock(),
                reason=reason,
                suggested_retry_strategy=suggested_retry_strategy,
            )
            if not changed:
                return self._result(
                    graph,
                    "already_failed",
                    f"Task '{task_id}' has already failed.",
                    task=task.to_dict(),
                )
            snapshot = task.to_dict()
            result = cascade(graph, task.id)
        logger.debug("task %s failed", task_id)
        return self._result(
            graph,
            "task_failed",
            f"Task '{task_id}' marked failed.{result.message(request_id)}",
            task=snapshot,
            auto_completed=result.completed_parents,
            archived_root=result.archived.root_task_id if result.archived else None,
        )

    def request_clarification(
        self,
        request_id: str,
        task_id: str,
        question: str | None = None,
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            task = graph.get(task_id)
            transition(task, "requires-clarification", now=graph.clock())
            if question:
                note = f"[clarification needed] {question}"
                task.description = f"{task.description}\n\n{note}" if task.description else note
            graph.refresh_completion()
        return self._result(
            graph,
            "clarification_requested",
            f"Task '{task_id}' is waiting for clarification.",
            task=task.to_dict(),
        )

    def resume_task(self, request_id: str, task_id: str) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            task = graph.get(task_id)
            if task.status != "requires-clarification":
                raise InvalidOperationError(
                    f"task {task_id} is {task.status}; only tasks waiting for "
                    "clarification can be resumed"
                )
            transition(task, "active", now=graph.clock())
        return self._result(
            graph, "task_resumed", f"Task '{task_id}' resumed.", task=task.to_dict()
        )

    def update_task(
        self,
        request_id: str,
        task_id: str,
        title: str | None = None,
        description: str | None = None,
        status: str | None = None,
        priority: str | None = None,
        type: str | None = None,
        artifacts: list[str] | None = None,
        environment_context: str | None = None,
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            task = graph.get(task_id)
            ensure_mutable(task)
            if status is not None and status != task.status:
                if status in {"done", "failed"}:
                    raise InvalidOperationError(
                        f"use mark_task_{status} to report a task as {status}"
                    )
                if status == "split":
                    raise InvalidOperationError("use split_task to split a task")
                transition(task, status, now=graph.clock())
            if title is not None:
                task.title = title
            if description is not None:
                task.description = description
            if priority is not None:
                task.priority = priority
            if type is not None:
                task.type = type
            if artifacts is not None:
                task.artifacts = unique(artifacts)
            if environment_context is not None:
                task.environment_context = environment_context
            graph.touch(task)
        return self._result(
            graph, "task_updated", f"Task '{task_id}' updated.", task=task.to_dict()
        )

    # Structure

    def delete_task(self, request_id: str, task_id: str) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            parent_id = graph.get(task_id).parent_id
            removed = graph.remove_tree(task_id)
            result = settle_parent(graph, parent_id)
            graph.refresh_completion()
        return self._result(
            graph,
            "task_deleted",
            f"Deleted task '{task_id}' and {len(removed) - 1} descendant(s)."
            f"{result.message(request_id)}",
            deleted_ids=[task.id for task in removed],
        )

    def add_subtask(
        self,
        request_id: str,
        parent_task_id: str,
        task: TaskDraft | Mapping[str, Any],
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            parent = graph.get(parent_task_id)
            ensure_mutable(parent)
            (created,) = graph.add_drafts(
                _drafts([task]),
                parent_id=parent.id,
                default_priority=self.config.default_priority,
            )
            graph.refresh_completion()
        return self._result(
            graph,
            "subtask_added",
            f"Subtask '{created.id}' added under '{parent_task_id}'.",
            task=created.to_dict(),
        )

    def remove_subtask(self, request_id: str, subtask_id: str) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            task = graph.get(subtask_id)
            parent_id = task.parent_id
            if parent_id is None:
                raise InvalidOperationError(f"task {subtask_id} is not a subtask")
            removed = graph.remove_tree(subtask_id)
            result = settle_parent(graph, parent_id)
            graph.refresh_completion()
        return self._result(
            graph,
            "subtask_removed",
            f"Removed subtask '{subtask_id}' from '{parent_id}'.{result.message(request_id)}",
            deleted_ids=[t.id for t in removed],
        )

    def split_task(
        self,
        request_id: str,
        task_id: str,
        subtasks: Iterable[TaskDraft | Mapping[str, Any]],
        split_reason: str | None = None,
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            created = split_task(
                graph,
                task_id,
                _drafts(subtasks),
                reason=split_reason,
                default_priority=self.config.default_priority,
            )
            graph.refresh_completion()
        return self._result(
            graph,
            "task_split",
            f"Task '{task_id}' split into {len(created)} subtask(s).",
            subtask_ids=[task.id for task in created],
        )

    def merge_tasks(
        self,
        request_id: str,
        primary_task_id: str,
        task_ids_to_merge: list[str],
        title: str | None = None,
        description: str | None = None,
        priority: str | None = None,
        type: str | None = None,
        environment_context: str | None = None,
        artifacts: list[str] | None = None,
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            result = merge_tasks(
                graph,
                primary_task_id,
                task_ids_to_merge,
                title=title,
                description=description,
                priority=priority,
                type=type,
                environment_context=environment_context,
                artifacts=artifacts,
            )
        return self._result(
            graph,
            "tasks_merged",
            f"Tasks [{', '.join(task_ids_to_merge)}] merged into '{primary_task_id}'."
            f"{result.cascade.message(request_id)}",
            task=result.primary.to_dict(),
            merged_ids=result.merged_ids,
            rewritten_dependents=result.rewritten,
        )

    # Dependencies

    def add_dependency(
        self,
        request_id: str,
        task_id: str,
        depends_on_task_id: str,
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            added = deps.add_dependency(
                graph,
                task_id,
                depends_on_task_id,
                eager=self.config.eager_cycle_check,
            )
        if not added:
            return self._result(
                graph,
                "dependency_exists",
                f"Task '{task_id}' already depends on '{depends_on_task_id}'.",
            )
        return self._result(
            graph,
            "dependency_added",
            f"Task '{task_id}' now depends on '{depends_on_task_id}'.",
        )

    def remove_dependency(
        self,
        request_id: str,
        task_id: str,
        depends_on_task_id: str,
    ) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            removed = deps.remove_dependency(graph, task_id, depends_on_task_id)
        if not removed:
            return self._result(
                graph,
                "dependency_not_found",
                f"Task '{task_id}' does not depend on '{depends_on_task_id}'.",
            )
        return self._result(
            graph,
            "dependency_removed",
            f"Task '{task_id}' no longer depends on '{depends_on_task_id}'.",
        )

    def validate_dependencies(self, request_id: str) -> dict[str, Any]:
        with self._read(request_id) as graph:
            issues = deps.validate_dependencies(graph.tasks)
        if not issues:
            return self._result(
                graph, "valid", f"Dependencies of '{request_id}' are valid.", issues=[]
            )
        return self._result(
            graph,
            "invalid",
            f"Found {len(issues)} dependency issue(s) in '{request_id}'.",
            issues=issues,
        )

    # Archives and summaries

    def archive_task_tree(self, request_id: str, task_id: str) -> dict[str, Any]:
        with self._mutate(request_id) as graph:
            task = graph.get(task_id)
            if task.status != "done" or not fully_terminal(graph, task):
                raise InvalidOperationError(
                    f"task {task_id} can be archived only once it and all of its "
                    "subtasks are finished"
                )
            parent_id = task.parent_id
            entry = archive_tree(graph, task_id)
            result = settle_parent(graph, parent_id)
            graph.refresh_completion()
        return self._result(
            graph,
            "archived",
            f"Archived task tree '{task_id}' with {len(entry.tasks)} task(s)."
            f"{result.message(request_id)}",
            archived_ids=[str(t["id"]) for t in entry.tasks],
        )

    def log_task_completion_summary(
        self,
        request_id: str,
        task_id: str,
        summary_markdown: str,
        artifacts: list[str] | None = None,
    ) -> dict[str, Any]:
        with self._summaries_after_commit() as staged, self._mutate(request_id) as graph:
            task = graph.get(task_id)
            ensure_mutable(task)
            staged.append(self.summaries.stage(task.id, summary_markdown))
            task.summary_ref = staged[-1].ref
            if artifacts:
                task.artifacts = unique([*task.artifacts, *artifacts])
            graph.touch(task)
        return self._result(
            graph,
            "summary_logged",
            f"Completion summary logged for '{task_id}'.",
            summary_ref=task.summary_ref,
        )

    # Queries

    def open_task_details(self, task_id: str) -> dict[str, Any]:
        task = self.store.find_task(task_id)
        if task is not None:
            with self._read(task.request_id) as graph:
                live = graph.get(task_id)
            payload = live.to_dict()
            return {
                "status": "task_details",
                "message": f"Task '{task_id}' ({live.status}).",
                "archived": False,
                "request": {
                    "id": graph.request.id,
                    "original_request": graph.request.original_request,
                    "completed": graph.request.completed,
                },
                "task": payload,
                "summary": self.summaries.read(live.summary_ref) if live.summary_ref else None,
            }

        found = self.store.find_archived_task(task_id)
        if found is None:
            raise NotFoundError("task", task_id)
        entry, snapshot = found
        ref = snapshot.get("summary_ref")
        return {
            "status": "task_details",
            "message": f"Task '{task_id}' was archived with tree '{entry.root_task_id}'.",
            "archived": True,
            "request": {"id": entry.request_id, "original_request": entry.request_text},
            "archive": {"id": entry.id, "archived_at": entry.archived_at},
            "task": snapshot,
            "summary": self.summaries.read(ref) if ref else None,
        }

    def list_requests(self) -> dict[str, Any]:
        requests = self.store.list_requests()
        return {
            "status": "requests",
            "message": format_requests_list(requests),
            "requests": requests,
        }

    def list_archives(self, request_id: str | None = None) -> dict[str, Any]:
        entries = self.store.list_archives(request_id)
        return {
            "status": "archives",
            "message": f"{len(entries)} archived task tree(s).",
            "archives": [entry.to_dict() for entry in entries],
        }

    def get_request(self, request_id: str) -> dict[str, Any]:
        with self._read(request_id) as graph:
            tasks = [task.to_dict() for task in graph.ordered()]
        return self._result(
            graph,
            "request",
            graph.request.original_request,
            request=graph.request.to_dict(),
            tasks=tasks,
        )
