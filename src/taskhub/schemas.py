from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import NotFoundError
from .model import TaskDraft

Priority = Literal["critical", "high", "medium", "low"]
TaskType = Literal[
    "planning",
    "implementation",
    "testing",
    "review",
    "research",
    "documentation",
    "other",
]
SettableStatus = Literal["pending", "active", "requires-clarification", "done", "failed", "split"]


class Params(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    def to_kwargs(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, TaskDefinition):
                value = value.to_draft()
            elif isinstance(value, list) and value and isinstance(value[0], TaskDefinition):
                value = [item.to_draft() for item in value]
            out[name] = value
        return out


class TaskDefinition(Params):
    title: str = Field(min_length=1)
    description: str = ""
    priority: Priority | None = None
    type: TaskType | None = None
    depends_on: list[str] = Field(default_factory=list)
    environment_context: str | None = None
    artifacts: list[str] = Field(default_factory=list)

    def to_draft(self) -> TaskDraft:
        return TaskDraft(
            title=self.title,
            description=self.description,
            priority=self.priority,
            type=self.type,
            depends_on=tuple(self.depends_on),
            environment_context=self.environment_context,
            artifacts=tuple(self.artifacts),
        )


class RequestPlanningParams(Params):
    original_request: str = Field(min_length=1)
    split_details: str | None = None
    tasks: list[TaskDefinition] = Field(min_length=1)


class AddTasksParams(Params):
    request_id: str
    tasks: list[TaskDefinition] = Field(min_length=1)


class RequestParams(Params):
    request_id: str


class TaskParams(Params):
    request_id: str
    task_id: str


class MarkDoneParams(TaskParams):
    completed_details: str | None = None
    artifacts: list[str] | None = None
    summary: str | None = None


class MarkFailedParams(TaskParams):
    reason: str | None = None
    suggested_retry_strategy: str | None = None


class ClarificationParams(TaskParams):
    question: str | None = None


class UpdateTaskParams(TaskParams):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: SettableStatus | None = None
    priority: Priority | None = None
    type: TaskType | None = None
    artifacts: list[str] | None = None
    environment_context: str | None = None


class AddSubtaskParams(Params):
    request_id: str
    parent_task_id: str
    task: TaskDefinition


class RemoveSubtaskParams(Params):
    request_id: str
    subtask_id: str


class DependencyParams(TaskParams):
    depends_on_task_id: str


class SummaryParams(TaskParams):
    summary_markdown: str = Field(min_length=1)
    artifacts: list[str] | None = None


class SplitTaskParams(TaskParams):
    subtasks: list[TaskDefinition] = Field(min_length=1)
    split_reason: str | None = None


class MergeTasksParams(Params):
    request_id: str
    primary_task_id: str
    task_ids_to_merge: list[str] = Field(min_length=1)
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    priority: Priority | None = None
    type: TaskType | None = None
    environment_context: str | None = None
    artifacts: list[str] | None = None


class TaskIdParams(Params):
    task_id: str


class NoParams(Params):
    pass


class ArchivesParams(Params):
    request_id: str | None = None


OPERATIONS: dict[str, type[Params]] = {
    "request_planning": RequestPlanningParams,
    "add_tasks_to_request": AddTasksParams,
    "get_next_task": RequestParams,
    "mark_task_done": MarkDoneParams,
    "mark_task_failed": MarkFailedParams,
    "request_clarification": ClarificationParams,
    "resume_task": TaskParams,
    "update_task": UpdateTaskParams,
    "delete_task": TaskParams,
    "add_subtask": AddSubtaskParams,
    "remove_subtask": RemoveSubtaskParams,
    "split_task": SplitTaskParams,
    "merge_tasks": MergeTasksParams,
    "add_dependency": DependencyParams,
    "remove_dependency": DependencyParams,
    "validate_dependencies": RequestParams,
    "archive_task_tree": TaskParams,
    "log_task_completion_summary": SummaryParams,
    "open_task_details": TaskIdParams,
    "get_request": RequestParams,
    "list_requests": NoParams,
    "list_archives": ArchivesParams,
}


def parse_params(operation: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    """Validate a raw payload for ``operation`` and return hub keyword args.

    Raises ``NotFoundError`` for unknown operations and pydantic's
    ``ValidationError`` for malformed payloads.
    """
    schema = OPERATIONS.get(operation)
    if schema is None:
        raise NotFoundError("operation", operation)
    return schema.model_validate(payload or {}).to_kwargs()
