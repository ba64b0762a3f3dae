from __future__ import annotations

from .errors import InvalidOperationError
from .model import TASK_STATUSES, Task


# Explicit transitions. ``split`` is entered only through split_task and
# ``done`` from a container only through the cascade.
TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"active", "split"}),
    "active": frozenset({"requires-clarification", "done", "failed", "split"}),
    "requires-clarification": frozenset({"active", "done", "failed"}),
    "done": frozenset(),
    "failed": frozenset(),
    "split": frozenset(),
}
AUTO_COMPLETE_FROM = frozenset({"pending", "active", "split"})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_mutable(task: Task) -> None:
    if task.is_terminal:
        raise InvalidOperationError(
            f"task {task.id} is {task.status}; terminal tasks cannot be modified"
        )


def transition(task: Task, target: str, *, now: int) -> None:
    if target not in TASK_STATUSES:
        raise InvalidOperationError(f"invalid status: {target}")
    if task.status == target:
        return
    if not can_transition(task.status, target):
        raise InvalidOperationError(
            f"cannot move task {task.id} from {task.status} to {target}"
        )
    task.status = target
    task.updated_at = now


def _check_report(task: Task, target: str) -> bool:
    """Validate an explicit done/failed report; False means already there."""
    opposite = "failed" if target == "done" else "done"
    if task.status == target:
        return False
    if task.status == opposite:
        raise InvalidOperationError(
            f"task {task.id} already {opposite}; cannot mark it {target}"
        )
    if task.status == "split":
        raise InvalidOperationError(
            f"task {task.id} was split into subtasks; resolve its subtasks first"
        )
    if task.status == "pending":
        raise InvalidOperationError(
            f"task {task.id} has not been started; fetch it with get_next_task first"
        )
    return True


def mark_done(
    task: Task,
    *,
    now: int,
    completed_details: str | None = None,
    artifacts: list[str] | None = None,
) -> bool:
    if not _check_report(task, "done"):
        return False
    transition(task, "done", now=now)
    if completed_details is not None:
        task.completed_details = completed_details
    if artifacts:
        task.artifacts = [*task.artifacts, *(a for a in artifacts if a not in task.artifacts)]
    return True


def mark_failed(
    task: Task,
    *,
    now: int,
    reason: str | None = None,
    suggested_retry_strategy: str | None = None,
) -> bool:
    if not _check_report(task, "failed"):
        return False
    transition(task, "failed", now=now)
    task.failure_reason = reason
    task.suggested_retry_strategy = suggested_retry_strategy
    return True


def auto_complete(task: Task, *, now: int) -> bool:
    if task.status not in AUTO_COMPLETE_FROM:
        return False
    task.status = "done"
    task.updated_at = now
    if task.completed_details is None:
        task.completed_details = "Automatically completed: all subtasks finished."
    return True
