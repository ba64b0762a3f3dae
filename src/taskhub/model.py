from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any


TASK_STATUSES = (
    "pending",
    "active",
    "requires-clarification",
    "done",
    "failed",
    "split",
)
TERMINAL_STATUSES = frozenset({"done", "failed"})
PRIORITIES = ("critical", "high", "medium", "low")
TASK_TYPES = (
    "planning",
    "implementation",
    "testing",
    "review",
    "research",
    "documentation",
    "other",
)

REQUEST_PREFIX = "req"
TASK_PREFIX = "task"


def now_ms() -> int:
    return int(time.time() * 1000)


def id_seq(ident: str) -> int:
    """Numeric part of a ``prefix-N`` id; unparseable ids sort last."""
    _, _, tail = ident.rpartition("-")
    try:
        return int(tail)
    except ValueError:
        return 1 << 62


def priority_rank(priority: str) -> int:
    try:
        return PRIORITIES.index(priority)
    except ValueError:
        return len(PRIORITIES)


def unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class IdSequence:
    """Monotonic ``prefix-N`` generator.

    ``initialize`` seeds the counter from a persisted value. When ``increment``
    is supplied it must atomically bump and persist the counter, returning the
    new value; otherwise the counter lives in memory only.
    """

    def __init__(
        self,
        prefix: str,
        *,
        increment: Callable[[], int] | None = None,
    ) -> None:
        self.prefix = prefix
        self._increment = increment
        self._last = 0
        self._lock = threading.Lock()

    @property
    def last(self) -> int:
        return self._last

    def initialize(self, value: int) -> None:
        with self._lock:
            self._last = max(self._last, int(value))

    def next(self) -> str:
        with self._lock:
            if self._increment is not None:
                self._last = max(self._last + 1, int(self._increment()))
            else:
                self._last += 1
            return f"{self.prefix}-{self._last}"


@dataclass
class Task:
    id: str
    request_id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    type: str | None = None
    depends_on: list[str] = field(default_factory=list)
    parent_id: str | None = None
    subtask_ids: list[str] = field(default_factory=list)
    failure_reason: str | None = None
    suggested_retry_strategy: str | None = None
    completed_details: str | None = None
    artifacts: list[str] = field(default_factory=list)
    environment_context: str | None = None
    summary_ref: str | None = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def seq(self) -> int:
        return id_seq(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Task":
        data = dict(payload)
        for key in ("depends_on", "subtask_ids", "artifacts"):
            data[key] = list(data.get(key) or [])
        return cls(**data)


@dataclass
class Request:
    id: str
    original_request: str
    split_details: str | None = None
    task_ids: list[str] = field(default_factory=list)
    completed: bool = False
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ArchiveEntry:
    request_id: str
    request_text: str
    root_task_id: str
    tasks: tuple[dict[str, Any], ...]
    archived_at: int
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "request_text": self.request_text,
            "root_task_id": self.root_task_id,
            "tasks": [dict(task) for task in self.tasks],
            "archived_at": self.archived_at,
        }


@dataclass(frozen=True)
class TaskDraft:
    """Definition of a task to be created; unset fields inherit or default."""

    title: str
    description: str = ""
    priority: str | None = None
    type: str | None = None
    depends_on: tuple[str, ...] = ()
    environment_context: str | None = None
    artifacts: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TaskDraft":
        return cls(
            title=str(payload["title"]),
            description=str(payload.get("description") or ""),
            priority=payload.get("priority"),
            type=payload.get("type"),
            depends_on=tuple(payload.get("depends_on") or ()),
            environment_context=payload.get("environment_context"),
            artifacts=tuple(payload.get("artifacts") or ()),
        )
