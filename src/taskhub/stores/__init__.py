from __future__ import annotations

from .summary import SummaryStore
from .task import TaskStore

__all__ = [
    "SummaryStore",
    "TaskStore",
]
