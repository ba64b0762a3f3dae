from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "TaskHub",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .hub import TaskHub


def __getattr__(name: str):
    if name == "TaskHub":
        from .hub import TaskHub

        return TaskHub
    raise AttributeError(f"module 'taskhub' has no attribute {name!r}")
