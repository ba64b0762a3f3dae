from __future__ import annotations


class TaskHubError(Exception):
    pass


class NotFoundError(TaskHubError, LookupError):
    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class InvalidOperationError(TaskHubError, ValueError):
    pass


class PersistenceError(TaskHubError, RuntimeError):
    pass
