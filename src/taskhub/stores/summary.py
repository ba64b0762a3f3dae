from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path


_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class StagedSummary:
    """A summary written next to its final path, waiting for the task commit."""

    ref: str
    pending: Path
    target: Path

    def publish(self) -> None:
        os.replace(self.pending, self.target)

    def discard(self) -> None:
        self.pending.unlink(missing_ok=True)


@dataclass
class SummaryStore:
    """Completion summaries kept as markdown files under the state directory."""

    root: Path

    @property
    def summaries_dir(self) -> Path:
        return self.root / "summaries"

    def _target(self, task_id: str) -> Path:
        name = _SAFE_NAME_RE.sub("_", task_id).strip("_") or "task"
        return self.summaries_dir / f"{name}_completion_summary.md"

    def stage(self, task_id: str, markdown: str) -> StagedSummary:
        self.summaries_dir.mkdir(parents=True, exist_ok=True)
        target = self._target(task_id)
        pending = target.with_name(f".{target.name}.pending")
        pending.write_text(markdown.rstrip() + "\n", encoding="utf-8")
        return StagedSummary(
            ref=str(target.relative_to(self.root)),
            pending=pending,
            target=target,
        )

    def read(self, ref: str) -> str | None:
        path = (self.root / ref).resolve()
        if self.summaries_dir.resolve() not in path.parents:
            raise ValueError(f"summary reference outside the summaries directory: {ref}")
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")
