from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import NotFoundError, PersistenceError
from ..graph import RequestGraph
from ..model import (
    REQUEST_PREFIX,
    TASK_PREFIX,
    ArchiveEntry,
    IdSequence,
    Request,
    Task,
    id_seq,
    now_ms,
)

logger = logging.getLogger(__name__)


_SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS requests (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    original_request TEXT NOT NULL,
    split_details TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    request_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    priority TEXT NOT NULL,
    type TEXT,
    parent_id TEXT,
    depends_on TEXT NOT NULL DEFAULT '[]',
    subtask_ids TEXT NOT NULL DEFAULT '[]',
    failure_reason TEXT,
    suggested_retry_strategy TEXT,
    completed_details TEXT,
    artifacts TEXT NOT NULL DEFAULT '[]',
    environment_context TEXT,
    summary_ref TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    FOREIGN KEY(request_id) REFERENCES requests(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS archives (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id TEXT NOT NULL,
    request_text TEXT NOT NULL,
    root_task_id TEXT NOT NULL,
    tasks TEXT NOT NULL,
    archived_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS archived_tasks (
    task_id TEXT PRIMARY KEY,
    archive_id INTEGER NOT NULL,
    FOREIGN KEY(archive_id) REFERENCES archives(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
INSERT OR IGNORE INTO metadata(key, value, updated_at) VALUES('last_request_id', 0, 0);
INSERT OR IGNORE INTO metadata(key, value, updated_at) VALUES('last_task_id', 0, 0);
CREATE INDEX IF NOT EXISTS idx_tasks_request_seq ON tasks(request_id, seq);
CREATE INDEX IF NOT EXISTS idx_archives_request ON archives(request_id, archived_at);
"""

_COUNTER_KEYS = {
    REQUEST_PREFIX: "last_request_id",
    TASK_PREFIX: "last_task_id",
}
_JSON_LIST_COLUMNS = ("depends_on", "subtask_ids", "artifacts")
_TASK_COLUMNS = (
    "id",
    "seq",
    "request_id",
    "title",
    "description",
    "status",
    "priority",
    "type",
    "parent_id",
    "depends_on",
    "subtask_ids",
    "failure_reason",
    "suggested_retry_strategy",
    "completed_details",
    "artifacts",
    "environment_context",
    "summary_ref",
    "created_at",
    "updated_at",
)


def _row_to_task(row: sqlite3.Row) -> Task:
    data = {key: row[key] for key in _TASK_COLUMNS if key != "seq"}
    for key in _JSON_LIST_COLUMNS:
        data[key] = json.loads(data[key] or "[]")
    return Task.from_dict(data)


def _task_params(task: Task) -> tuple[Any, ...]:
    data = task.to_dict()
    data["seq"] = task.seq
    for key in _JSON_LIST_COLUMNS:
        data[key] = json.dumps(data[key], ensure_ascii=False)
    return tuple(data[key] for key in _TASK_COLUMNS)


def _row_to_request(row: sqlite3.Row, task_ids: list[str]) -> Request:
    return Request(
        id=str(row["id"]),
        original_request=str(row["original_request"]),
        split_details=row["split_details"],
        task_ids=task_ids,
        completed=bool(row["completed"]),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


def _row_to_archive(row: sqlite3.Row) -> ArchiveEntry:
    return ArchiveEntry(
        id=int(row["id"]),
        request_id=str(row["request_id"]),
        request_text=str(row["request_text"]),
        root_task_id=str(row["root_task_id"]),
        tasks=tuple(json.loads(row["tasks"])),
        archived_at=int(row["archived_at"]),
    )


@dataclass
class TaskStore:
    """sqlite persistence for requests, tasks, archives and id counters.

    Operations load one request as a ``RequestGraph`` and write it back with
    ``commit`` inside a single transaction.
    """

    root: Path
    create_on_connect: bool = True

    @property
    def db_path(self) -> Path:
        return self.root / "taskhub.sqlite3"

    def _connect(self) -> sqlite3.Connection:
        if self.create_on_connect:
            self.root.mkdir(parents=True, exist_ok=True)
        elif not self.db_path.exists():
            raise FileNotFoundError(str(self.db_path))
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(_SCHEMA)
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("rolled back taskhub transaction: %s", exc)
            raise PersistenceError(f"storage failure: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"storage failure: {exc}") from exc
        finally:
            conn.close()

    # Id counters

    def counter_value(self, prefix: str) -> int:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT value FROM metadata WHERE key = ?",
                (_COUNTER_KEYS[prefix],),
            ).fetchone()
        return int(row["value"]) if row else 0

    def increment_counter(self, prefix: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                """
                UPDATE metadata SET value = value + 1, updated_at = ?
                WHERE key = ?
                RETURNING value
                """,
                (now_ms(), _COUNTER_KEYS[prefix]),
            ).fetchone()
        return int(row["value"])

    def sequence(self, prefix: str) -> IdSequence:
        seq = IdSequence(prefix, increment=lambda: self.increment_counter(prefix))
        seq.initialize(self.counter_value(prefix))
        return seq

    # Graph load / commit

    def new_graph(
        self,
        original_request: str,
        *,
        split_details: str | None = None,
    ) -> RequestGraph:
        ts = now_ms()
        request = Request(
            id=self.sequence(REQUEST_PREFIX).next(),
            original_request=original_request,
            split_details=split_details,
            created_at=ts,
            updated_at=ts,
        )
        return RequestGraph(request=request, task_ids=self.sequence(TASK_PREFIX))

    def load_graph(self, request_id: str) -> RequestGraph:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM requests WHERE id = ?",
                (request_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("request", request_id)
            task_rows = conn.execute(
                "SELECT * FROM tasks WHERE request_id = ? ORDER BY seq",
                (request_id,),
            ).fetchall()
        tasks = {str(r["id"]): _row_to_task(r) for r in task_rows}
        return RequestGraph(
            request=_row_to_request(row, list(tasks)),
            tasks=tasks,
            task_ids=self.sequence(TASK_PREFIX),
        )

    def commit(self, graph: RequestGraph) -> None:
        request = graph.request
        request.task_ids = [task.id for task in graph.ordered()]
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO requests(
                    id, seq, original_request, split_details, completed, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    original_request = excluded.original_request,
                    split_details = excluded.split_details,
                    completed = excluded.completed,
                    updated_at = excluded.updated_at
                """,
                (
                    request.id,
                    id_seq(request.id),
                    request.original_request,
                    request.split_details,
                    int(request.completed),
                    request.created_at,
                    request.updated_at,
                ),
            )
            for task_id in sorted(graph.removed - set(graph.tasks)):
                conn.execute(
                    "DELETE FROM tasks WHERE id = ? AND request_id = ?",
                    (task_id, request.id),
                )
            placeholders = ", ".join("?" for _ in _TASK_COLUMNS)
            updates = ", ".join(
                f"{key} = excluded.{key}" for key in _TASK_COLUMNS if key != "id"
            )
            for task in graph.ordered():
                conn.execute(
                    f"""
                    INSERT INTO tasks({", ".join(_TASK_COLUMNS)})
                    VALUES({placeholders})
                    ON CONFLICT(id) DO UPDATE SET {updates}
                    """,
                    _task_params(task),
                )
            for entry in graph.archives:
                cur = conn.execute(
                    """
                    INSERT INTO archives(request_id, request_text, root_task_id, tasks, archived_at)
                    VALUES(?, ?, ?, ?, ?)
                    """,
                    (
                        entry.request_id,
                        entry.request_text,
                        entry.root_task_id,
                        json.dumps(list(entry.tasks), ensure_ascii=False),
                        entry.archived_at,
                    ),
                )
                conn.executemany(
                    "INSERT OR REPLACE INTO archived_tasks(task_id, archive_id) VALUES(?, ?)",
                    [(str(task["id"]), cur.lastrowid) for task in entry.tasks],
                )
        graph.removed.clear()
        graph.archives.clear()
        logger.debug("committed request %s (%d live tasks)", request.id, len(graph))

    # Queries

    def find_task(self, task_id: str) -> Task | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def find_archived_task(self, task_id: str) -> tuple[ArchiveEntry, dict[str, Any]] | None:
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT a.* FROM archived_tasks t
                JOIN archives a ON a.id = t.archive_id
                WHERE t.task_id = ?
                """,
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        entry = _row_to_archive(row)
        for task in entry.tasks:
            if task.get("id") == task_id:
                return entry, dict(task)
        return None

    def list_requests(self) -> list[dict[str, Any]]:
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT r.*,
                    (SELECT COUNT(*) FROM tasks t WHERE t.request_id = r.id) AS task_count,
                    (SELECT COUNT(*) FROM tasks t
                        WHERE t.request_id = r.id AND t.status IN ('done', 'failed'))
                        AS terminal_count,
                    (SELECT COUNT(*) FROM archives a WHERE a.request_id = r.id)
                        AS archive_count
                FROM requests r
                ORDER BY r.seq
                """
            ).fetchall()
        return [
            {
                "id": str(row["id"]),
                "original_request": str(row["original_request"]),
                "split_details": row["split_details"],
                "completed": bool(row["completed"]),
                "task_count": int(row["task_count"]),
                "terminal_count": int(row["terminal_count"]),
                "archive_count": int(row["archive_count"]),
                "created_at": int(row["created_at"]),
                "updated_at": int(row["updated_at"]),
            }
            for row in rows
        ]

    def list_archives(self, request_id: str | None = None) -> list[ArchiveEntry]:
        sql = "SELECT * FROM archives"
        params: tuple[Any, ...] = ()
        if request_id is not None:
            sql += " WHERE request_id = ?"
            params = (request_id,)
        with self._reader() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [_row_to_archive(row) for row in rows]
