from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from rich.markup import escape

from . import __version__
from .config import STATE_DIR_ENV
from .errors import TaskHubError
from .hub import TaskHub
from .logging_setup import setup_logging
from .schemas import OPERATIONS, parse_params
from .ui import (
    OutputMode,
    add_output_mode_argument,
    make_console,
    render_panel,
    render_table,
    resolve_output_mode,
    styled_status,
)


def _iso_from_epoch_ms(value: object) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    try:
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _with_iso_timestamps(payload: Any) -> Any:
    if isinstance(payload, dict):
        out: dict[str, Any] = {}
        for key, value in payload.items():
            out[key] = _with_iso_timestamps(value)
            if key.endswith("_at"):
                iso = _iso_from_epoch_ms(value)
                if iso:
                    out[f"{key}_iso"] = iso
        return out
    if isinstance(payload, list):
        return [_with_iso_timestamps(item) for item in payload]
    return payload


def _emit_json(payload: Any) -> None:
    print(json.dumps(_with_iso_timestamps(payload), ensure_ascii=False, indent=2))


def _load_structured(path: str) -> Any:
    text = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    return yaml.safe_load(text)


def _task_definitions(args: argparse.Namespace) -> list[Any]:
    """Collect task definitions from ``--task`` titles and a YAML/JSON ``--file``."""
    items: list[Any] = []
    if getattr(args, "file", None):
        loaded = _load_structured(args.file)
        if isinstance(loaded, dict):
            loaded = loaded.get("tasks", [])
        if not isinstance(loaded, list):
            raise ValueError(f"{args.file}: expected a list of tasks")
        items.extend(loaded)
    items.extend(getattr(args, "task", None) or [])
    out: list[Any] = []
    for item in items:
        if isinstance(item, str):
            entry: dict[str, Any] = {"title": item}
            if getattr(args, "priority", None):
                entry["priority"] = args.priority
            if getattr(args, "type", None):
                entry["type"] = args.type
            out.append(entry)
        else:
            out.append(item)
    return out


def _optional(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


def _add_task_source_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--task",
        action="append",
        metavar="TITLE",
        help="Task title (repeatable)",
    )
    parser.add_argument(
        "--file",
        help="YAML or JSON file with task definitions ('-' reads stdin)",
    )
    parser.add_argument("--priority", choices=("critical", "high", "medium", "low"))
    parser.add_argument("--type", dest="type")


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Emit JSON")
    add_output_mode_argument(common)

    p = argparse.ArgumentParser(
        prog="taskhub",
        description="Track request task trees, dependencies and completion.",
    )
    p.add_argument("--version", action="version", version=f"taskhub {__version__}")
    p.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        help="Override the configured log level",
    )
    sub = p.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", parents=[common], help="Create a request with tasks")
    plan.add_argument("request", help="Original request text")
    plan.add_argument("--split-details")
    _add_task_source_arguments(plan)

    add = sub.add_parser("add", parents=[common], help="Add tasks to a request")
    add.add_argument("request_id")
    _add_task_source_arguments(add)

    nxt = sub.add_parser("next", parents=[common], help="Get the next actionable task")
    nxt.add_argument("request_id")

    done = sub.add_parser("done", parents=[common], help="Mark a task done")
    done.add_argument("request_id")
    done.add_argument("task_id")
    done.add_argument("--details")
    done.add_argument("--artifact", action="append")
    done.add_argument("--summary-file", help="Markdown completion summary to store")

    fail = sub.add_parser("fail", parents=[common], help="Mark a task failed")
    fail.add_argument("request_id")
    fail.add_argument("task_id")
    fail.add_argument("--reason")
    fail.add_argument("--retry", help="Suggested retry strategy")

    clarify = sub.add_parser("clarify", parents=[common], help="Ask for clarification")
    clarify.add_argument("request_id")
    clarify.add_argument("task_id")
    clarify.add_argument("--question")

    resume = sub.add_parser("resume", parents=[common], help="Resume a task after clarification")
    resume.add_argument("request_id")
    resume.add_argument("task_id")

    update = sub.add_parser("update", parents=[common], help="Edit task fields")
    update.add_argument("request_id")
    update.add_argument("task_id")
    update.add_argument("--title")
    update.add_argument("--description")
    update.add_argument("--status")
    update.add_argument("--priority")
    update.add_argument("--type", dest="type")
    update.add_argument("--artifact", action="append")
    update.add_argument("--context", help="Environment context")

    delete = sub.add_parser("delete", parents=[common], help="Delete a task and its subtasks")
    delete.add_argument("request_id")
    delete.add_argument("task_id")

    subtask = sub.add_parser("subtask", help="Subtask operations")
    subtask_sub = subtask.add_subparsers(dest="subtask_cmd", required=True)
    subtask_add = subtask_sub.add_parser("add", parents=[common], help="Add a subtask")
    subtask_add.add_argument("request_id")
    subtask_add.add_argument("parent_id")
    subtask_add.add_argument("title")
    subtask_add.add_argument("--description", default="")
    subtask_add.add_argument("--priority")
    subtask_add.add_argument("--type", dest="type")
    subtask_add.add_argument("--depends-on", action="append")
    subtask_rm = subtask_sub.add_parser("remove", parents=[common], help="Remove a subtask")
    subtask_rm.add_argument("request_id")
    subtask_rm.add_argument("subtask_id")

    dep = sub.add_parser("dep", help="Dependency operations")
    dep_sub = dep.add_subparsers(dest="dep_cmd", required=True)
    for name, text in (("add", "Add a dependency"), ("remove", "Remove a dependency")):
        dep_cmd = dep_sub.add_parser(name, parents=[common], help=text)
        dep_cmd.add_argument("request_id")
        dep_cmd.add_argument("task_id")
        dep_cmd.add_argument("depends_on")
    dep_validate = dep_sub.add_parser(
        "validate", parents=[common], help="Report missing dependencies and cycles"
    )
    dep_validate.add_argument("request_id")

    archive = sub.add_parser("archive", parents=[common], help="Archive a finished task tree")
    archive.add_argument("request_id")
    archive.add_argument("task_id")

    summary = sub.add_parser("summary", parents=[common], help="Log a completion summary")
    summary.add_argument("request_id")
    summary.add_argument("task_id")
    source = summary.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="Markdown file ('-' reads stdin)")
    source.add_argument("--text")
    summary.add_argument("--artifact", action="append")

    split = sub.add_parser("split", parents=[common], help="Split a task into subtasks")
    split.add_argument("request_id")
    split.add_argument("task_id")
    split.add_argument("--reason")
    _add_task_source_arguments(split)

    merge = sub.add_parser("merge", parents=[common], help="Merge tasks into a primary task")
    merge.add_argument("request_id")
    merge.add_argument("primary_id")
    merge.add_argument("sources", nargs="+")
    merge.add_argument("--title")
    merge.add_argument("--description")
    merge.add_argument("--priority")
    merge.add_argument("--type", dest="type")

    show = sub.add_parser("show", parents=[common], help="Show one task (live or archived)")
    show.add_argument("task_id")

    request = sub.add_parser("request", parents=[common], help="Show a request and its tasks")
    request.add_argument("request_id")

    sub.add_parser("requests", parents=[common], help="List requests")

    archives = sub.add_parser("archives", parents=[common], help="List archived task trees")
    archives.add_argument("--request", dest="request_id")

    call = sub.add_parser("call", parents=[common], help="Invoke an operation with JSON params")
    call.add_argument("operation", choices=sorted(OPERATIONS))
    call.add_argument("--params", default="{}", help="JSON object ('-' reads stdin)")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8420)
    serve.add_argument("--reload", action="store_true")

    return p


def _operation(args: argparse.Namespace) -> tuple[str, dict[str, Any]]:
    """Translate parsed arguments into an operation name and raw payload."""
    cmd = args.command
    if cmd == "plan":
        return "request_planning", _optional(
            original_request=args.request,
            split_details=args.split_details,
            tasks=_task_definitions(args),
        )
    if cmd == "add":
        return "add_tasks_to_request", {
            "request_id": args.request_id,
            "tasks": _task_definitions(args),
        }
    if cmd == "next":
        return "get_next_task", {"request_id": args.request_id}
    if cmd == "done":
        summary = None
        if args.summary_file:
            summary = Path(args.summary_file).read_text(encoding="utf-8")
        return "mark_task_done", _optional(
            request_id=args.request_id,
            task_id=args.task_id,
            completed_details=args.details,
            artifacts=args.artifact,
            summary=summary,
        )
    if cmd == "fail":
        return "mark_task_failed", _optional(
            request_id=args.request_id,
            task_id=args.task_id,
            reason=args.reason,
            suggested_retry_strategy=args.retry,
        )
    if cmd == "clarify":
        return "request_clarification", _optional(
            request_id=args.request_id, task_id=args.task_id, question=args.question
        )
    if cmd == "resume":
        return "resume_task", {"request_id": args.request_id, "task_id": args.task_id}
    if cmd == "update":
        return "update_task", _optional(
            request_id=args.request_id,
            task_id=args.task_id,
            title=args.title,
            description=args.description,
            status=args.status,
            priority=args.priority,
            type=args.type,
            artifacts=args.artifact,
            environment_context=args.context,
        )
    if cmd == "delete":
        return "delete_task", {"request_id": args.request_id, "task_id": args.task_id}
    if cmd == "subtask" and args.subtask_cmd == "add":
        return "add_subtask", {
            "request_id": args.request_id,
            "parent_task_id": args.parent_id,
            "task": _optional(
                title=args.title,
                description=args.description,
                priority=args.priority,
                type=args.type,
                depends_on=args.depends_on,
            ),
        }
    if cmd == "subtask" and args.subtask_cmd == "remove":
        return "remove_subtask", {"request_id": args.request_id, "subtask_id": args.subtask_id}
    if cmd == "dep" and args.dep_cmd in {"add", "remove"}:
        return f"{args.dep_cmd}_dependency", {
            "request_id": args.request_id,
            "task_id": args.task_id,
            "depends_on_task_id": args.depends_on,
        }
    if cmd == "dep" and args.dep_cmd == "validate":
        return "validate_dependencies", {"request_id": args.request_id}
    if cmd == "archive":
        return "archive_task_tree", {"request_id": args.request_id, "task_id": args.task_id}
    if cmd == "summary":
        text = args.text
        if args.file:
            text = sys.stdin.read() if args.file == "-" else Path(args.file).read_text(
                encoding="utf-8"
            )
        return "log_task_completion_summary", _optional(
            request_id=args.request_id,
            task_id=args.task_id,
            summary_markdown=text,
            artifacts=args.artifact,
        )
    if cmd == "split":
        return "split_task", _optional(
            request_id=args.request_id,
            task_id=args.task_id,
            subtasks=_task_definitions(args),
            split_reason=args.reason,
        )
    if cmd == "merge":
        return "merge_tasks", _optional(
            request_id=args.request_id,
            primary_task_id=args.primary_id,
            task_ids_to_merge=args.sources,
            title=args.title,
            description=args.description,
            priority=args.priority,
            type=args.type,
        )
    if cmd == "show":
        return "open_task_details", {"task_id": args.task_id}
    if cmd == "request":
        return "get_request", {"request_id": args.request_id}
    if cmd == "requests":
        return "list_requests", {}
    if cmd == "archives":
        return "list_archives", _optional(request_id=args.request_id)
    if cmd == "call":
        raw = sys.stdin.read() if args.params == "-" else args.params
        payload = json.loads(raw or "{}")
        if not isinstance(payload, dict):
            raise ValueError("--params must be a JSON object")
        return args.operation, payload
    raise ValueError(f"unknown command: {cmd}")


def _task_rows(tasks: list[dict[str, Any]], mode: OutputMode) -> list[tuple[str, ...]]:
    return [
        (
            task["id"],
            escape(task["title"]),
            styled_status(task["status"], mode),
            task["priority"],
            task.get("parent_id") or "-",
            ", ".join(task.get("depends_on") or []) or "-",
        )
        for task in tasks
    ]


def _print_result(result: dict[str, Any], mode: OutputMode) -> None:
    if mode != "rich":
        print(result.get("message", ""))
        task = result.get("task")
        if isinstance(task, dict) and result.get("status") in {"next_task", "task_details"}:
            print(f"{task['id']}  [{task['status']}] {task['title']}")
            if task.get("description"):
                print(task["description"])
        for issue in result.get("issues") or []:
            print(f"- {issue['code']}: {issue['message']}")
        if result.get("progress"):
            print()
            print(result["progress"])
        return

    console = make_console("rich")
    title = str(result.get("status", "result"))
    render_panel(console, escape(str(result.get("message", ""))), title=title)
    task = result.get("task")
    if isinstance(task, dict) and result.get("status") in {"next_task", "task_details"}:
        lines = [
            f"[bold]{escape(task['title'])}[/bold]",
            f"status: {styled_status(task['status'], 'rich')}  priority: {task['priority']}",
        ]
        if task.get("description"):
            lines.append("")
            lines.append(escape(task["description"]))
        render_panel(console, "\n".join(lines), title=task["id"])
    tasks = result.get("tasks")
    if isinstance(tasks, list) and tasks:
        render_table(
            console,
            headers=("ID", "Title", "Status", "Priority", "Parent", "Depends On"),
            rows=_task_rows(tasks, "rich"),
            title="Tasks",
            no_wrap_columns=(0,),
        )
    for issue in result.get("issues") or []:
        console.print(f"[red]{escape(issue['code'])}[/red] {escape(issue['message'])}")
    if result.get("progress") and not tasks:
        render_panel(console, escape(result["progress"]), title="Progress")


def _serve(args: argparse.Namespace, hub: TaskHub) -> None:
    import uvicorn

    os.environ[STATE_DIR_ENV] = str(hub.config.state_dir)
    render_panel(
        make_console("rich", stderr=True),
        f"Starting web server at http://{args.host}:{args.port}",
        title="taskhub serve",
    )
    uvicorn.run(
        "taskhub.web:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


def main(argv: list[str] | None = None) -> None:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = _build_parser().parse_args(raw_argv)

    try:
        hub = TaskHub.from_workdir(Path.cwd())
        setup_logging(args.log_level or hub.config.log_level)
        if args.command == "serve":
            _serve(args, hub)
            return

        output_mode = resolve_output_mode(getattr(args, "output", None))
        operation, payload = _operation(args)
        result = hub.dispatch(operation, parse_params(operation, payload))
        if args.json:
            _emit_json(result)
        else:
            _print_result(result, output_mode)
    except (TaskHubError, ValueError, OSError, yaml.YAMLError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
