"""mdtasks command line: manage Markdown task documents from the terminal."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

import config as app_config
from collection import CollectionError, init_collection
from date_utils import format_date_friendly
from run import configure_logging, serve
from task_resolver import AmbiguousTaskError, TaskNotFoundError

import task_service

logger = logging.getLogger("mdtasks.cli")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _print_result(result: task_service.CommandResult, as_json: bool) -> None:
    if as_json:
        _print_json({"message": result.message, "path": result.path, "changed": result.changed, "task": result.task})
        return
    print(result.message)
    if result.path and result.changed:
        print(f"  {result.path}")


def _format_task_line(task: dict[str, Any], tz_name: str) -> str:
    parts = [f"- {task.get('title') or task['path']}"]
    if task.get("status"):
        parts.append(f"[{task['status']}]")
    if task.get("priority"):
        parts.append(f"!{task['priority']}")
    if task.get("due"):
        parts.append(f"due:{format_date_friendly(task['due'], tz_name)}")
    if task.get("scheduled"):
        parts.append(f"scheduled:{format_date_friendly(task['scheduled'], tz_name)}")
    if task.get("recurrence"):
        parts.append("(recurring)")
    parts.append(f"({task['path']})")
    return " ".join(parts)


def _tz() -> str:
    try:
        return app_config.load().user_timezone
    except Exception:
        return "UTC"


# --- commands ---


def cmd_init(args: argparse.Namespace) -> None:
    root = init_collection(args.dir or ".", tasks_folder=args.tasks_folder, force=args.force)
    print(f"Initialized task collection at {root}")


def cmd_create(args: argparse.Namespace) -> None:
    _print_result(task_service.create_task(" ".join(args.text), path=args.path), args.json)


def cmd_list(args: argparse.Namespace) -> None:
    listing = task_service.list_tasks(
        status=args.status,
        priority=args.priority,
        tag=args.tag,
        due=args.due,
        overdue=args.overdue,
        where=args.where,
        on=args.on,
        limit=args.limit,
        path=args.path,
    )
    if args.json:
        _print_json({"tasks": listing.tasks, "has_more": listing.has_more, "as_of": listing.as_of})
        return
    if not listing.tasks:
        print("No tasks found.")
        return
    tz_name = _tz()
    for task in listing.tasks:
        print(_format_task_line(task, tz_name))
    if listing.has_more:
        print("... more tasks not shown (use --limit)")


def cmd_show(args: argparse.Namespace) -> None:
    result = task_service.show_task(args.ref, path=args.path)
    if args.json:
        _print_json({"path": result.path, "task": result.task, "body": result.body})
        return
    print(result.message)
    print(f"  path: {result.path}")
    for key, value in (result.task or {}).items():
        if key in ("path", "title") or value in (None, "", []):
            continue
        print(f"  {key}: {', '.join(map(str, value)) if isinstance(value, list) else value}")
    if result.body:
        print()
        print(result.body)


def cmd_update(args: argparse.Namespace) -> None:
    result = task_service.update_task(
        args.ref,
        status=args.status,
        priority=args.priority,
        due=args.due,
        scheduled=args.scheduled,
        title=args.title,
        recurrence=args.recurrence,
        recurrence_anchor=args.recurrence_anchor,
        add_tags=args.add_tag,
        remove_tags=args.remove_tag,
        add_contexts=args.add_context,
        remove_contexts=args.remove_context,
        path=args.path,
    )
    _print_result(result, args.json)


def cmd_complete(args: argparse.Namespace) -> None:
    _print_result(task_service.complete_task(args.ref, date=args.date, path=args.path), args.json)


def cmd_skip(args: argparse.Namespace) -> None:
    _print_result(task_service.skip_task(args.ref, date=args.date, path=args.path), args.json)


def cmd_unskip(args: argparse.Namespace) -> None:
    _print_result(task_service.unskip_task(args.ref, date=args.date, path=args.path), args.json)


def cmd_archive(args: argparse.Namespace) -> None:
    _print_result(task_service.archive_task(args.ref, path=args.path), args.json)


def cmd_delete(args: argparse.Namespace) -> None:
    _print_result(task_service.delete_task(args.ref, force=args.force, path=args.path), args.json)


def cmd_search(args: argparse.Namespace) -> None:
    tasks = task_service.search_tasks(" ".join(args.query), limit=args.limit, path=args.path)
    if args.json:
        _print_json(tasks)
        return
    if not tasks:
        print("No matching tasks.")
        return
    tz_name = _tz()
    for task in tasks:
        print(_format_task_line(task, tz_name))


def cmd_stats(args: argparse.Namespace) -> None:
    stats = task_service.task_stats(path=args.path)
    if args.json:
        _print_json(stats)
        return
    print(f"Total: {stats['total']}")
    print(f"Completed: {stats['completed']} ({stats['completion_rate']}%)")
    print(f"Overdue: {stats['overdue']}")
    print("By status: " + ", ".join(f"{k}={v}" for k, v in stats["by_status"].items()))
    print("By priority: " + ", ".join(f"{k}={v}" for k, v in stats["by_priority"].items()))
    print(f"Time tracked: {task_service.format_duration(stats['time_tracked_minutes'])}")


def cmd_projects(args: argparse.Namespace) -> None:
    if args.projects_command == "show":
        tasks = task_service.show_project(args.name, path=args.path)
        if args.json:
            _print_json(tasks)
            return
        if not tasks:
            print(f'No tasks in project "{args.name}".')
            return
        print(f"Project: +{args.name.lstrip('+')}")
        tz_name = _tz()
        for task in tasks:
            print(_format_task_line(task, tz_name))
        return
    # bare "projects" lists
    projects = task_service.list_projects(path=args.path)
    if args.json:
        _print_json(projects)
        return
    if not projects:
        print("No projects found.")
        return
    for p in projects:
        if getattr(args, "stats", False):
            print(f"  +{p['name']}  {p['open']} open, {p['done']} done ({p['completion_rate']}%)")
        else:
            print(f"  +{p['name']}")


def cmd_timer(args: argparse.Namespace) -> None:
    if args.timer_command == "start":
        _print_result(task_service.start_timer(args.ref, description=args.description, path=args.path), args.json)
    elif args.timer_command == "stop":
        _print_result(task_service.stop_timer(path=args.path), args.json)
    elif args.timer_command == "status":
        active = task_service.timer_status(path=args.path)
        if args.json:
            _print_json(active)
        elif not active:
            print("No timer running.")
        else:
            for t in active:
                print(f"- {t['title']} ({task_service.format_duration(t['elapsed_minutes'])}) ({t['path']})")
    else:
        log = task_service.timer_log(period=args.period, date_from=args.date_from, date_to=args.date_to, path=args.path)
        if args.json:
            _print_json(log)
            return
        for row in log["entries"]:
            desc = f" - {row['description']}" if row.get("description") else ""
            print(f"{row['startTime']}  {task_service.format_duration(row['minutes']):>7}  {row['title']}{desc}")
        print(f"Total: {task_service.format_duration(log['total_minutes'])}")


def cmd_config(args: argparse.Namespace) -> None:
    if args.config_command == "set":
        updated = app_config.set_value(args.key, args.value)
        print(f"{args.key} = {getattr(updated, args.key)}")
        return
    current = app_config.load().model_dump()
    if args.key:
        if args.key not in current:
            raise ValueError(f"Unknown config key {args.key!r}")
        print(current[args.key])
    else:
        _print_json(current)


def cmd_serve(args: argparse.Namespace) -> None:
    serve(args.path, host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mdtasks", description="Markdown task manager")
    parser.add_argument("--path", help="Task collection folder (default: MDTASKS_PATH, config, or current directory)")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create a task collection")
    p.add_argument("dir", nargs="?", help="Folder (default: current directory)")
    p.add_argument("--tasks-folder", default="tasks")
    p.add_argument("--force", action="store_true", help="Overwrite existing collection settings")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("create", aliases=["add"], help="Create a task from natural language")
    p.add_argument("text", nargs="+")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("list", aliases=["ls"], help="List tasks")
    p.add_argument("--status")
    p.add_argument("--priority")
    p.add_argument("--tag")
    p.add_argument("--due", help="YYYY-MM-DD or today / tomorrow / today+N")
    p.add_argument("--overdue", action="store_true")
    p.add_argument("--where", help="Raw where expression")
    p.add_argument("--on", help="Evaluate recurring instances on this date (YYYY-MM-DD)")
    p.add_argument("--limit", type=int)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", help="Show one task")
    p.add_argument("ref", help="Task path or title")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("update", help="Update task fields")
    p.add_argument("ref")
    p.add_argument("--status")
    p.add_argument("--priority")
    p.add_argument("--due")
    p.add_argument("--scheduled")
    p.add_argument("--title")
    p.add_argument("--recurrence")
    p.add_argument("--recurrence-anchor", choices=["scheduled", "completion"])
    p.add_argument("--add-tag", action="append", default=[])
    p.add_argument("--remove-tag", action="append", default=[])
    p.add_argument("--add-context", action="append", default=[])
    p.add_argument("--remove-context", action="append", default=[])
    p.set_defaults(func=cmd_update)

    for name, func, helptext in (
        ("complete", cmd_complete, "Complete a task (or one recurring instance)"),
        ("skip", cmd_skip, "Skip one recurring instance"),
        ("unskip", cmd_unskip, "Reopen a skipped recurring instance"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument("ref")
        p.add_argument("--date", help="Instance date YYYY-MM-DD (default: today)")
        p.set_defaults(func=func)

    p = sub.add_parser("archive", help="Tag a task as archived")
    p.add_argument("ref")
    p.set_defaults(func=cmd_archive)

    p = sub.add_parser("delete", aliases=["rm"], help="Delete a task")
    p.add_argument("ref")
    p.add_argument("-f", "--force", action="store_true", help="Delete even if other documents link to it")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("search", help="Search tasks")
    p.add_argument("query", nargs="+")
    p.add_argument("--limit", type=int)
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("stats", help="Collection statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("projects", help="Projects linked from tasks")
    projects_sub = p.add_subparsers(dest="projects_command")
    pl = projects_sub.add_parser("list", aliases=["ls"])
    pl.add_argument("--stats", action="store_true", help="Show completion statistics")
    pl = projects_sub.add_parser("show")
    pl.add_argument("name")
    p.set_defaults(func=cmd_projects)

    p = sub.add_parser("timer", help="Time tracking")
    timer_sub = p.add_subparsers(dest="timer_command", required=True)
    t = timer_sub.add_parser("start")
    t.add_argument("ref")
    t.add_argument("--description")
    timer_sub.add_parser("stop")
    timer_sub.add_parser("status")
    t = timer_sub.add_parser("log")
    t.add_argument("--period", choices=["today", "week"])
    t.add_argument("--from", dest="date_from")
    t.add_argument("--to", dest="date_to")
    p.set_defaults(func=cmd_timer)

    p = sub.add_parser("config", help="Show or change settings")
    config_sub = p.add_subparsers(dest="config_command", required=True)
    c = config_sub.add_parser("get")
    c.add_argument("key", nargs="?")
    c = config_sub.add_parser("set")
    c.add_argument("key")
    c.add_argument("value")
    p.set_defaults(func=cmd_config)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.debug:
        configure_logging(debug=True)
    else:
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s", stream=sys.stderr)
    try:
        args.func(args)
    except (TaskNotFoundError, AmbiguousTaskError, CollectionError, ValueError) as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
