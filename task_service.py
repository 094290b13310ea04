"""
Task Service layer: every command that reads or writes task documents goes through here.
Each call opens the collection and builds the field mapping fresh, resolves the task reference,
computes new field values in memory, and issues a single whole-document update.
Used by the CLI and the HTTP API.
"""
from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from collection import Collection, TaskDocument, open_collection
from config import load as load_config
from date_utils import (
    get_current_date_string,
    is_before_date_safe,
    local_iso_string,
    parse_date_to_utc,
    resolve_date_expression,
    resolve_date_or_today,
    try_parse_date,
    validate_date_string,
)
from field_mapping import (
    FieldMapping,
    default_completed_status,
    denormalize_frontmatter,
    is_completed_status,
    load_field_mapping,
    normalize_frontmatter,
    resolve_display_title,
    resolve_field,
)
from instances import InstanceState, effective_state, instance_list, is_recurring, mark_skipped, unmark_skipped
from nlp import extract_project_names, map_to_frontmatter, parse_task_text
from recurrence import ANCHOR_COMPLETION, ANCHOR_SCHEDULED, advance_on_completion, recalculate_schedule, schedule_inputs
from task_resolver import resolve_task_path

logger = logging.getLogger("task_service")

ARCHIVE_TAG = "archive"
DEFAULT_SEARCH_LIMIT = 20
SCAN_LIMIT = 1000

# [[target]], [[target#heading]], [[target|alias]]
WIKILINK_RE = re.compile(r"\[\[([^\]|#]+)(?:#[^\]|]*)?(?:\|[^\]]*)?\]\]")


@dataclass
class CommandResult:
    message: str
    path: str | None = None
    task: dict[str, Any] | None = None
    body: str | None = None
    changed: bool = True


@dataclass
class TaskListing:
    tasks: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    as_of: str = ""


def _user_timezone() -> str:
    try:
        return load_config().user_timezone
    except Exception:
        logger.warning("Could not load config; using UTC for relative dates", exc_info=True)
        return "UTC"


@contextmanager
def with_collection(path: str | None = None) -> Iterator[tuple[Collection, FieldMapping]]:
    """Open the collection and its field mapping for one command."""
    collection = open_collection(path)
    mapping = load_field_mapping(collection)
    try:
        yield collection, mapping
    finally:
        collection.close()


def _load_task(collection: Collection, mapping: FieldMapping, reference: str) -> tuple[TaskDocument, dict[str, Any], str]:
    task_path = resolve_task_path(collection, reference, mapping)
    doc = collection.read(task_path)
    fm = normalize_frontmatter(doc.frontmatter, mapping)
    title = resolve_display_title(fm, mapping, doc.path) or doc.path
    return doc, fm, title


def _write(collection: Collection, mapping: FieldMapping, doc: TaskDocument, fields: dict[str, Any]) -> dict[str, Any]:
    updated = collection.update(doc.path, denormalize_frontmatter(fields, mapping))
    return normalize_frontmatter(updated.frontmatter, mapping)


def _task_view(doc: TaskDocument, mapping: FieldMapping) -> dict[str, Any]:
    fm = normalize_frontmatter(doc.frontmatter, mapping)
    title = resolve_display_title(fm, mapping, doc.path)
    if title:
        fm["title"] = title
    return {"path": doc.path, **fm}


def _enum_values(collection: Collection, mapping: FieldMapping, role: str) -> list[str] | None:
    definition = collection.fields.get(resolve_field(mapping, role))
    if isinstance(definition, dict) and isinstance(definition.get("values"), list):
        return [str(v) for v in definition["values"]]
    return None


def _validate_optional_date(value: str | None, label: str) -> None:
    if value:
        parse_date_to_utc(value)
        logger.debug("Validated %s date %s", label, value)


# --- create / show / update / archive ---


def create_task(text: str, *, path: str | None = None) -> CommandResult:
    """Create a task from one line of natural-language text."""
    text = (text or "").strip()
    if not text:
        raise ValueError("Please provide task text.")
    tz_name = _user_timezone()
    with with_collection(path) as (collection, mapping):
        parsed = parse_task_text(
            text,
            statuses=_enum_values(collection, mapping, "status"),
            priorities=_enum_values(collection, mapping, "priority"),
            tz_name=tz_name,
        )
        if not parsed.title:
            raise ValueError("Task text must include a title.")
        frontmatter, body = map_to_frontmatter(parsed)
        created = collection.create(denormalize_frontmatter(frontmatter, mapping), body)
        view = _task_view(created, mapping)
        logger.info("[task_service] created %s", created.path)
        return CommandResult(message="Task created", path=created.path, task=view, body=body)


def show_task(reference: str, *, path: str | None = None) -> CommandResult:
    with with_collection(path) as (collection, mapping):
        doc, _, title = _load_task(collection, mapping, reference)
        return CommandResult(message=title, path=doc.path, task=_task_view(doc, mapping), body=doc.body, changed=False)


def update_task(
    reference: str,
    *,
    status: str | None = None,
    priority: str | None = None,
    due: str | None = None,
    scheduled: str | None = None,
    title: str | None = None,
    recurrence: str | None = None,
    recurrence_anchor: str | None = None,
    add_tags: list[str] | None = None,
    remove_tags: list[str] | None = None,
    add_contexts: list[str] | None = None,
    remove_contexts: list[str] | None = None,
    path: str | None = None,
) -> CommandResult:
    """Update task fields. Only provided fields are changed."""
    _validate_optional_date(due, "due")
    _validate_optional_date(scheduled, "scheduled")
    if recurrence_anchor and recurrence_anchor not in (ANCHOR_SCHEDULED, ANCHOR_COMPLETION):
        raise ValueError(f"recurrence anchor must be '{ANCHOR_SCHEDULED}' or '{ANCHOR_COMPLETION}'")

    with with_collection(path) as (collection, mapping):
        doc, fm, task_title = _load_task(collection, mapping, reference)
        fields: dict[str, Any] = {}
        for role, value in (
            ("status", status),
            ("priority", priority),
            ("due", due),
            ("scheduled", scheduled),
            ("title", title),
            ("recurrence", recurrence),
            ("recurrenceAnchor", recurrence_anchor),
        ):
            if value:
                fields[role] = value

        for role, added, removed in (("tags", add_tags, remove_tags), ("contexts", add_contexts, remove_contexts)):
            if not added and not removed:
                continue
            values = [str(v) for v in fm.get(role) or [] if v is not None] if isinstance(fm.get(role), list) else []
            for v in added or []:
                if v not in values:
                    values.append(v)
            fields[role] = [v for v in values if v not in (removed or [])]

        if not fields:
            raise ValueError("No fields to update. Provide status, priority, due, scheduled, title, tags or contexts.")

        fields["dateModified"] = local_iso_string()
        updated = _write(collection, mapping, doc, fields)
        logger.info("[task_service] update %s fields=%s", doc.path, sorted(fields))
        return CommandResult(message=f"Updated: {task_title}", path=doc.path, task={"path": doc.path, **updated})


def archive_task(reference: str, *, path: str | None = None) -> CommandResult:
    with with_collection(path) as (collection, mapping):
        doc, fm, title = _load_task(collection, mapping, reference)
        tags = list(fm.get("tags") or []) if isinstance(fm.get("tags"), list) else []
        if ARCHIVE_TAG in tags:
            return CommandResult(message=f'Task "{title}" is already archived.', path=doc.path, changed=False)
        tags.append(ARCHIVE_TAG)
        updated = _write(collection, mapping, doc, {"tags": tags, "dateModified": local_iso_string()})
        return CommandResult(message=f"Archived: {title}", path=doc.path, task={"path": doc.path, **updated})


def _link_targets(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        for m in WIKILINK_RE.finditer(value):
            yield m.group(1).strip().lower()
    elif isinstance(value, list):
        for item in value:
            yield from _link_targets(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _link_targets(item)


def _backlinks(collection: Collection, task_path: str) -> list[str]:
    """Paths of other documents whose frontmatter or body links to task_path."""
    leaf = task_path.rsplit("/", 1)[-1].removesuffix(".md").lower()
    linking = []
    for doc in collection.query(limit=SCAN_LIMIT, include_body=True).results:
        if doc.path == task_path:
            continue
        for target in _link_targets([doc.frontmatter, doc.body or ""]):
            # Links resolve by file name, with or without folders and extension
            if target.removesuffix(".md").rsplit("/", 1)[-1] == leaf:
                linking.append(doc.path)
                break
    return linking


def delete_task(reference: str, *, force: bool = False, path: str | None = None) -> CommandResult:
    """Delete a task document. Refuses while other documents link to it unless force is set."""
    with with_collection(path) as (collection, mapping):
        doc, _, title = _load_task(collection, mapping, reference)
        if not force:
            linking = _backlinks(collection, doc.path)
            if linking:
                raise ValueError(
                    f'"{title}" is linked from {len(linking)} document(s): {", ".join(linking)}. '
                    "Use --force to delete anyway."
                )
        collection.delete(doc.path)
        logger.info("[task_service] deleted %s force=%s", doc.path, force)
        return CommandResult(message=f"Deleted: {title}", path=doc.path)


# --- completion / skip ---


def complete_task(reference: str, *, date: str | None = None, path: str | None = None) -> CommandResult:
    """
    Complete a task. Recurring tasks record the instance and move to the next occurrence;
    when the series has none left the task is completed for good.
    """
    today = resolve_date_or_today(date, _user_timezone())
    with with_collection(path) as (collection, mapping):
        doc, fm, title = _load_task(collection, mapping, reference)
        completed_status = default_completed_status(mapping)

        if not is_recurring(fm):
            if is_completed_status(mapping, fm.get("status")):
                return CommandResult(message=f'Task "{title}" is already completed.', path=doc.path, changed=False)
            updated = _write(collection, mapping, doc, {
                "status": completed_status,
                "completedDate": today,
                "dateModified": local_iso_string(),
            })
            logger.info("[task_service] completed %s", doc.path)
            return CommandResult(message=f"Completed: {title}", path=doc.path, task={"path": doc.path, **updated})

        if effective_state(fm, today, mapping) is InstanceState.DONE:
            return CommandResult(
                message=f"Recurring instance already completed on {today}: {title}",
                path=doc.path,
                changed=False,
            )

        result = advance_on_completion(fm["recurrence"], today, **schedule_inputs(fm))
        fields: dict[str, Any] = {
            "recurrence": result.updated_recurrence,
            "completeInstances": result.complete_instances,
            "skippedInstances": result.skipped_instances,
            "dateModified": local_iso_string(),
        }
        if result.next_scheduled is None:
            fields["status"] = completed_status
            fields["completedDate"] = today
            updated = _write(collection, mapping, doc, fields)
            logger.info("[task_service] recurring series ended %s", doc.path)
            return CommandResult(message=f"Completed: {title}", path=doc.path, task={"path": doc.path, **updated})

        fields["scheduled"] = result.next_scheduled
        if result.next_due:
            fields["due"] = result.next_due
        updated = _write(collection, mapping, doc, fields)
        logger.info("[task_service] completed instance %s of %s; next %s", today, doc.path, result.next_scheduled)
        return CommandResult(
            message=f"Completed recurring instance: {title} → next {result.next_scheduled}",
            path=doc.path,
            task={"path": doc.path, **updated},
        )


def skip_task(reference: str, *, date: str | None = None, path: str | None = None) -> CommandResult:
    return _set_skip_state(reference, skip=True, date=date, path=path)


def unskip_task(reference: str, *, date: str | None = None, path: str | None = None) -> CommandResult:
    return _set_skip_state(reference, skip=False, date=date, path=path)


def _set_skip_state(reference: str, *, skip: bool, date: str | None, path: str | None) -> CommandResult:
    target = resolve_date_or_today(date, _user_timezone())
    with with_collection(path) as (collection, mapping):
        doc, fm, title = _load_task(collection, mapping, reference)
        if not is_recurring(fm):
            raise ValueError("Skip/unskip is only supported for recurring tasks.")

        complete = instance_list(fm.get("completeInstances"))
        skipped = instance_list(fm.get("skippedInstances"))
        already_skipped = target in skipped
        if skip and already_skipped:
            return CommandResult(message=f"Recurring instance already skipped on {target}: {title}", path=doc.path, changed=False)
        if not skip and not already_skipped:
            return CommandResult(message=f"Recurring instance already unskipped on {target}: {title}", path=doc.path, changed=False)

        complete, skipped = (mark_skipped if skip else unmark_skipped)(complete, skipped, target)
        inputs = schedule_inputs(fm)
        inputs.update(complete_instances=complete, skipped_instances=skipped)
        schedule = recalculate_schedule(fm["recurrence"], target, **inputs)

        fields: dict[str, Any] = {
            "recurrence": schedule.updated_recurrence,
            "completeInstances": complete,
            "skippedInstances": skipped,
            "dateModified": local_iso_string(),
        }
        if schedule.next_scheduled:
            fields["scheduled"] = schedule.next_scheduled
        if schedule.next_due:
            fields["due"] = schedule.next_due
        updated = _write(collection, mapping, doc, fields)

        verb = "Skipped" if skip else "Unskipped"
        next_info = f" → next {schedule.next_scheduled}" if schedule.next_scheduled else ""
        logger.info("[task_service] %s %s on %s", verb.lower(), doc.path, target)
        return CommandResult(
            message=f"{verb} recurring instance ({target}): {title}{next_info}",
            path=doc.path,
            task={"path": doc.path, **updated},
        )


# --- listing / search / stats ---


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def list_tasks(
    *,
    status: str | None = None,
    priority: str | None = None,
    tag: str | None = None,
    due: str | None = None,
    overdue: bool = False,
    where: str | None = None,
    on: str | None = None,
    limit: int | None = None,
    path: str | None = None,
) -> TaskListing:
    """
    List tasks. Without a status filter, tasks that are done for the as-of date are hidden;
    recurring tasks are judged by their instance state for that date, not their base status.
    """
    tz_name = _user_timezone()
    as_of = validate_date_string(on) if on else get_current_date_string(tz_name)
    due_date = None
    if due:
        due_date = resolve_date_expression(due, tz_name)
        if due_date is None:
            validate_date_string(due)
    if limit is None:
        try:
            limit = load_config().default_list_limit
        except Exception:
            limit = 50

    with with_collection(path) as (collection, mapping):
        conditions: list[str] = []
        if where:
            # Raw user expression, not role-translated
            conditions.append(where)
        else:
            status_field = resolve_field(mapping, "status")
            exclude_completed = [f'{status_field} != "{_escape(s)}"' for s in mapping.completed_statuses]
            if status:
                # Recurring tasks are filtered by instance state below
                if not on and not is_completed_status(mapping, status):
                    conditions.append(f'{status_field} == "{_escape(status)}"')
            elif not overdue:
                conditions.extend(exclude_completed)
            if priority:
                conditions.append(f'{resolve_field(mapping, "priority")} == "{_escape(priority)}"')
            if tag:
                conditions.append(f'{resolve_field(mapping, "tags")}.contains("{_escape(tag)}")')
            if due_date:
                conditions.append(f'{resolve_field(mapping, "due")} == "{due_date}"')
            if overdue:
                conditions.append(f'{resolve_field(mapping, "due")} != null')
                conditions.extend(exclude_completed)

        result = collection.query(
            " && ".join(conditions) if conditions else None,
            limit=limit,
            order_by=[(resolve_field(mapping, "due"), "asc")],
        )

        tasks: list[dict[str, Any]] = []
        for doc in result.results:
            fm = normalize_frontmatter(doc.frontmatter, mapping)
            if overdue:
                if is_completed_status(mapping, fm.get("status")):
                    continue
                if not isinstance(fm.get("due"), str) or not is_before_date_safe(fm["due"], as_of):
                    continue
            state = effective_state(fm, as_of, mapping)
            if is_recurring(fm):
                if status:
                    if is_completed_status(mapping, status):
                        if state is InstanceState.OPEN:
                            continue
                    elif state is not InstanceState.OPEN or str(fm.get("status") or "") != status:
                        continue
                elif state is not InstanceState.OPEN:
                    continue
            elif status and str(fm.get("status") or "") != status:
                continue
            view = _task_view(doc, mapping)
            view["instanceState"] = state.value
            tasks.append(view)
        return TaskListing(tasks=tasks, has_more=result.has_more, as_of=as_of)


def search_tasks(query: str, *, limit: int | None = None, path: str | None = None) -> list[dict[str, Any]]:
    """Client-side weighted search over title, tags, contexts, projects and body."""
    term = (query or "").strip().lower()
    if not term:
        raise ValueError("Please provide a search query.")
    with with_collection(path) as (collection, mapping):
        result = collection.query(limit=SCAN_LIMIT, include_body=True)
        scored: list[tuple[int, dict[str, Any]]] = []
        for doc in result.results:
            fm = normalize_frontmatter(doc.frontmatter, mapping)
            title = (resolve_display_title(fm, mapping, doc.path) or "").lower()
            tags = " ".join(str(t) for t in fm.get("tags") or []).lower()
            contexts = " ".join(str(c) for c in fm.get("contexts") or []).lower()
            projects = " ".join(extract_project_names(fm.get("projects"))).lower()
            body = (doc.body or "").lower()
            score = 0
            if term in title:
                score += 10
            if term in tags:
                score += 5
            if term in contexts:
                score += 5
            if term in projects:
                score += 5
            if term in body:
                score += 2
            if score > 0:
                scored.append((score, _task_view(doc, mapping)))
        scored.sort(key=lambda item: (-item[0], item[1]["path"]))
        return [task for _, task in scored[: limit or DEFAULT_SEARCH_LIMIT]]


def _entry_minutes(entry: dict[str, Any]) -> int:
    start = try_parse_date(entry.get("startTime"))
    end = try_parse_date(entry.get("endTime"))
    if start is None or end is None:
        return 0
    return max(0, int((end - start).total_seconds() // 60))


def task_stats(*, path: str | None = None) -> dict[str, Any]:
    today = get_current_date_string(_user_timezone())
    with with_collection(path) as (collection, mapping):
        tasks = [normalize_frontmatter(d.frontmatter, mapping) for d in collection.query(limit=SCAN_LIMIT).results]
        by_status: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        overdue = completed = minutes = 0
        for fm in tasks:
            status = str(fm.get("status") or "unknown")
            by_status[status] = by_status.get(status, 0) + 1
            prio = str(fm.get("priority") or "unset")
            by_priority[prio] = by_priority.get(prio, 0) + 1
            done = is_completed_status(mapping, fm.get("status"))
            completed += done
            if isinstance(fm.get("due"), str) and not done and is_before_date_safe(fm["due"], today):
                overdue += 1
            for entry in fm.get("timeEntries") or []:
                if isinstance(entry, dict) and entry.get("endTime"):
                    minutes += _entry_minutes(entry)
        total = len(tasks)
        return {
            "total": total,
            "completed": completed,
            "completion_rate": round(completed * 100 / total) if total else 0,
            "overdue": overdue,
            "by_status": dict(sorted(by_status.items())),
            "by_priority": dict(sorted(by_priority.items())),
            "time_tracked_minutes": minutes,
        }


# --- projects ---


def list_projects(*, path: str | None = None) -> list[dict[str, Any]]:
    """Every project named by a task's projects links, with open/done counts, sorted by name."""
    with with_collection(path) as (collection, mapping):
        counts: dict[str, dict[str, Any]] = {}
        for _, fm in _all_tasks(collection, mapping):
            done = is_completed_status(mapping, fm.get("status"))
            for name in dict.fromkeys(extract_project_names(fm.get("projects"))):
                entry = counts.setdefault(name, {"name": name, "total": 0, "open": 0, "done": 0})
                entry["total"] += 1
                entry["done" if done else "open"] += 1
        projects = sorted(counts.values(), key=lambda p: (p["name"].lower(), p["name"]))
        for p in projects:
            p["completion_rate"] = round(p["done"] * 100 / p["total"])
        return projects


def show_project(name: str, *, path: str | None = None) -> list[dict[str, Any]]:
    """Tasks linked to the named project (case-insensitive), ordered by path."""
    wanted = (name or "").strip().lstrip("+").lower()
    if not wanted:
        raise ValueError("Please provide a project name.")
    with with_collection(path) as (collection, mapping):
        return [
            _task_view(doc, mapping)
            for doc, fm in _all_tasks(collection, mapping)
            if any(p.lower() == wanted for p in extract_project_names(fm.get("projects")))
        ]


# --- time tracking ---


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso_z(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _time_entries(fm: dict[str, Any]) -> list[dict[str, Any]]:
    entries = fm.get("timeEntries")
    return [dict(e) for e in entries if isinstance(e, dict)] if isinstance(entries, list) else []


def _running_entry(entries: list[dict[str, Any]]) -> int | None:
    for i, entry in enumerate(entries):
        if entry.get("startTime") and not entry.get("endTime"):
            return i
    return None


def start_timer(reference: str, *, description: str | None = None, path: str | None = None) -> CommandResult:
    with with_collection(path) as (collection, mapping):
        doc, fm, title = _load_task(collection, mapping, reference)
        entries = _time_entries(fm)
        running = _running_entry(entries)
        if running is not None:
            raise ValueError(f"Timer already running since {entries[running]['startTime']}. Stop it first.")
        entry: dict[str, Any] = {"startTime": _iso_z(_now_utc())}
        if description:
            entry["description"] = description
        entries.append(entry)
        updated = _write(collection, mapping, doc, {"timeEntries": entries})
        return CommandResult(message=f"Timer started for: {title}", path=doc.path, task={"path": doc.path, **updated})


def _all_tasks(collection: Collection, mapping: FieldMapping) -> list[tuple[TaskDocument, dict[str, Any]]]:
    return [(d, normalize_frontmatter(d.frontmatter, mapping)) for d in collection.query(limit=SCAN_LIMIT).results]


def stop_timer(*, path: str | None = None) -> CommandResult:
    with with_collection(path) as (collection, mapping):
        for doc, fm in _all_tasks(collection, mapping):
            entries = _time_entries(fm)
            idx = _running_entry(entries)
            if idx is None:
                continue
            end = _now_utc()
            entries[idx]["endTime"] = _iso_z(end)
            entries[idx]["duration"] = _entry_minutes(entries[idx])
            updated = _write(collection, mapping, doc, {"timeEntries": entries})
            title = resolve_display_title(fm, mapping, doc.path)
            return CommandResult(
                message=f"Timer stopped for: {title} ({format_duration(entries[idx]['duration'])})",
                path=doc.path,
                task={"path": doc.path, **updated},
            )
    raise ValueError("No running timer found.")


def timer_status(*, path: str | None = None) -> list[dict[str, Any]]:
    now = _now_utc()
    active = []
    with with_collection(path) as (collection, mapping):
        for doc, fm in _all_tasks(collection, mapping):
            entries = _time_entries(fm)
            idx = _running_entry(entries)
            if idx is None:
                continue
            start = try_parse_date(entries[idx]["startTime"])
            active.append({
                "path": doc.path,
                "title": resolve_display_title(fm, mapping, doc.path),
                "startTime": entries[idx]["startTime"],
                "description": entries[idx].get("description"),
                "elapsed_minutes": int((now - start).total_seconds() // 60) if start else 0,
            })
    return active


def timer_log(
    *,
    period: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    path: str | None = None,
) -> dict[str, Any]:
    """Finished time entries across all tasks, oldest first, with a minute total."""
    if date_from:
        validate_date_string(date_from)
    if date_to:
        validate_date_string(date_to)
    if period and period not in ("today", "week"):
        raise ValueError("period must be 'today' or 'week'")
    lower = parse_date_to_utc(date_from) if date_from else None
    upper = parse_date_to_utc(date_to) + timedelta(days=1) if date_to else None
    if period == "today":
        lower = parse_date_to_utc(get_current_date_string(_user_timezone()))
    elif period == "week":
        lower = _now_utc() - timedelta(days=7)

    rows: list[dict[str, Any]] = []
    with with_collection(path) as (collection, mapping):
        for doc, fm in _all_tasks(collection, mapping):
            title = resolve_display_title(fm, mapping, doc.path)
            for entry in _time_entries(fm):
                if not entry.get("endTime"):
                    continue
                start = try_parse_date(entry.get("startTime"))
                if start is None:
                    continue
                if lower is not None and start < lower:
                    continue
                if upper is not None and start >= upper:
                    continue
                minutes = entry.get("duration")
                rows.append({
                    "path": doc.path,
                    "title": title,
                    "startTime": entry["startTime"],
                    "endTime": entry["endTime"],
                    "description": entry.get("description"),
                    "minutes": minutes if isinstance(minutes, int) else _entry_minutes(entry),
                })
    rows.sort(key=lambda r: try_parse_date(r["startTime"]))
    return {"entries": rows, "total_minutes": sum(r["minutes"] for r in rows)}


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    h, m = divmod(minutes, 60)
    return f"{h}h {m}m" if m else f"{h}h"
