"""
Per-date instance overlay for recurring tasks.

A recurring task keeps one document; each calendar-date occurrence is tracked in
completeInstances / skippedInstances. The base status field is not authoritative for a
specific date of a recurring task: effective_state() is.
"""
from __future__ import annotations

from enum import StrEnum
from typing import Any, Iterable, Mapping

from field_mapping import FieldMapping, is_completed_status


class InstanceState(StrEnum):
    OPEN = "open"
    DONE = "done"
    SKIPPED = "skipped"


def is_recurring(task: Mapping[str, Any]) -> bool:
    """A normalized task recurs when it carries a non-empty recurrence string."""
    rec = task.get("recurrence")
    return isinstance(rec, str) and bool(rec.strip())


def instance_list(value: Any) -> list[str]:
    """Stored instance list as unique strings, first occurrence wins."""
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value:
        s = str(item).strip() if item is not None else ""
        if s and s not in out:
            out.append(s)
    return out


def effective_state(task: Mapping[str, Any], on_date: str, mapping: FieldMapping) -> InstanceState:
    """
    State of a normalized task for one calendar date (YYYY-MM-DD).
    Non-recurring tasks: the stored status (completed or not).
    Recurring tasks: completeInstances, then skippedInstances, else open.
    """
    if not is_recurring(task):
        return InstanceState.DONE if is_completed_status(mapping, task.get("status")) else InstanceState.OPEN
    if on_date in instance_list(task.get("completeInstances")):
        return InstanceState.DONE
    if on_date in instance_list(task.get("skippedInstances")):
        return InstanceState.SKIPPED
    return InstanceState.OPEN


def mark_complete(complete: Iterable[str], skipped: Iterable[str], on_date: str) -> tuple[list[str], list[str]]:
    """Record on_date as completed; it is removed from skipped."""
    done = instance_list(list(complete))
    if on_date not in done:
        done.append(on_date)
    return done, [d for d in instance_list(list(skipped)) if d != on_date]


def mark_skipped(complete: Iterable[str], skipped: Iterable[str], on_date: str) -> tuple[list[str], list[str]]:
    """Record on_date as skipped; it is removed from completed."""
    sk = instance_list(list(skipped))
    if on_date not in sk:
        sk.append(on_date)
    return [d for d in instance_list(list(complete)) if d != on_date], sk


def unmark_skipped(complete: Iterable[str], skipped: Iterable[str], on_date: str) -> tuple[list[str], list[str]]:
    """Reopen on_date: drop it from both sets."""
    return (
        [d for d in instance_list(list(complete)) if d != on_date],
        [d for d in instance_list(list(skipped)) if d != on_date],
    )
