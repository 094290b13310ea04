"""
Natural-language task entry: "Write report due friday #work @office +Q3 !high ~2h every week -- notes".

Triggers:
  #tag  @context  +project (or +[[Project Name]])  *status  !priority  ~30m / ~2h estimate
Dates:
  due <date>, scheduled <date> / on <date>, bare today / tomorrow (scheduled)
Recurrence:
  daily / weekly / monthly / yearly, every [N] day(s)/week(s)/month(s)/year(s), every weekday,
  every <weekday>[, <weekday>...]
Everything after " -- " becomes the task body.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from date_utils import local_iso_string, resolve_relative_date

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_BYDAY = {"monday": "MO", "tuesday": "TU", "wednesday": "WE", "thursday": "TH", "friday": "FR", "saturday": "SA", "sunday": "SU"}
_FREQ = {"day": "DAILY", "week": "WEEKLY", "month": "MONTHLY", "year": "YEARLY"}
_ADVERB_FREQ = {"daily": "DAILY", "weekly": "WEEKLY", "monthly": "MONTHLY", "yearly": "YEARLY", "annually": "YEARLY"}

_DATE_PHRASE = (
    r"(?:today|tomorrow|yesterday|next week|in a week|in \d+ days?|\d{4}-\d{2}-\d{2}"
    r"|(?:next )?(?:" + "|".join(_WEEKDAYS) + r"))"
)
_DUE_RE = re.compile(r"\bdue\s+(" + _DATE_PHRASE + r")\b", re.IGNORECASE)
_SCHEDULED_RE = re.compile(r"\b(?:scheduled|on)\s+(" + _DATE_PHRASE + r")\b", re.IGNORECASE)
_BARE_DATE_RE = re.compile(r"\b(today|tomorrow)\b", re.IGNORECASE)

_EVERY_WEEKDAYS_RE = re.compile(
    r"\bevery\s+((?:" + "|".join(_WEEKDAYS) + r")(?:\s*(?:,|and)\s*(?:" + "|".join(_WEEKDAYS) + r"))*)\b",
    re.IGNORECASE,
)
_EVERY_WEEKDAY_RE = re.compile(r"\bevery\s+weekday\b", re.IGNORECASE)
_EVERY_INTERVAL_RE = re.compile(r"\bevery\s+(?:(\d+|other)\s+)?(day|week|month|year)s?\b", re.IGNORECASE)
_ADVERB_RE = re.compile(r"\b(daily|weekly|monthly|yearly|annually)\b", re.IGNORECASE)

_TAG_RE = re.compile(r"(?:(?<=\s)|^)#([\w/-]+)")
_CONTEXT_RE = re.compile(r"(?:(?<=\s)|^)@([\w/-]+)")
_PROJECT_RE = re.compile(r"(?:(?<=\s)|^)\+(\[\[[^\]]+\]\]|[\w/-]+)")
_STATUS_RE = re.compile(r"(?:(?<=\s)|^)\*([\w-]+)")
_PRIORITY_RE = re.compile(r"(?:(?<=\s)|^)!([\w-]+)")
_ESTIMATE_RE = re.compile(r"(?:(?<=\s)|^)~(\d+)\s*(m|min|h|hr)?\b", re.IGNORECASE)


@dataclass
class ParsedTask:
    title: str
    due_date: str | None = None
    scheduled_date: str | None = None
    priority: str | None = None
    status: str | None = None
    tags: list[str] = field(default_factory=list)
    contexts: list[str] = field(default_factory=list)
    projects: list[str] = field(default_factory=list)
    recurrence: str | None = None
    estimate: int | None = None
    details: str | None = None


def _strip(text: str, span: tuple[int, int]) -> str:
    return text[: span[0]] + " " + text[span[1]:]


def _parse_recurrence(text: str) -> tuple[str | None, str]:
    m = _EVERY_WEEKDAY_RE.search(text)
    if m:
        return "FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR", _strip(text, m.span())
    m = _EVERY_WEEKDAYS_RE.search(text)
    if m:
        days = [d.lower() for d in re.findall("|".join(_WEEKDAYS), m.group(1), re.IGNORECASE)]
        byday = ",".join(dict.fromkeys(_BYDAY[d] for d in days))
        return f"FREQ=WEEKLY;BYDAY={byday}", _strip(text, m.span())
    m = _EVERY_INTERVAL_RE.search(text)
    if m:
        raw_interval, unit = m.group(1), m.group(2).lower()
        interval = 2 if raw_interval and raw_interval.lower() == "other" else int(raw_interval or 1)
        rule = f"FREQ={_FREQ[unit]}"
        if interval > 1:
            rule += f";INTERVAL={interval}"
        return rule, _strip(text, m.span())
    m = _ADVERB_RE.search(text)
    if m:
        return f"FREQ={_ADVERB_FREQ[m.group(1).lower()]}", _strip(text, m.span())
    return None, text


def parse_task_text(
    text: str,
    *,
    statuses: list[str] | None = None,
    priorities: list[str] | None = None,
    tz_name: str = "UTC",
) -> ParsedTask:
    """Extract structured task fields from one line of free text."""
    raw = (text or "").strip()
    details = None
    if " -- " in raw:
        raw, details = raw.split(" -- ", 1)
        details = details.strip() or None

    work = f" {raw} "
    tags = [m.group(1) for m in _TAG_RE.finditer(work)]
    contexts = [m.group(1) for m in _CONTEXT_RE.finditer(work)]
    projects = [m.group(1) for m in _PROJECT_RE.finditer(work)]
    work = _TAG_RE.sub(" ", work)
    work = _CONTEXT_RE.sub(" ", work)
    work = _PROJECT_RE.sub(" ", work)

    status = None
    for m in _STATUS_RE.finditer(work):
        if statuses is None or m.group(1) in statuses:
            status = m.group(1)
            work = _strip(work, m.span())
            break

    priority = None
    for m in _PRIORITY_RE.finditer(work):
        if priorities is None or m.group(1) in priorities:
            priority = m.group(1)
            work = _strip(work, m.span())
            break

    estimate = None
    m = _ESTIMATE_RE.search(work)
    if m:
        amount = int(m.group(1))
        unit = (m.group(2) or "m").lower()
        estimate = amount * 60 if unit.startswith("h") else amount
        work = _strip(work, m.span())

    recurrence, work = _parse_recurrence(work)

    due_date = None
    m = _DUE_RE.search(work)
    if m:
        due_date = resolve_relative_date(m.group(1), tz_name)
        work = _strip(work, m.span())

    scheduled_date = None
    m = _SCHEDULED_RE.search(work) or _BARE_DATE_RE.search(work)
    if m:
        scheduled_date = resolve_relative_date(m.group(1), tz_name)
        work = _strip(work, m.span())

    title = re.sub(r"\s+", " ", work).strip()
    return ParsedTask(
        title=title,
        due_date=due_date,
        scheduled_date=scheduled_date,
        priority=priority,
        status=status,
        tags=list(dict.fromkeys(tags)),
        contexts=list(dict.fromkeys(contexts)),
        projects=list(dict.fromkeys(projects)),
        recurrence=recurrence,
        estimate=estimate,
        details=details,
    )


def map_to_frontmatter(parsed: ParsedTask) -> tuple[dict[str, Any], str | None]:
    """Role-keyed frontmatter and body for a parsed task. Always tagged 'task'."""
    fm: dict[str, Any] = {"title": parsed.title}
    if parsed.due_date:
        fm["due"] = parsed.due_date
    if parsed.scheduled_date:
        fm["scheduled"] = parsed.scheduled_date
    if parsed.priority:
        fm["priority"] = parsed.priority
    if parsed.status:
        fm["status"] = parsed.status

    tags = list(parsed.tags)
    if "task" not in tags:
        tags.insert(0, "task")
    fm["tags"] = tags

    if parsed.contexts:
        fm["contexts"] = list(parsed.contexts)
    if parsed.projects:
        fm["projects"] = list(parsed.projects)
    if parsed.recurrence:
        fm["recurrence"] = parsed.recurrence
    if parsed.estimate:
        fm["timeEstimate"] = parsed.estimate

    now = local_iso_string()
    fm["dateCreated"] = now
    fm["dateModified"] = now
    return fm, parsed.details


def extract_project_names(projects: list[str] | None) -> list[str]:
    """Plain names from project entries; wikilinks like [[folder/Name]] become Name."""
    names = []
    for p in projects or []:
        if not isinstance(p, str) or not p.strip():
            continue
        m = re.match(r"\[\[(?:.*/)?([^\]|]+)(?:\|[^\]]*)?\]\]", p.strip())
        names.append(m.group(1).strip() if m else p.strip())
    return names
