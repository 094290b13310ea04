"""
Recurrence engine for repeating tasks.

A rule is an RFC 5545 style string (FREQ=WEEKLY;BYDAY=MO) with its series anchor embedded as
a DTSTART field: "DTSTART:20240101;FREQ=WEEKLY;BYDAY=MO". Scheduling only ever adds or
rewrites the DTSTART field; the frequency portion is left as the user wrote it.

Completing or skipping an instance never re-offers a date already recorded in
completeInstances / skippedInstances. All searches are bounded.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Mapping

from dateutil.rrule import rrule, rrulestr

from date_utils import format_date_utc, try_parse_date, validate_date_string
from instances import instance_list, mark_complete

logger = logging.getLogger("recurrence")

DTSTART_RE = re.compile(r"DTSTART:(\d{8}(?:T\d{6}Z?)?);?")
_DTSTART_DATETIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})Z?$")
_UNTIL_DATE_RE = re.compile(r"UNTIL=(\d{8})(?=;|$)")
_UNTIL_FLOATING_RE = re.compile(r"UNTIL=(\d{8}T\d{6})(?=;|$)")
_RULE_PARAM_RE = re.compile(r"([A-Za-z]+)=([^;]*)")

# Frequencies whose periods have a fixed length
_FIXED_STEPS = {
    "WEEKLY": timedelta(weeks=1),
    "DAILY": timedelta(days=1),
    "HOURLY": timedelta(hours=1),
    "MINUTELY": timedelta(minutes=1),
    "SECONDLY": timedelta(seconds=1),
}

ANCHOR_SCHEDULED = "scheduled"
ANCHOR_COMPLETION = "completion"

# Occurrences enumerated per search before giving up
MAX_OCCURRENCE_SCAN = 100_000
# Already-resolved instances skipped per search before giving up
MAX_SKIP_ITERATIONS = 1000


@dataclass(frozen=True)
class ScheduleResult:
    updated_recurrence: str
    next_scheduled: str | None
    next_due: str | None


@dataclass(frozen=True)
class CompletionResult(ScheduleResult):
    complete_instances: list[str] = field(default_factory=list)
    skipped_instances: list[str] = field(default_factory=list)


def split_rule(recurrence: str) -> tuple[str | None, str]:
    """Return (DTSTART value or None, frequency portion)."""
    m = DTSTART_RE.search(recurrence or "")
    rule_part = DTSTART_RE.sub("", recurrence or "", count=1).strip().strip(";").strip()
    return (m.group(1) if m else None), rule_part


def has_frequency(recurrence: str | None) -> bool:
    if not recurrence:
        return False
    return "FREQ=" in split_rule(recurrence)[1].upper()


def value_offset(value: str | None) -> tzinfo:
    """Offset carried by a stored date-time string. UTC for date-only, naive or unparseable values."""
    if not value or "T" not in value:
        return timezone.utc
    raw = value.strip()
    if raw.endswith("Z"):
        return timezone.utc
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return timezone.utc
    return parsed.tzinfo or timezone.utc


def parse_dtstart_value(value: str | None, tz: tzinfo = timezone.utc) -> datetime | None:
    """Date-only anchors are midnight in tz; date-time anchors are UTC."""
    if not value:
        return None
    if len(value) == 8 and value.isdigit():
        try:
            return datetime(int(value[:4]), int(value[4:6]), int(value[6:8]), tzinfo=tz)
        except ValueError:
            return None
    m = _DTSTART_DATETIME_RE.match(value)
    if not m:
        return None
    try:
        return datetime(*(int(g) for g in m.groups()), tzinfo=timezone.utc)
    except ValueError:
        return None


def format_dtstart_value(date_str: str | None) -> str | None:
    """YYYYMMDD for date-only values, UTC YYYYMMDDTHHMMSSZ for date-times."""
    parsed = try_parse_date(date_str)
    if parsed is None:
        return None
    if "T" in str(date_str):
        return parsed.strftime("%Y%m%dT%H%M%SZ")
    return parsed.strftime("%Y%m%d")


def add_dtstart(recurrence: str, source_date: str | None) -> str:
    """Embed an anchor only if the rule has none yet."""
    if not recurrence or "DTSTART:" in recurrence:
        return recurrence
    dtstart = format_dtstart_value(source_date)
    if not dtstart:
        return recurrence
    return f"DTSTART:{dtstart};{recurrence}"


def update_dtstart(recurrence: str, date_str: str | None) -> str:
    """Rewrite (or add) the embedded anchor."""
    if not recurrence:
        return recurrence
    dtstart = format_dtstart_value(date_str)
    if not dtstart:
        return recurrence
    if "DTSTART:" in recurrence:
        return DTSTART_RE.sub(
            lambda m: f"DTSTART:{dtstart}" + (";" if m.group(0).endswith(";") else ""),
            recurrence,
            count=1,
        )
    return f"DTSTART:{dtstart};{recurrence}"


def _utc_until(rule_part: str) -> str:
    # dateutil requires UNTIL in UTC when DTSTART is timezone-aware
    rule_part = _UNTIL_DATE_RE.sub(r"UNTIL=\1T235959Z", rule_part)
    return _UNTIL_FLOATING_RE.sub(r"UNTIL=\1Z", rule_part)


def fast_forward_anchor(rule_part: str, dtstart: datetime, reference: datetime | None) -> datetime:
    """
    Latest anchor at or before reference that lies a whole number of periods after dtstart.

    For fixed-length frequencies without COUNT the occurrences from that point on are the
    same as from dtstart, so a search can begin next to reference instead of at the origin.
    """
    if reference is None or reference <= dtstart:
        return dtstart
    params = {k.upper(): v.strip() for k, v in _RULE_PARAM_RE.findall(rule_part)}
    step = _FIXED_STEPS.get(params.get("FREQ", "").upper())
    if step is None or "COUNT" in params:
        return dtstart
    try:
        interval = int(params.get("INTERVAL") or 1)
    except ValueError:
        return dtstart
    step *= max(1, interval)
    return dtstart + step * ((reference - dtstart) // step)


def build_rule(
    recurrence: str,
    source_date: str | None,
    tz: tzinfo = timezone.utc,
    not_before: datetime | None = None,
) -> rrule | None:
    """
    dateutil rule for the frequency portion, anchored at the embedded DTSTART
    (else source_date). None when the rule has no FREQ token or does not parse.
    With not_before, the anchor is moved forward where that leaves later occurrences unchanged.
    """
    anchor, rule_part = split_rule(recurrence)
    if "FREQ=" not in rule_part.upper():
        return None
    dtstart = parse_dtstart_value(anchor, tz) or try_parse_date(source_date)
    if dtstart is None:
        logger.debug("Recurrence %r has no usable anchor", recurrence)
        return None
    dtstart = fast_forward_anchor(rule_part, dtstart, not_before)
    try:
        rule = rrulestr(_utc_until(rule_part), dtstart=dtstart)
    except (ValueError, TypeError, KeyError) as e:
        logger.debug("Unparseable recurrence %r: %s", recurrence, e)
        return None
    return rule if isinstance(rule, rrule) else None


def next_occurrence(
    recurrence: str,
    source_date: str | None,
    reference: datetime,
    inclusive: bool,
    tz: tzinfo = timezone.utc,
) -> datetime | None:
    """
    First occurrence at (inclusive) or strictly after reference.
    None when the rule is inert, the series has ended, or the scan cap is hit.
    tz is the frame date-only anchors are read in.
    """
    rule = build_rule(recurrence, source_date, tz, not_before=reference)
    if rule is None:
        return None
    for scanned, occurrence in enumerate(rule):
        if occurrence > reference or (inclusive and occurrence == reference):
            return occurrence
        if scanned + 1 >= MAX_OCCURRENCE_SCAN:
            logger.warning("Occurrence search exhausted for %r after %s occurrences", recurrence, MAX_OCCURRENCE_SCAN)
            return None
    return None


def instance_date(dt: datetime, tz: tzinfo) -> str:
    """Calendar date of dt as seen in tz."""
    return dt.astimezone(tz).date().isoformat()


def format_like_existing(existing: str | None, dt: datetime) -> str:
    """
    Date of dt, keeping the time part of existing when existing is a date-time.
    The date is taken in existing's own offset so the local time part still matches it.
    """
    if existing and "T" in existing:
        return f"{instance_date(dt, value_offset(existing))}T{existing.split('T', 1)[1]}"
    return format_date_utc(dt)


def compute_next_due(due: str | None, scheduled: str | None, next_scheduled: datetime) -> str | None:
    """Shift due by the original (due - scheduled) offset. Needs both originals."""
    if not due or not scheduled:
        return None
    original_due = try_parse_date(due)
    original_scheduled = try_parse_date(scheduled)
    if original_due is None or original_scheduled is None:
        return None
    return format_like_existing(due, next_scheduled + (original_due - original_scheduled))


def _recalculate(
    recurrence: str,
    *,
    anchor: str | None,
    scheduled: str | None,
    due: str | None,
    date_created: str | None,
    complete_instances: list[str],
    skipped_instances: list[str],
    reference_date: str,
    completion_date: str | None = None,
) -> ScheduleResult:
    mode = ANCHOR_COMPLETION if anchor == ANCHOR_COMPLETION else ANCHOR_SCHEDULED
    source_date = scheduled or date_created or reference_date
    updated = recurrence

    if mode == ANCHOR_COMPLETION:
        if completion_date:
            updated = update_dtstart(updated, completion_date)
    else:
        updated = add_dtstart(updated, source_date)

    # Instance dates, the reference day and date-only anchors are all read in the schedule's own offset
    frame = value_offset(scheduled)
    day = date.fromisoformat(reference_date)
    reference_day = datetime(day.year, day.month, day.day, tzinfo=frame)
    start = (try_parse_date(scheduled) if mode == ANCHOR_SCHEDULED else None) or reference_day
    # Never offer anything before the reference day itself
    if start < reference_day:
        start = reference_day

    processed = set(complete_instances) | set(skipped_instances)
    candidate = next_occurrence(updated, source_date, start, inclusive=True, tz=frame)
    for _ in range(MAX_SKIP_ITERATIONS):
        if candidate is None or instance_date(candidate, frame) not in processed:
            break
        candidate = next_occurrence(updated, source_date, candidate, inclusive=False, tz=frame)
    else:
        logger.warning("Every candidate within %s steps is already resolved for %r", MAX_SKIP_ITERATIONS, recurrence)
        candidate = None

    if candidate is None:
        return ScheduleResult(updated, None, None)
    return ScheduleResult(
        updated_recurrence=updated,
        next_scheduled=format_like_existing(scheduled, candidate),
        next_due=compute_next_due(due, scheduled, candidate),
    )


def advance_on_completion(
    recurrence: str,
    completion_date: str,
    *,
    anchor: str | None = None,
    scheduled: str | None = None,
    due: str | None = None,
    date_created: str | None = None,
    complete_instances: list[str] | None = None,
    skipped_instances: list[str] | None = None,
) -> CompletionResult:
    """
    Record completion_date as a completed instance and compute the next schedule.
    next_scheduled is None when the series has no further occurrence; the caller then
    completes the task for good.
    """
    validate_date_string(completion_date)
    done, skipped = mark_complete(complete_instances or [], skipped_instances or [], completion_date)
    schedule = _recalculate(
        recurrence,
        anchor=anchor,
        scheduled=scheduled,
        due=due,
        date_created=date_created,
        complete_instances=done,
        skipped_instances=skipped,
        reference_date=completion_date,
        completion_date=completion_date,
    )
    return CompletionResult(
        updated_recurrence=schedule.updated_recurrence,
        next_scheduled=schedule.next_scheduled,
        next_due=schedule.next_due,
        complete_instances=done,
        skipped_instances=skipped,
    )


def recalculate_schedule(
    recurrence: str,
    reference_date: str,
    *,
    anchor: str | None = None,
    scheduled: str | None = None,
    due: str | None = None,
    date_created: str | None = None,
    complete_instances: list[str] | None = None,
    skipped_instances: list[str] | None = None,
) -> ScheduleResult:
    """Realign scheduled/due after the instance sets changed (skip/unskip). Does not touch the sets."""
    validate_date_string(reference_date)
    return _recalculate(
        recurrence,
        anchor=anchor,
        scheduled=scheduled,
        due=due,
        date_created=date_created,
        complete_instances=instance_list(complete_instances or []),
        skipped_instances=instance_list(skipped_instances or []),
        reference_date=reference_date,
    )


def schedule_inputs(task: Mapping[str, Any]) -> dict[str, Any]:
    """Keyword arguments for advance_on_completion / recalculate_schedule from a normalized task."""

    def text(key: str) -> str | None:
        value = task.get(key)
        return value if isinstance(value, str) and value.strip() else None

    return {
        "anchor": text("recurrenceAnchor"),
        "scheduled": text("scheduled"),
        "due": text("due"),
        "date_created": text("dateCreated"),
        "complete_instances": instance_list(task.get("completeInstances")),
        "skipped_instances": instance_list(task.get("skippedInstances")),
    }
