# tests/test_recurrence.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import recurrence
from date_utils import InvalidDateError, parse_date_to_utc
from recurrence import (
    ANCHOR_COMPLETION,
    add_dtstart,
    advance_on_completion,
    build_rule,
    compute_next_due,
    fast_forward_anchor,
    format_dtstart_value,
    format_like_existing,
    has_frequency,
    instance_date,
    next_occurrence,
    recalculate_schedule,
    schedule_inputs,
    split_rule,
    update_dtstart,
    value_offset,
)

WEEKLY_MONDAY = "FREQ=WEEKLY;BYDAY=MO"


def _utc(y: int, m: int, d: int, hh: int = 0, mm: int = 0) -> datetime:
    return datetime(y, m, d, hh, mm, tzinfo=timezone.utc)


# --- anchor handling ---


def test_split_rule() -> None:
    assert split_rule("DTSTART:20240101;FREQ=DAILY") == ("20240101", "FREQ=DAILY")
    assert split_rule("FREQ=DAILY") == (None, "FREQ=DAILY")
    assert has_frequency("DTSTART:20240101;FREQ=DAILY")
    assert not has_frequency("DTSTART:20240101;BYDAY=MO")


def test_format_dtstart_value() -> None:
    assert format_dtstart_value("2024-01-01") == "20240101"
    assert format_dtstart_value("2024-01-01T09:30:00+02:00") == "20240101T073000Z"
    assert format_dtstart_value("nonsense") is None


def test_add_dtstart_only_when_missing() -> None:
    assert add_dtstart(WEEKLY_MONDAY, "2024-01-01") == "DTSTART:20240101;FREQ=WEEKLY;BYDAY=MO"
    existing = "DTSTART:20230101;FREQ=DAILY"
    assert add_dtstart(existing, "2024-01-01") == existing


def test_update_dtstart_rewrites_anchor_in_place() -> None:
    assert update_dtstart("DTSTART:20240101;FREQ=DAILY", "2024-02-01") == "DTSTART:20240201;FREQ=DAILY"
    assert update_dtstart("FREQ=DAILY;DTSTART:20240101", "2024-02-01") == "FREQ=DAILY;DTSTART:20240201"
    assert update_dtstart("FREQ=DAILY", "2024-02-01") == "DTSTART:20240201;FREQ=DAILY"


# --- occurrence search ---


def test_inert_rules_build_nothing() -> None:
    assert build_rule("BYDAY=MO", "2024-01-01") is None
    assert build_rule("FREQ=FORTNIGHTLY", "2024-01-01") is None
    assert build_rule(WEEKLY_MONDAY, None) is None


def test_next_occurrence_inclusive_and_exclusive() -> None:
    rule = "DTSTART:20240101;" + WEEKLY_MONDAY
    assert next_occurrence(rule, None, _utc(2024, 1, 1), inclusive=True) == _utc(2024, 1, 1)
    assert next_occurrence(rule, None, _utc(2024, 1, 1), inclusive=False) == _utc(2024, 1, 8)
    assert next_occurrence(rule, None, _utc(2024, 1, 3), inclusive=True) == _utc(2024, 1, 8)


def test_next_occurrence_after_series_end() -> None:
    rule = "DTSTART:20240101;FREQ=DAILY;COUNT=3"
    assert next_occurrence(rule, None, _utc(2024, 1, 3), inclusive=False) is None


def test_next_occurrence_scan_cap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(recurrence, "MAX_OCCURRENCE_SCAN", 5)
    rule = "DTSTART:20240101;FREQ=MONTHLY"
    assert next_occurrence(rule, None, _utc(2025, 1, 1), inclusive=True) is None
    # COUNT pins the series to its origin, so the scan starts there
    counted = "DTSTART:20240101;FREQ=DAILY;COUNT=100"
    assert next_occurrence(counted, None, _utc(2024, 2, 1), inclusive=True) is None


def test_old_anchor_with_short_period_stays_under_scan_cap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(recurrence, "MAX_OCCURRENCE_SCAN", 5)
    hourly = "DTSTART:20130101T000000Z;FREQ=HOURLY"
    assert next_occurrence(hourly, None, _utc(2024, 6, 1, 10, 30), inclusive=True) == _utc(2024, 6, 1, 11)
    minutely = "DTSTART:20240101T000000Z;FREQ=MINUTELY;INTERVAL=7"
    # 2024-03-11T00:00Z is 100800 minutes after the anchor, an exact multiple of 7
    assert next_occurrence(minutely, None, _utc(2024, 3, 11), inclusive=True) == _utc(2024, 3, 11)
    assert next_occurrence(minutely, None, _utc(2024, 3, 11), inclusive=False) == _utc(2024, 3, 11, 0, 7)


def test_fast_forward_keeps_the_series_phase() -> None:
    anchor = _utc(2024, 1, 1)
    assert fast_forward_anchor("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO", anchor, _utc(2024, 1, 24)) == _utc(2024, 1, 15)
    assert fast_forward_anchor("FREQ=DAILY", anchor, _utc(2024, 1, 5, 12)) == _utc(2024, 1, 5)
    assert fast_forward_anchor("FREQ=MONTHLY", anchor, _utc(2024, 6, 1)) == anchor
    assert fast_forward_anchor("FREQ=DAILY;COUNT=10", anchor, _utc(2024, 6, 1)) == anchor
    assert fast_forward_anchor("FREQ=DAILY", anchor, _utc(2023, 6, 1)) == anchor


# --- output shaping ---


def test_format_like_existing_keeps_time_part() -> None:
    assert format_like_existing("2024-01-01", _utc(2024, 1, 8, 9)) == "2024-01-08"
    assert format_like_existing("2024-01-01T09:00:00Z", _utc(2024, 1, 8, 9)) == "2024-01-08T09:00:00Z"


def test_compute_next_due_needs_both_dates() -> None:
    assert compute_next_due("2024-01-03", "2024-01-01", _utc(2024, 1, 8)) == "2024-01-10"
    assert compute_next_due(None, "2024-01-01", _utc(2024, 1, 8)) is None
    assert compute_next_due("2024-01-03", None, _utc(2024, 1, 8)) is None


# --- completion ---


def test_weekly_completion_moves_to_next_monday() -> None:
    result = advance_on_completion(WEEKLY_MONDAY, "2024-01-01", scheduled="2024-01-01")
    assert result.next_scheduled == "2024-01-08"
    assert result.updated_recurrence == "DTSTART:20240101;FREQ=WEEKLY;BYDAY=MO"
    assert result.complete_instances == ["2024-01-01"]
    assert result.skipped_instances == []


def test_due_offset_is_preserved() -> None:
    result = advance_on_completion(WEEKLY_MONDAY, "2024-01-01", scheduled="2024-01-01", due="2024-01-03")
    assert result.next_scheduled == "2024-01-08"
    assert result.next_due == "2024-01-10"
    delta = parse_date_to_utc(result.next_due) - parse_date_to_utc(result.next_scheduled)
    assert delta.total_seconds() == 48 * 3600


def test_due_offset_with_times() -> None:
    result = advance_on_completion(
        WEEKLY_MONDAY,
        "2024-01-01",
        scheduled="2024-01-01T09:00:00Z",
        due="2024-01-03T09:00:00Z",
    )
    assert result.updated_recurrence.startswith("DTSTART:20240101T090000Z;")
    assert result.next_scheduled == "2024-01-08T09:00:00Z"
    assert result.next_due == "2024-01-10T09:00:00Z"


def test_offset_helpers() -> None:
    minus_five = value_offset("2024-01-01T23:30:00-05:00")
    assert minus_five.utcoffset(None) == timedelta(hours=-5)
    assert value_offset("2024-01-01") is timezone.utc
    assert value_offset("2024-01-01T09:00:00Z") is timezone.utc
    assert value_offset("2024-01-01T09:00:00") is timezone.utc
    assert instance_date(_utc(2024, 1, 2, 4, 30), minus_five) == "2024-01-01"
    assert format_like_existing("2024-01-01T23:30:00-05:00", _utc(2024, 1, 9, 4, 30)) == "2024-01-08T23:30:00-05:00"


def test_negative_offset_schedule_moves_a_full_week() -> None:
    result = advance_on_completion(
        "FREQ=WEEKLY",
        "2024-01-01",
        scheduled="2024-01-01T23:30:00-05:00",
        due="2024-01-03T23:30:00-05:00",
    )
    assert result.updated_recurrence == "DTSTART:20240102T043000Z;FREQ=WEEKLY"
    assert result.next_scheduled == "2024-01-08T23:30:00-05:00"
    assert result.next_due == "2024-01-10T23:30:00-05:00"


def test_positive_offset_schedule_moves_a_full_week() -> None:
    result = advance_on_completion(
        "FREQ=WEEKLY",
        "2024-01-01",
        scheduled="2024-01-01T08:00:00+10:00",
        due="2024-01-02T08:00:00+10:00",
    )
    assert result.updated_recurrence == "DTSTART:20231231T220000Z;FREQ=WEEKLY"
    assert result.next_scheduled == "2024-01-08T08:00:00+10:00"
    assert result.next_due == "2024-01-09T08:00:00+10:00"


def test_offset_schedule_skips_local_instance_dates() -> None:
    result = recalculate_schedule(
        "DTSTART:20240102T043000Z;FREQ=DAILY",
        "2024-01-01",
        scheduled="2024-01-01T23:30:00-05:00",
        skipped_instances=["2024-01-01", "2024-01-02"],
    )
    assert result.next_scheduled == "2024-01-03T23:30:00-05:00"


def test_completion_anchor_with_offset_schedule() -> None:
    result = advance_on_completion(
        "FREQ=DAILY",
        "2024-01-05",
        anchor=ANCHOR_COMPLETION,
        scheduled="2024-01-01T23:30:00-05:00",
    )
    assert result.updated_recurrence == "DTSTART:20240105;FREQ=DAILY"
    assert result.next_scheduled == "2024-01-06T23:30:00-05:00"


def test_completion_is_idempotent() -> None:
    first = advance_on_completion(WEEKLY_MONDAY, "2024-01-01", scheduled="2024-01-01")
    second = advance_on_completion(
        first.updated_recurrence,
        "2024-01-01",
        scheduled=first.next_scheduled,
        complete_instances=first.complete_instances,
    )
    assert second.complete_instances == ["2024-01-01"]
    assert second.next_scheduled == "2024-01-08"
    assert second.updated_recurrence == first.updated_recurrence


def test_completion_removes_date_from_skipped() -> None:
    result = advance_on_completion(
        WEEKLY_MONDAY,
        "2024-01-08",
        scheduled="2024-01-08",
        complete_instances=["2024-01-01"],
        skipped_instances=["2024-01-08"],
    )
    assert result.complete_instances == ["2024-01-01", "2024-01-08"]
    assert result.skipped_instances == []
    assert result.next_scheduled == "2024-01-15"


def test_resolved_dates_are_never_offered_again() -> None:
    result = advance_on_completion(
        WEEKLY_MONDAY,
        "2024-01-01",
        scheduled="2024-01-01",
        complete_instances=["2024-01-15"],
        skipped_instances=["2024-01-08"],
    )
    assert result.next_scheduled == "2024-01-22"


def test_malformed_rule_does_not_advance() -> None:
    result = advance_on_completion("BYDAY=MO", "2024-01-01", scheduled="2024-01-01", due="2024-01-03")
    assert result.next_scheduled is None
    assert result.next_due is None
    assert split_rule(result.updated_recurrence)[1] == "BYDAY=MO"


def test_series_end_returns_no_next() -> None:
    result = advance_on_completion(WEEKLY_MONDAY + ";UNTIL=20240105", "2024-01-01", scheduled="2024-01-01")
    assert result.next_scheduled is None
    assert result.complete_instances == ["2024-01-01"]


def test_completion_anchor_restarts_from_completion_date() -> None:
    result = advance_on_completion(
        "DTSTART:20240101;FREQ=DAILY;INTERVAL=3",
        "2024-01-05",
        anchor=ANCHOR_COMPLETION,
        scheduled="2024-01-01",
    )
    assert result.updated_recurrence == "DTSTART:20240105;FREQ=DAILY;INTERVAL=3"
    assert result.next_scheduled == "2024-01-08"


def test_completion_anchor_skips_resolved_dates() -> None:
    result = advance_on_completion(
        "FREQ=DAILY",
        "2024-01-05",
        anchor=ANCHOR_COMPLETION,
        scheduled="2024-01-01",
        skipped_instances=["2024-01-06"],
    )
    assert result.next_scheduled == "2024-01-07"


def test_scheduled_anchor_never_offers_past_dates() -> None:
    # Completing late: the next date is after the completion day, not the stale schedule
    result = advance_on_completion("FREQ=DAILY", "2024-01-10", scheduled="2024-01-01")
    assert result.next_scheduled == "2024-01-11"


def test_skip_loop_cap_means_no_next(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(recurrence, "MAX_SKIP_ITERATIONS", 3)
    result = advance_on_completion(
        "FREQ=DAILY",
        "2024-01-01",
        scheduled="2024-01-01",
        skipped_instances=["2024-01-02", "2024-01-03", "2024-01-04", "2024-01-05"],
    )
    assert result.next_scheduled is None


def test_invalid_completion_date_rejected() -> None:
    with pytest.raises(InvalidDateError):
        advance_on_completion(WEEKLY_MONDAY, "01-01-2024", scheduled="2024-01-01")


# --- skip / unskip realignment ---


def test_recalculate_after_skip() -> None:
    result = recalculate_schedule(
        "DTSTART:20240101;" + WEEKLY_MONDAY,
        "2024-01-08",
        scheduled="2024-01-08",
        due="2024-01-10",
        complete_instances=["2024-01-01"],
        skipped_instances=["2024-01-08"],
    )
    assert result.next_scheduled == "2024-01-15"
    assert result.next_due == "2024-01-17"


def test_schedule_inputs_from_task() -> None:
    task = {
        "recurrence": WEEKLY_MONDAY,
        "recurrenceAnchor": "completion",
        "scheduled": "2024-01-01",
        "due": "",
        "dateCreated": "2023-12-30T10:00:00+00:00",
        "completeInstances": ["2024-01-01", "2024-01-01"],
    }
    assert schedule_inputs(task) == {
        "anchor": "completion",
        "scheduled": "2024-01-01",
        "due": None,
        "date_created": "2023-12-30T10:00:00+00:00",
        "complete_instances": ["2024-01-01"],
        "skipped_instances": [],
    }
