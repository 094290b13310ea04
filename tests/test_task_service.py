# tests/test_task_service.py

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

import task_service
from collection import Collection, render_document
from date_utils import InvalidDateError
from task_resolver import AmbiguousTaskError, TaskNotFoundError

WriteTask = Callable[..., str]


def _read(root: Path, rel_path: str) -> dict[str, Any]:
    return Collection.open(root).read(rel_path).frontmatter


@pytest.fixture()
def weekly_review(write_task: WriteTask) -> str:
    return write_task(
        "tasks/Weekly review.md",
        {
            "title": "Weekly review",
            "status": "open",
            "recurrence": "FREQ=WEEKLY;BYDAY=MO",
            "scheduled": "2024-01-01",
            "due": "2024-01-03",
        },
    )


# --- create / show ---


def test_create_task_from_text(collection_root: Path) -> None:
    result = task_service.create_task("Buy milk #home @store !high -- 2 litres")
    assert result.path == "tasks/Buy milk.md"
    assert result.task["title"] == "Buy milk"

    fm = _read(collection_root, result.path)
    assert fm["priority"] == "high"
    assert fm["status"] == "open"
    assert fm["tags"] == ["task", "home"]
    assert fm["contexts"] == ["store"]
    assert Collection.open(collection_root).read(result.path).body == "2 litres"


def test_create_requires_text(collection_root: Path) -> None:
    with pytest.raises(ValueError):
        task_service.create_task("   ")
    with pytest.raises(ValueError):
        task_service.create_task("#onlytags")


def test_show_task_by_title(collection_root: Path, write_task: WriteTask) -> None:
    write_task("tasks/Pay rent.md", {"title": "Pay rent", "status": "open"}, "Landlord account")
    result = task_service.show_task("Pay rent")
    assert result.path == "tasks/Pay rent.md"
    assert result.message == "Pay rent"
    assert result.body == "Landlord account"
    assert not result.changed


def test_unknown_and_ambiguous_references(collection_root: Path, write_task: WriteTask) -> None:
    write_task("tasks/Plan sprint.md", {"title": "Plan sprint"})
    write_task("tasks/Planning review.md", {"title": "Planning review"})
    with pytest.raises(TaskNotFoundError):
        task_service.show_task("nothing like this")
    with pytest.raises(AmbiguousTaskError):
        task_service.complete_task("plan", date="2024-01-01")


# --- completion ---


def test_complete_one_shot_task(collection_root: Path, write_task: WriteTask) -> None:
    path = write_task("tasks/Buy milk.md", {"title": "Buy milk", "status": "open"})
    result = task_service.complete_task("Buy milk", date="2024-01-05")
    assert result.changed
    assert result.message == "Completed: Buy milk"

    fm = _read(collection_root, path)
    assert fm["status"] == "done"
    assert fm["completedDate"] == "2024-01-05"

    again = task_service.complete_task("Buy milk", date="2024-01-06")
    assert not again.changed
    assert "already completed" in again.message
    assert _read(collection_root, path)["completedDate"] == "2024-01-05"


def test_invalid_date_rejected_before_opening_collection(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Not a collection: any I/O would raise CollectionError instead
    monkeypatch.setenv("MDTASKS_PATH", str(tmp_path / "missing"))
    with pytest.raises(InvalidDateError):
        task_service.complete_task("Anything", date="2024-13-01")
    with pytest.raises(InvalidDateError):
        task_service.skip_task("Anything", date="tomorrow")
    with pytest.raises(InvalidDateError):
        task_service.update_task("Anything", due="next tuesday")


def test_complete_recurring_advances_schedule(collection_root: Path, weekly_review: str) -> None:
    result = task_service.complete_task("Weekly review", date="2024-01-01")
    assert result.message == "Completed recurring instance: Weekly review → next 2024-01-08"

    fm = _read(collection_root, weekly_review)
    assert fm["status"] == "open"
    assert fm["scheduled"] == "2024-01-08"
    assert fm["due"] == "2024-01-10"
    assert fm["completeInstances"] == ["2024-01-01"]
    assert fm["recurrence"] == "DTSTART:20240101;FREQ=WEEKLY;BYDAY=MO"

    again = task_service.complete_task("Weekly review", date="2024-01-01")
    assert not again.changed
    assert _read(collection_root, weekly_review)["completeInstances"] == ["2024-01-01"]


def test_recurring_series_end_completes_task(collection_root: Path, write_task: WriteTask) -> None:
    path = write_task(
        "tasks/Course.md",
        {"title": "Course", "status": "open", "recurrence": "FREQ=DAILY;COUNT=1", "scheduled": "2024-01-01"},
    )
    task_service.complete_task("Course", date="2024-01-01")
    fm = _read(collection_root, path)
    assert fm["status"] == "done"
    assert fm["completedDate"] == "2024-01-01"
    assert fm["completeInstances"] == ["2024-01-01"]


def test_skip_and_unskip(collection_root: Path, weekly_review: str) -> None:
    skipped = task_service.skip_task("Weekly review", date="2024-01-01")
    assert skipped.message == "Skipped recurring instance (2024-01-01): Weekly review → next 2024-01-08"
    fm = _read(collection_root, weekly_review)
    assert fm["skippedInstances"] == ["2024-01-01"]
    assert fm["scheduled"] == "2024-01-08"
    assert fm["due"] == "2024-01-10"

    assert not task_service.skip_task("Weekly review", date="2024-01-01").changed

    task_service.unskip_task("Weekly review", date="2024-01-01")
    fm = _read(collection_root, weekly_review)
    assert fm["skippedInstances"] == []
    assert fm["completeInstances"] == []

    assert not task_service.unskip_task("Weekly review", date="2024-01-01").changed


def test_skip_then_complete_next(collection_root: Path, weekly_review: str) -> None:
    task_service.complete_task("Weekly review", date="2024-01-01")
    task_service.skip_task("Weekly review", date="2024-01-08")
    fm = _read(collection_root, weekly_review)
    assert fm["scheduled"] == "2024-01-15"
    assert fm["due"] == "2024-01-17"
    assert fm["completeInstances"] == ["2024-01-01"]
    assert fm["skippedInstances"] == ["2024-01-08"]


def test_skip_requires_recurring_task(collection_root: Path, write_task: WriteTask) -> None:
    write_task("tasks/Once.md", {"title": "Once", "status": "open"})
    with pytest.raises(ValueError, match="only supported for recurring"):
        task_service.skip_task("Once", date="2024-01-01")


def test_filename_title_mode(collection_root: Path, write_task: WriteTask) -> None:
    path = write_task("tasks/Water plants.md", {"status": "open"})
    assert task_service.show_task("Water plants").message == "Water plants"
    result = task_service.complete_task("Water plants", date="2024-01-02")
    assert result.message == "Completed: Water plants"
    assert _read(collection_root, path)["status"] == "done"


def test_mapped_field_names(collection_root: Path) -> None:
    task_type = {
        "name": "task",
        "path_pattern": "tasks/{name}.md",
        "fields": {
            "name": {"type": "string", "tn_role": "title"},
            "state": {
                "type": "enum",
                "values": ["todo", "finished"],
                "default": "todo",
                "tn_role": "status",
                "tn_completed_values": ["finished"],
            },
            "deadline": {"type": "date", "tn_role": "due"},
        },
    }
    (collection_root / "_types" / "task.md").write_text(render_document(task_type), encoding="utf-8")

    created = task_service.create_task("Renew passport due 2024-06-01")
    assert created.path == "tasks/Renew passport.md"
    fm = _read(collection_root, created.path)
    assert fm["name"] == "Renew passport"
    assert fm["deadline"] == "2024-06-01"
    assert fm["state"] == "todo"

    task_service.complete_task("Renew passport", date="2024-05-30")
    assert _read(collection_root, created.path)["state"] == "finished"
    assert task_service.list_tasks(on="2024-05-30").tasks == []


# --- update / archive ---


def test_update_task_fields(collection_root: Path, write_task: WriteTask) -> None:
    path = write_task("tasks/Report.md", {"title": "Report", "status": "open", "tags": ["task", "work"]})
    result = task_service.update_task(
        "Report",
        priority="high",
        due="2024-02-01",
        add_tags=["urgent"],
        remove_tags=["work"],
        add_contexts=["desk"],
    )
    assert result.message == "Updated: Report"
    fm = _read(collection_root, path)
    assert fm["priority"] == "high"
    assert fm["due"] == "2024-02-01"
    assert fm["tags"] == ["task", "urgent"]
    assert fm["contexts"] == ["desk"]
    assert "dateModified" in fm


def test_update_rejects_empty_and_bad_input(collection_root: Path, write_task: WriteTask) -> None:
    write_task("tasks/Report.md", {"title": "Report"})
    with pytest.raises(ValueError, match="No fields to update"):
        task_service.update_task("Report")
    with pytest.raises(ValueError):
        task_service.update_task("Report", recurrence_anchor="sometimes")


def test_archive_task(collection_root: Path, write_task: WriteTask) -> None:
    path = write_task("tasks/Old.md", {"title": "Old", "tags": ["task"]})
    assert task_service.archive_task("Old").changed
    assert _read(collection_root, path)["tags"] == ["task", "archive"]
    assert not task_service.archive_task("Old").changed


# --- list / search / stats ---


@pytest.fixture()
def mixed_tasks(write_task: WriteTask) -> None:
    write_task("tasks/A.md", {"title": "A", "status": "open", "priority": "high", "due": "2024-01-10", "tags": ["work"]})
    write_task("tasks/B.md", {"title": "B", "status": "done", "due": "2024-01-01"})
    write_task("tasks/C.md", {"title": "C", "status": "open", "due": "2024-01-02", "tags": ["home"]})
    write_task("tasks/D.md", {"title": "D", "status": "in-progress"})
    write_task(
        "tasks/E.md",
        {
            "title": "E",
            "status": "open",
            "recurrence": "DTSTART:20240101;FREQ=DAILY",
            "scheduled": "2024-01-06",
            "completeInstances": ["2024-01-05"],
        },
    )


def _titles(listing: task_service.TaskListing) -> list[str]:
    return [t["title"] for t in listing.tasks]


def test_list_default_hides_completed_and_orders_by_due(collection_root: Path, mixed_tasks: None) -> None:
    listing = task_service.list_tasks(on="2024-01-06")
    assert _titles(listing) == ["C", "A", "D", "E"]
    assert listing.as_of == "2024-01-06"
    assert all(t["instanceState"] == "open" for t in listing.tasks)


def test_list_uses_instance_overlay(collection_root: Path, mixed_tasks: None) -> None:
    assert "E" not in _titles(task_service.list_tasks(on="2024-01-05"))
    done = task_service.list_tasks(status="done", on="2024-01-05")
    assert sorted(_titles(done)) == ["B", "E"]


def test_list_filters(collection_root: Path, mixed_tasks: None) -> None:
    assert _titles(task_service.list_tasks(priority="high")) == ["A"]
    assert _titles(task_service.list_tasks(tag="home")) == ["C"]
    assert _titles(task_service.list_tasks(status="in-progress")) == ["D"]
    assert _titles(task_service.list_tasks(due="2024-01-10")) == ["A"]
    assert _titles(task_service.list_tasks(overdue=True, on="2024-01-05")) == ["C"]
    assert _titles(task_service.list_tasks(where='file.basename == "B"')) == ["B"]


def test_list_limit_reports_more(collection_root: Path, mixed_tasks: None) -> None:
    listing = task_service.list_tasks(limit=2, on="2024-01-06")
    assert len(listing.tasks) == 2
    assert listing.has_more


def test_list_rejects_bad_dates(collection_root: Path) -> None:
    with pytest.raises(InvalidDateError):
        task_service.list_tasks(on="Jan 5")
    with pytest.raises(InvalidDateError):
        task_service.list_tasks(due="someday")


def test_search_weights(collection_root: Path, write_task: WriteTask) -> None:
    write_task("tasks/Notes.md", {"title": "Notes"}, "remember the garden hose")
    write_task("tasks/Garden.md", {"title": "Garden cleanup", "tags": ["garden"]})
    write_task("tasks/Other.md", {"title": "Other"})
    results = task_service.search_tasks("garden")
    assert [r["title"] for r in results] == ["Garden cleanup", "Notes"]
    with pytest.raises(ValueError):
        task_service.search_tasks("  ")


def test_task_stats(collection_root: Path, mixed_tasks: None) -> None:
    stats = task_service.task_stats()
    assert stats["total"] == 5
    assert stats["completed"] == 1
    assert stats["completion_rate"] == 20
    assert stats["by_status"] == {"done": 1, "in-progress": 1, "open": 3}
    # A and C; B is done, D and E have no due date
    assert stats["overdue"] == 2


# --- delete ---


def test_delete_task(collection_root: Path, write_task: WriteTask) -> None:
    path = write_task("tasks/Old errand.md", {"title": "Old errand"})
    result = task_service.delete_task("Old errand")
    assert result.message == "Deleted: Old errand"
    assert result.path == path
    assert not (collection_root / path).exists()
    with pytest.raises(TaskNotFoundError):
        task_service.delete_task("Old errand")


def test_delete_refuses_linked_task_unless_forced(collection_root: Path, write_task: WriteTask) -> None:
    target = write_task("tasks/Book venue.md", {"title": "Book venue"})
    write_task("tasks/Send invites.md", {"title": "Send invites", "blockedBy": ["[[Book venue]]"]})
    write_task("tasks/Plan party.md", {"title": "Plan party"}, "First [[tasks/Book venue|the venue]], then invites.")

    with pytest.raises(ValueError, match="linked from 2 document") as exc_info:
        task_service.delete_task("Book venue")
    assert "tasks/Plan party.md" in str(exc_info.value)
    assert "tasks/Send invites.md" in str(exc_info.value)
    assert (collection_root / target).exists()

    task_service.delete_task("tasks/Book venue.md", force=True)
    assert not (collection_root / target).exists()


# --- projects ---


@pytest.fixture()
def project_tasks(write_task: WriteTask) -> None:
    write_task("tasks/Draft chapter.md", {"title": "Draft chapter", "status": "open", "projects": ["[[projects/Book|My book]]"]})
    write_task("tasks/Pick cover.md", {"title": "Pick cover", "status": "done", "projects": ["[[Book]]", "Website"]})
    write_task("tasks/Fix footer.md", {"title": "Fix footer", "status": "open", "projects": ["Website"]})
    write_task("tasks/Loose end.md", {"title": "Loose end", "status": "open"})


def test_list_projects_counts(collection_root: Path, project_tasks: None) -> None:
    assert task_service.list_projects() == [
        {"name": "Book", "total": 2, "open": 1, "done": 1, "completion_rate": 50},
        {"name": "Website", "total": 2, "open": 1, "done": 1, "completion_rate": 50},
    ]


def test_show_project_matches_case_insensitively(collection_root: Path, project_tasks: None) -> None:
    assert [t["title"] for t in task_service.show_project("book")] == ["Draft chapter", "Pick cover"]
    assert [t["title"] for t in task_service.show_project("+Website")] == ["Fix footer", "Pick cover"]
    assert task_service.show_project("Garden") == []
    with pytest.raises(ValueError):
        task_service.show_project(" ")


# --- time tracking ---


def test_timer_lifecycle(collection_root: Path, write_task: WriteTask) -> None:
    path = write_task("tasks/Focus.md", {"title": "Focus"})
    started = task_service.start_timer("Focus", description="deep work")
    assert started.message == "Timer started for: Focus"
    with pytest.raises(ValueError, match="already running"):
        task_service.start_timer("Focus")

    active = task_service.timer_status()
    assert [t["path"] for t in active] == [path]

    stopped = task_service.stop_timer()
    assert stopped.message.startswith("Timer stopped for: Focus")
    entries = _read(collection_root, path)["timeEntries"]
    assert entries[0]["description"] == "deep work"
    assert entries[0]["endTime"]
    assert entries[0]["duration"] == 0

    assert task_service.timer_status() == []
    with pytest.raises(ValueError, match="No running timer"):
        task_service.stop_timer()

    log = task_service.timer_log()
    assert len(log["entries"]) == 1
    assert log["total_minutes"] == 0


def test_timer_log_date_range(collection_root: Path, write_task: WriteTask) -> None:
    write_task(
        "tasks/Past.md",
        {
            "title": "Past",
            "timeEntries": [
                {"startTime": "2024-01-01T09:00:00Z", "endTime": "2024-01-01T10:30:00Z", "duration": 90},
                {"startTime": "2024-01-03T09:00:00Z", "endTime": "2024-01-03T09:45:00Z"},
            ],
        },
    )
    log = task_service.timer_log(date_from="2024-01-01", date_to="2024-01-02")
    assert [e["minutes"] for e in log["entries"]] == [90]
    assert task_service.timer_log()["total_minutes"] == 135
    with pytest.raises(ValueError):
        task_service.timer_log(period="month")


def test_format_duration() -> None:
    assert task_service.format_duration(45) == "45m"
    assert task_service.format_duration(120) == "2h"
    assert task_service.format_duration(135) == "2h 15m"
