"""HTTP API for mdtasks: task commands over a Markdown task collection."""
from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from collection import CollectionError
from config import AppConfig, load as load_config
from date_utils import InvalidDateError
from task_resolver import AmbiguousTaskError, TaskNotFoundError

import task_service

app = FastAPI(title="mdtasks", version="0.1.0")
logger = logging.getLogger("mdtasks.api")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """When config.debug is True, log API request method and path."""
    try:
        debug = load_config().debug
    except Exception:
        debug = False
    if debug:
        qs = request.url.query
        logger.warning("[API] %s %s%s", request.method, request.url.path, "?" + qs if qs else "")
    response = await call_next(request)
    if debug:
        logger.warning("[API] %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a service call and translate its errors into HTTP status codes."""
    try:
        return fn(*args, **kwargs)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AmbiguousTaskError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "candidates": [{"path": c.path, "title": c.title} for c in e.candidates]},
        )
    except InvalidDateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CollectionError as e:
        logger.exception("%s failed", getattr(fn, "__name__", "call"))
        raise HTTPException(status_code=500, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _result(result: task_service.CommandResult) -> dict[str, Any]:
    return {
        "message": result.message,
        "path": result.path,
        "changed": result.changed,
        "task": result.task,
        "body": result.body,
    }


# --- API schemas ---


class CreateTaskBody(BaseModel):
    text: str


class UpdateTaskBody(BaseModel):
    status: str | None = None
    priority: str | None = None
    due: str | None = None
    scheduled: str | None = None
    title: str | None = None
    recurrence: str | None = None
    recurrence_anchor: str | None = None
    add_tags: list[str] = Field(default_factory=list)
    remove_tags: list[str] = Field(default_factory=list)
    add_contexts: list[str] = Field(default_factory=list)
    remove_contexts: list[str] = Field(default_factory=list)


class DateBody(BaseModel):
    date: str | None = None


class TimerStartBody(BaseModel):
    description: str | None = None


# --- Config ---


@app.get("/api/config", response_model=AppConfig)
def get_config() -> AppConfig:
    return load_config()


@app.put("/api/config")
def put_config(body: AppConfig) -> dict[str, str]:
    body.save()
    return {"status": "saved"}


# --- Tasks ---


@app.get("/api/tasks")
def api_list_tasks(
    status: str | None = None,
    priority: str | None = None,
    tag: str | None = None,
    due: str | None = None,
    overdue: bool = False,
    where: str | None = None,
    on: str | None = None,
    limit: int | None = None,
):
    listing = _call(
        task_service.list_tasks,
        status=status,
        priority=priority,
        tag=tag,
        due=due,
        overdue=overdue,
        where=where,
        on=on,
        limit=limit,
    )
    return {"tasks": listing.tasks, "has_more": listing.has_more, "as_of": listing.as_of}


@app.post("/api/tasks", status_code=201)
def api_create_task(body: CreateTaskBody):
    return _result(_call(task_service.create_task, body.text))


@app.get("/api/tasks/resolve")
def api_resolve_task(ref: str):
    result = _call(task_service.show_task, ref)
    return {"path": result.path, "title": result.message}


@app.get("/api/tasks/search")
def api_search_tasks(q: str, limit: int | None = None):
    return _call(task_service.search_tasks, q, limit=limit)


@app.get("/api/stats")
def api_stats():
    return _call(task_service.task_stats)


@app.post("/api/tasks/{ref:path}/complete")
def api_complete_task(ref: str, body: DateBody | None = None):
    return _result(_call(task_service.complete_task, ref, date=body.date if body else None))


@app.post("/api/tasks/{ref:path}/skip")
def api_skip_task(ref: str, body: DateBody | None = None):
    return _result(_call(task_service.skip_task, ref, date=body.date if body else None))


@app.post("/api/tasks/{ref:path}/unskip")
def api_unskip_task(ref: str, body: DateBody | None = None):
    return _result(_call(task_service.unskip_task, ref, date=body.date if body else None))


@app.post("/api/tasks/{ref:path}/archive")
def api_archive_task(ref: str):
    return _result(_call(task_service.archive_task, ref))


@app.post("/api/tasks/{ref:path}/timer/start")
def api_start_timer(ref: str, body: TimerStartBody | None = None):
    return _result(_call(task_service.start_timer, ref, description=body.description if body else None))


@app.get("/api/tasks/{ref:path}")
def api_get_task(ref: str):
    return _result(_call(task_service.show_task, ref))


@app.put("/api/tasks/{ref:path}")
def api_update_task(ref: str, body: UpdateTaskBody):
    return _result(_call(task_service.update_task, ref, **body.model_dump()))


@app.delete("/api/tasks/{ref:path}")
def api_delete_task(ref: str, force: bool = False):
    return _result(_call(task_service.delete_task, ref, force=force))


# --- Projects ---


@app.get("/api/projects")
def api_list_projects():
    return _call(task_service.list_projects)


@app.get("/api/projects/{name}")
def api_show_project(name: str):
    return {"name": name, "tasks": _call(task_service.show_project, name)}


# --- Timers ---


@app.post("/api/timer/stop")
def api_stop_timer():
    return _result(_call(task_service.stop_timer))


@app.get("/api/timer")
def api_timer_status():
    return _call(task_service.timer_status)


@app.get("/api/timer/log")
def api_timer_log(period: str | None = None, date_from: str | None = None, date_to: str | None = None):
    return _call(task_service.timer_log, period=period, date_from=date_from, date_to=date_to)


if __name__ == "__main__":
    from run import serve
    serve()
