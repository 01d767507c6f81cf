"""HTTP API for cadence: tasks, tags, recurrence rules and their instances."""
from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import load as load_config
from date_utils import resolve_datetime_input
from instance_store import StorageFailure

app = FastAPI(title="Cadence", version="1.0")
logger = logging.getLogger("cadence.api")

# Task fields whose change must be copied into not-yet-edited future instances
_SNAPSHOT_FIELDS = ("title", "description", "priority", "start_datetime")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """When config.debug is True, log API request method and path."""
    debug = load_config().debug
    if debug:
        qs = request.url.query
        logger.warning("[API] %s %s%s", request.method, request.url.path, "?" + qs if qs else "")
    response = await call_next(request)
    if debug:
        logger.warning("[API] %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure):
    logger.error("[API] storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


def _tz() -> str:
    return load_config().user_timezone or "UTC"


def _datetime_field(body: dict, key: str) -> str | None:
    try:
        return resolve_datetime_input(body.get(key), _tz())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"{key}: {e}") from e


# --- API schemas ---


class ConfigUpdate(BaseModel):
    debug: bool = False
    database_path: str = ""
    generation_horizon_days: int = Field(90, ge=1, le=3650)
    user_timezone: str = "UTC"
    web_ui_port: int = Field(8081, ge=1, le=65535)


class TaskCreate(BaseModel):
    title: str
    start_datetime: str
    description: str | None = None
    deadline_datetime: str | None = None
    priority: str | None = None
    status: str | None = None
    tag_ids: list[str] = Field(default_factory=list)


class TagCreate(BaseModel):
    name: str
    color: str | None = None


class StatusUpdate(BaseModel):
    status: str


# --- Config ---


@app.get("/api/config", response_model=ConfigUpdate)
def get_config() -> ConfigUpdate:
    return ConfigUpdate(**load_config().to_save_dict())


@app.put("/api/config")
def put_config(body: ConfigUpdate) -> dict[str, str]:
    c = load_config()
    c.debug = body.debug
    c.database_path = body.database_path
    c.generation_horizon_days = body.generation_horizon_days
    c.user_timezone = body.user_timezone or "UTC"
    c.web_ui_port = body.web_ui_port
    c.save()
    return {"status": "saved"}


# --- Tasks ---


@app.post("/api/tasks", status_code=201)
def create_task(body: TaskCreate):
    from task_service import create_task as svc_create_task
    raw = body.model_dump()
    try:
        return svc_create_task(
            body.title,
            _datetime_field(raw, "start_datetime"),
            description=body.description,
            deadline_datetime=_datetime_field(raw, "deadline_datetime"),
            priority=body.priority,
            status=body.status,
            tag_ids=body.tag_ids,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/tasks")
def list_tasks(
    status: str | None = None,
    priority: str | None = None,
    tag_ids: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    search: str | None = None,
    include_archived: bool = False,
    limit: int = 500,
):
    """List tasks. status, priority and tag_ids take comma-separated values."""
    from task_service import list_tasks as svc_list_tasks

    def split(v: str | None) -> list[str] | None:
        return [p.strip() for p in v.split(",") if p.strip()] if v else None

    try:
        return svc_list_tasks(
            status=split(status),
            priority=split(priority),
            tag_ids=split(tag_ids),
            date_from=date_from,
            date_to=date_to,
            search=search,
            include_archived=include_archived,
            limit=min(max(1, limit), 1000),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/tasks/{task_id}")
def get_task(task_id: str):
    from task_service import get_task as svc_get_task
    t = svc_get_task(task_id)
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


@app.put("/api/tasks/{task_id}")
def update_task(task_id: str, body: dict):
    from recurrence_service import regenerate
    from task_service import _UNSET, update_task as svc_update_task
    try:
        t = svc_update_task(
            task_id,
            title=body.get("title"),
            description=body["description"] if "description" in body else _UNSET,
            start_datetime=_datetime_field(body, "start_datetime") if body.get("start_datetime") else None,
            deadline_datetime=_datetime_field(body, "deadline_datetime") if "deadline_datetime" in body else _UNSET,
            priority=body.get("priority"),
            status=body.get("status"),
            is_archived=body.get("is_archived"),
            tag_ids=body.get("tag_ids"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    if any(k in body for k in _SNAPSHOT_FIELDS) and t.get("recurrence"):
        regenerate(task_id)
        from task_service import get_task as svc_get_task
        t = svc_get_task(task_id)
    return t


@app.patch("/api/tasks/{task_id}/status")
def update_task_status(task_id: str, body: StatusUpdate):
    from task_service import update_task_status as svc_update_task_status
    try:
        t = svc_update_task_status(task_id, body.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


@app.delete("/api/tasks/{task_id}")
def delete_task(task_id: str):
    from task_service import delete_task as svc_delete_task
    if not svc_delete_task(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "deleted"}


@app.delete("/api/tasks/{task_id}/hard")
def hard_delete_task(task_id: str):
    from task_service import hard_delete_task as svc_hard_delete_task
    if not svc_hard_delete_task(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "deleted"}


@app.post("/api/tasks/{task_id}/duplicate", status_code=201)
def duplicate_task(task_id: str):
    from task_service import duplicate_task as svc_duplicate_task
    t = svc_duplicate_task(task_id)
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


# --- Tags ---


@app.get("/api/tags")
def list_tags():
    from tag_service import list_tags as svc_list_tags
    return svc_list_tags()


@app.post("/api/tags", status_code=201)
def create_tag(body: TagCreate):
    from tag_service import create_tag as svc_create_tag
    try:
        return svc_create_tag(body.name, color=body.color)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/tags/{tag_id}")
def get_tag(tag_id: str):
    from tag_service import get_tag as svc_get_tag
    tag = svc_get_tag(tag_id)
    if tag is None:
        raise HTTPException(status_code=404, detail="Tag not found")
    return tag


@app.put("/api/tags/{tag_id}")
def update_tag(tag_id: str, body: dict):
    from tag_service import update_tag as svc_update_tag
    try:
        tag = svc_update_tag(tag_id, name=body.get("name"), color=body.get("color"))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if tag is None:
        raise HTTPException(status_code=404, detail="Tag not found")
    return tag


@app.delete("/api/tags/{tag_id}")
def delete_tag(tag_id: str):
    from tag_service import delete_tag as svc_delete_tag
    if not svc_delete_tag(tag_id):
        raise HTTPException(status_code=404, detail="Tag not found")
    return {"status": "deleted"}


# --- Recurrence ---


@app.post("/api/tasks/{task_id}/recurrence", status_code=201)
def create_recurrence(task_id: str, body: dict):
    from recurrence_service import create_recurrence as svc_create_recurrence
    try:
        rule = svc_create_recurrence(task_id, body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if rule is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return rule


@app.get("/api/tasks/{task_id}/recurrence")
def get_recurrence(task_id: str):
    from recurrence_service import get_recurrence as svc_get_recurrence
    rule = svc_get_recurrence(task_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Recurrence not found")
    return rule


@app.put("/api/tasks/{task_id}/recurrence")
def update_recurrence(task_id: str, body: dict):
    from recurrence_service import update_recurrence as svc_update_recurrence
    try:
        rule = svc_update_recurrence(task_id, body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if rule is None:
        raise HTTPException(status_code=404, detail="Recurrence not found")
    return rule


@app.delete("/api/tasks/{task_id}/recurrence")
def delete_recurrence(task_id: str):
    from recurrence_service import delete_recurrence as svc_delete_recurrence
    if not svc_delete_recurrence(task_id):
        raise HTTPException(status_code=404, detail="Recurrence not found")
    return {"status": "deleted"}


# --- Instances ---


@app.get("/api/tasks/{task_id}/instances")
def list_instances(task_id: str):
    from instance_store import list_instances as svc_list_instances
    from task_service import get_task as svc_get_task
    if svc_get_task(task_id) is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return svc_list_instances(task_id)


@app.put("/api/instances/{instance_id}")
def update_instance(instance_id: str, body: dict):
    from instance_store import _UNSET, update_instance as svc_update_instance
    try:
        inst = svc_update_instance(
            instance_id,
            title=body.get("title"),
            description=body["description"] if "description" in body else _UNSET,
            priority=body.get("priority"),
            status=body.get("status"),
            scheduled_datetime=_datetime_field(body, "scheduled_datetime") if body.get("scheduled_datetime") else None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if inst is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return inst


@app.delete("/api/instances/{instance_id}")
def delete_instance(instance_id: str):
    from instance_store import delete_instance as svc_delete_instance
    if not svc_delete_instance(instance_id):
        raise HTTPException(status_code=404, detail="Instance not found")
    return {"status": "deleted"}
