"""
任务 API

提供：
- 创建任务（创建即入队）
- 任务列表 / 详情（运行中的自动化任务附带实时输出）
- 生命周期控制：run / pause / resume / stop / delete
- 当前活动任务
"""

import json

from fastapi import APIRouter, Request
from pydantic import ValidationError
from starlette.responses import JSONResponse

from core.logger import get_logger
from models.task import TaskCreate

router = APIRouter(prefix="/tasks", tags=["tasks"])
_logger = get_logger("api.tasks")


def _not_found(task_id: int) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"任务不存在: {task_id}"})


def _bad_param(name: str, value) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": f"参数 {name} 必须是整数: {value!r}"})


@router.post("")
async def create_task(request: Request):
    """创建任务并加入调度队列"""
    datastore = request.app.state.datastore
    scheduler = request.app.state.scheduler

    try:
        data = TaskCreate.model_validate(await request.json())
    except (json.JSONDecodeError, ValidationError) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    task = await datastore.create_task(data)
    await scheduler.enqueue(task.id)
    _logger.info(f"任务创建: {task.id} type={task.type.value}")
    return task.model_dump(mode="json")


@router.get("")
async def list_tasks(request: Request):
    """列出最近的任务"""
    datastore = request.app.state.datastore
    raw = request.query_params.get("limit", "50")
    try:
        limit = int(raw)
    except ValueError:
        return _bad_param("limit", raw)
    tasks = await datastore.list_tasks(limit=limit)
    return {"tasks": [t.model_dump(mode="json") for t in tasks], "total": len(tasks)}


@router.get("/active")
async def active_tasks(request: Request):
    scheduler = request.app.state.scheduler
    return {"active": scheduler.get_active_tasks(), "queued": scheduler.queued_ids}


@router.get("/{task_id}")
async def get_task(task_id: int, request: Request):
    datastore = request.app.state.datastore
    task = await datastore.get_task(task_id)
    if task is None:
        return _not_found(task_id)

    result = task.model_dump(mode="json")
    live = request.app.state.automation.live_output(task_id)
    if live is not None and not task.is_terminal:
        result["output"] = live
    return result


async def _control(request: Request, task_id: int, action: str, *args):
    datastore = request.app.state.datastore
    scheduler = request.app.state.scheduler

    if await datastore.get_task(task_id) is None:
        return _not_found(task_id)

    ok = await getattr(scheduler, action)(task_id, *args)
    if not ok:
        task = await datastore.get_task(task_id)
        state = task.status.value if task else "deleted"
        return JSONResponse(
            status_code=400,
            content={"error": f"任务 {task_id} 当前状态 {state} 不允许 {action}"},
        )
    return {"success": True, "task_id": task_id}


@router.post("/{task_id}/run")
async def run_task(task_id: int, request: Request):
    """重新排队执行（不会绕过队列）"""
    actor = request.query_params.get("actor_id")
    try:
        actor_id = int(actor) if actor else None
    except ValueError:
        return _bad_param("actor_id", actor)
    return await _control(request, task_id, "run_task", actor_id)


@router.post("/{task_id}/pause")
async def pause_task(task_id: int, request: Request):
    return await _control(request, task_id, "pause")


@router.post("/{task_id}/resume")
async def resume_task(task_id: int, request: Request):
    return await _control(request, task_id, "resume")


@router.post("/{task_id}/stop")
async def stop_task(task_id: int, request: Request):
    return await _control(request, task_id, "stop")


@router.delete("/{task_id}")
async def delete_task(task_id: int, request: Request):
    return await _control(request, task_id, "delete")
