"""
系统状态 API

提供执行核心的运行状态：版本、自动化工具安装情况、调度队列、SSH 连接缓存、终端会话。
"""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/info")
async def get_info(request: Request):
    config = request.app.state.config
    return {
        "name": config.get("app.name", "ControlHub"),
        "version": config.get("app.version", "0.1.0"),
    }


@router.get("/status")
async def get_status(request: Request):
    """调度器、连接缓存与终端会话概况"""
    state = request.app.state
    return {
        "scheduler": {
            "processing": state.scheduler.is_processing,
            "queued": state.scheduler.queued_ids,
            "active": state.scheduler.get_active_tasks(),
        },
        "connections": state.connections.cached_hosts,
        "terminal_sessions": sorted(state.relay.sessions),
        "automation": await state.automation.check_installation(),
    }
