"""
主机 API

提供：
- 主机增删查（凭据入库前加密）
- 保存前的连接测试
- 远程指标采集 / 最近指标
- 命令历史
"""

import json

from fastapi import APIRouter, Request
from pydantic import ValidationError
from starlette.responses import JSONResponse

from core.logger import get_logger
from models.host import HostCreate, HostTestConfig

router = APIRouter(prefix="/hosts", tags=["hosts"])
_logger = get_logger("api.hosts")


def _public(host) -> dict:
    """对外输出时隐藏密文"""
    data = host.model_dump(mode="json")
    data.pop("auth_data", None)
    return data


@router.get("")
async def list_hosts(request: Request):
    hosts = await request.app.state.datastore.list_hosts()
    return {"hosts": [_public(h) for h in hosts], "total": len(hosts)}


@router.post("")
async def create_host(request: Request):
    datastore = request.app.state.datastore
    vault = request.app.state.vault

    try:
        data = HostCreate.model_validate(await request.json())
    except (json.JSONDecodeError, ValidationError) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    fields = data.model_dump(exclude={"secret"})
    host = await datastore.create_host(auth_data=vault.encrypt(data.secret), **fields)
    _logger.info(f"新增主机: {host.id} {host.username}@{host.hostname}:{host.port}")
    return _public(host)


@router.post("/test")
async def test_connection(request: Request):
    """用明文凭据测试连接，失败通过 success=false 报告"""
    try:
        config = HostTestConfig.model_validate(await request.json())
    except (json.JSONDecodeError, ValidationError) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    result = await request.app.state.connections.test_connection(config)
    return result.model_dump()


@router.get("/{host_id}")
async def get_host(host_id: int, request: Request):
    host = await request.app.state.datastore.get_host(host_id)
    if host is None:
        return JSONResponse(status_code=404, content={"error": f"主机不存在: {host_id}"})
    return _public(host)


@router.delete("/{host_id}")
async def delete_host(host_id: int, request: Request):
    """删除主机并断开其缓存连接"""
    deleted = await request.app.state.datastore.delete_host(host_id)
    request.app.state.connections.disconnect(host_id)
    if not deleted:
        return JSONResponse(status_code=404, content={"error": f"主机不存在: {host_id}"})
    return {"success": True, "host_id": host_id}


@router.post("/{host_id}/metrics")
async def collect_metrics(host_id: int, request: Request):
    snapshot = await request.app.state.collector.collect(host_id)
    if snapshot is None:
        return JSONResponse(status_code=502, content={"error": f"主机 {host_id} 指标采集失败"})
    return snapshot.model_dump(mode="json")


@router.get("/{host_id}/metrics")
async def latest_metrics(host_id: int, request: Request):
    snapshot = await request.app.state.datastore.latest_metrics(host_id)
    if snapshot is None:
        return JSONResponse(status_code=404, content={"error": f"主机 {host_id} 暂无指标"})
    return snapshot.model_dump(mode="json")


@router.get("/{host_id}/commands")
async def command_history(host_id: int, request: Request):
    raw = request.query_params.get("limit", "50")
    try:
        limit = int(raw)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": f"参数 limit 必须是整数: {raw!r}"})
    records = await request.app.state.datastore.list_commands(host_id=host_id, limit=limit)
    return {"commands": [r.model_dump(mode="json") for r in records], "total": len(records)}
