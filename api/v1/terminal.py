"""
WebSocket 终端 API

/api/v1/terminal/{host_id}：在目标主机的缓存 SSH 连接上打开交互式 shell，
消息格式见 services.terminal。
"""

from fastapi import APIRouter, WebSocket

from core.logger import get_logger

router = APIRouter(prefix="/terminal", tags=["terminal"])
_logger = get_logger("api.terminal")


@router.websocket("/{host_id}")
async def terminal_ws(websocket: WebSocket, host_id: int):
    await websocket.accept()
    _logger.info(f"终端 WebSocket 已连接, host_id={host_id}")
    await websocket.app.state.relay.handle(websocket, host_id)
