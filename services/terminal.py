"""
交互式终端中继

每个客户端连接（WebSocket）对应一个会话：
    {客户端通道, 缓存的 SSH 连接, 在该连接上新开的交互式 shell 进程}

SSH 连接由 ConnectionManager 共享：同一主机开多个终端只会握手一次，
每个终端各自占用一个 shell 通道。会话拆除时只关闭 shell 通道，不关闭共享连接。

消息协议（JSON 文本帧，data 为 base64 编码的原始字节）：
    客户端 → 中继  {"type": "input", "data": "..."}
                  {"type": "resize", "cols": 120, "rows": 40}
    中继 → 客户端  {"type": "session", "sessionId": "3-1700000000000"}
                  {"type": "output", "data": "..."}
                  {"type": "error", "message": "..."}
"""

import asyncio
import base64
import binascii
import json
import time
from typing import Any, Optional

from fastapi import WebSocketDisconnect

from core.exceptions import ChannelError, HubError
from core.logger import get_logger
from services.connection import SSH_ERRORS

_logger = get_logger("services.terminal")

_READ_CHUNK = 4096


class TerminalSession:
    """一个活动终端会话"""

    def __init__(self, session_id: str, host_id: int, client, process):
        self.session_id = session_id
        self.host_id = host_id
        self.client = client
        self.process = process
        self.created_at = time.time()


class TerminalRelay:
    """客户端通道与 shell 通道之间的双向中继"""

    def __init__(self, connections, term: str = "xterm-256color", cols: int = 80, rows: int = 24):
        self._connections = connections
        self._term = term
        self._cols = cols
        self._rows = rows
        self._sessions: dict[str, TerminalSession] = {}

    @property
    def sessions(self) -> dict[str, TerminalSession]:
        return dict(self._sessions)

    def _new_session_id(self, host_id: int) -> str:
        base = f"{host_id}-{int(time.time() * 1000)}"
        session_id, n = base, 1
        while session_id in self._sessions:
            session_id = f"{base}-{n}"
            n += 1
        return session_id

    async def handle(self, client, host_id: int):
        """
        服务一个已 accept 的客户端连接，直到任一端关闭。

        client 需要提供 send_json / receive_text / close（FastAPI WebSocket）。
        """
        try:
            conn = await self._connections.connect(host_id)
        except HubError as e:
            _logger.warning(f"终端连接主机 {host_id} 失败: {e}")
            await self._send_error(client, str(e))
            await self._close_client(client)
            return

        try:
            process = await conn.create_process(
                term_type=self._term,
                term_size=(self._cols, self._rows),
                encoding=None,
            )
        except SSH_ERRORS as e:
            _logger.warning(f"主机 {host_id} 打开 shell 通道失败: {e}")
            await self._send_error(client, f"打开 shell 失败: {e}")
            await self._close_client(client)
            return

        session_id = self._new_session_id(host_id)
        self._sessions[session_id] = TerminalSession(session_id, host_id, client, process)
        _logger.info(f"终端会话建立: {session_id}")

        try:
            await client.send_json({"type": "session", "sessionId": session_id})

            pumps = {
                asyncio.create_task(self._pump_input(client, process)),
                asyncio.create_task(self._pump_output(client, process)),
            }
            done, pending = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                error = task.exception()
                if isinstance(error, ChannelError):
                    _logger.warning(f"终端会话 {session_id} 通道异常: {error}")
                    await self._send_error(client, str(error))
                elif error is not None:
                    _logger.debug(f"终端会话 {session_id} 中继结束: {error!r}")
        except (WebSocketDisconnect, RuntimeError) as e:
            _logger.debug(f"终端会话 {session_id} 客户端已断开: {e!r}")
        finally:
            self._close_process(process)
            self._sessions.pop(session_id, None)
            await self._close_client(client)
            _logger.info(f"终端会话结束: {session_id}")

    async def close_all(self):
        """关闭全部会话的 shell 通道与客户端（应用退出时调用）"""
        for session in list(self._sessions.values()):
            self._close_process(session.process)
            await self._close_client(session.client)
        self._sessions.clear()

    # ──────────────────────────────────────────
    # 中继
    # ──────────────────────────────────────────

    async def _pump_output(self, client, process):
        """shell 输出 → 客户端，读到 EOF 时返回"""
        while True:
            try:
                data = await process.stdout.read(_READ_CHUNK)
            except SSH_ERRORS as e:
                raise ChannelError(f"读取 shell 输出失败: {e}") from e
            if not data:
                return
            await client.send_json({
                "type": "output",
                "data": base64.b64encode(data).decode("ascii"),
            })

    async def _pump_input(self, client, process):
        while True:
            try:
                raw = await client.receive_text()
            except WebSocketDisconnect:
                return

            try:
                message: dict[str, Any] = json.loads(raw)
            except ValueError:
                _logger.warning(f"忽略无法解析的终端消息: {raw[:80]!r}")
                continue
            if not isinstance(message, dict):
                continue

            kind = message.get("type")
            if kind == "input":
                data = self._decode_input(message.get("data"))
                if data is None:
                    continue
                try:
                    process.stdin.write(data)
                    await process.stdin.drain()
                except SSH_ERRORS as e:
                    raise ChannelError(f"写入 shell 失败: {e}") from e
            elif kind == "resize":
                self._resize(process, message.get("cols"), message.get("rows"))

    @staticmethod
    def _decode_input(data) -> Optional[bytes]:
        if not isinstance(data, str):
            return None
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            _logger.warning("忽略非 base64 编码的终端输入")
            return None

    @staticmethod
    def _resize(process, cols, rows):
        try:
            process.change_terminal_size(int(cols), int(rows))
        except (TypeError, ValueError):
            _logger.debug(f"忽略非法的终端尺寸: cols={cols} rows={rows}")
        except SSH_ERRORS as e:
            _logger.debug(f"调整终端尺寸失败: {e}")

    # ──────────────────────────────────────────
    # 内部
    # ──────────────────────────────────────────

    @staticmethod
    async def _send_error(client, message: str):
        try:
            await client.send_json({"type": "error", "message": message})
        except (WebSocketDisconnect, RuntimeError):
            pass

    @staticmethod
    async def _close_client(client):
        try:
            await client.close()
        except RuntimeError:
            # 已经关闭
            pass

    @staticmethod
    def _close_process(process):
        try:
            process.close()
        except SSH_ERRORS as e:
            _logger.debug(f"关闭 shell 通道出错: {e}")
