"""
远程命令执行器

通过 ConnectionManager 拿到主机连接，执行单条命令并记录命令历史：
- 命令黑名单检查
- stdout/stderr 捕获（stdout 为空时取 stderr）
- 无论成败都写一条命令历史

连接失败不会抛出本层：结果以 exit_code=-1、错误信息作为输出写入历史，
批量执行时单台主机失败不影响后续主机。
"""

import asyncssh

from core.exceptions import HubError
from core.logger import get_logger
from models.host import CommandRecord
from models.task import TaskResult, TaskStatus
from services.connection import SSH_ERRORS

_logger = get_logger("services.executor")


def _decode(data: bytes) -> str:
    """尝试多种编码解码远程输出"""
    if not data:
        return ""
    for encoding in ("utf-8", "gbk", "latin-1"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


async def run_remote(conn: asyncssh.SSHClientConnection, command: str) -> tuple[str, str, int]:
    """
    执行远程命令，输出按字节读取后再解码。

    Returns:
        (stdout, stderr, exit_code)，被信号终止时 exit_code 为 -1
    """
    result = await conn.run(command, check=False, encoding=None)
    exit_code = result.exit_status if result.exit_status is not None else -1
    return _decode(result.stdout), _decode(result.stderr), exit_code


class CommandExecutor:
    """远程命令执行器"""

    def __init__(self, connections, datastore, blacklist: list[str] = None):
        """
        Args:
            connections: ConnectionManager 实例
            datastore: Datastore 实例
            blacklist: 命令黑名单（子串匹配，忽略大小写）
        """
        self._connections = connections
        self._datastore = datastore
        self._blacklist = blacklist or []

    def is_blocked(self, command: str) -> bool:
        cmd_lower = command.lower().strip()
        for pattern in self._blacklist:
            if pattern.lower() in cmd_lower:
                _logger.warning(f"命令被黑名单拦截: {command} (匹配: {pattern})")
                return True
        return False

    async def execute(self, host_id: int, command: str, actor_id: int) -> CommandRecord:
        """
        在一台主机上执行命令，返回写入的命令历史记录。

        非零或负数退出码不视为本层错误；本方法不向外抛出连接类异常。
        """
        if self.is_blocked(command):
            return await self._datastore.create_command(
                command=command, host_id=host_id, user_id=actor_id,
                output=f"命令被安全策略拦截: {command}", exit_code=-1,
            )

        _logger.info(f"主机 {host_id} 执行命令: {command[:80]}")
        try:
            conn = await self._connections.connect(host_id)
            stdout, stderr, exit_code = await run_remote(conn, command)
            output = stdout or stderr
        except HubError as e:
            output, exit_code = str(e), -1
        except SSH_ERRORS as e:
            # 执行途中连接断开，丢弃缓存，下次重新握手
            _logger.warning(f"主机 {host_id} 执行命令时连接异常: {e}")
            self._connections.disconnect(host_id)
            output, exit_code = str(e) or type(e).__name__, -1

        _logger.info(f"主机 {host_id} 命令完成: exit_code={exit_code}")
        return await self._datastore.create_command(
            command=command, host_id=host_id, user_id=actor_id,
            output=output, exit_code=exit_code,
        )

    async def execute_many(self, host_ids: list[int], command: str, actor_id: int) -> TaskResult:
        """
        依次在多台主机上执行同一命令。

        输出按 "=== Host N ===" 分段；全部主机退出码为 0 才算成功，
        exit_code 取第一个非零退出码。
        """
        sections = []
        exit_code = 0
        for host_id in host_ids:
            record = await self.execute(host_id, command, actor_id)
            sections.append(f"=== Host {host_id} ===\n{record.output}\n")
            if record.exit_code != 0 and exit_code == 0:
                exit_code = record.exit_code if record.exit_code is not None else -1

        return TaskResult(
            status=TaskStatus.SUCCESS if exit_code == 0 else TaskStatus.FAILED,
            output="\n".join(sections),
            exit_code=exit_code,
        )
