"""
任务处理器

调度器按 TaskType 查表分发，每种类型一个处理器，统一接口：

    async def run(task) -> Optional[TaskResult]

返回 TaskResult 时由调度器写入终态字段；返回 None 表示处理器自己负责
终态迁移（外部扫描处理器）。处理器内抛出的任何异常都由调度器转换为 failed。
"""

import inspect
import re
from typing import Awaitable, Callable, Optional, Protocol, Union

from core.exceptions import HandlerError
from core.logger import get_logger
from models.task import Task, TaskResult, TaskStatus

_logger = get_logger("services.handlers")

# systemd 单元名只允许这些字符，防止拼接出额外的 shell 命令
_SERVICE_NAME_RE = re.compile(r"^[A-Za-z0-9@._:-]+$")

SERVICE_OPERATIONS = ("start", "stop", "restart", "enable", "disable", "status")

ScanCallable = Callable[[int], Union[None, Awaitable[None]]]


class TaskHandler(Protocol):
    async def run(self, task: Task) -> Optional[TaskResult]:
        ...


def _resolve_targets(task: Task) -> list[int]:
    targets = task.targets()
    if not targets and task.config.get("host_id") is not None:
        targets = [int(task.config["host_id"])]
    if not targets:
        raise HandlerError("任务未指定目标主机")
    return targets


async def _run_on_targets(executor, task: Task, command: str) -> TaskResult:
    targets = _resolve_targets(task)
    actor = task.executed_by if task.executed_by is not None else task.created_by

    if task.host_id is not None or len(targets) == 1:
        record = await executor.execute(targets[0], command, actor)
        return TaskResult(
            status=TaskStatus.SUCCESS if record.exit_code == 0 else TaskStatus.FAILED,
            output=record.output,
            exit_code=record.exit_code,
        )
    return await executor.execute_many(targets, command, actor)


class CommandTaskHandler:
    """ad-hoc shell 命令，config: {"command": "..."}"""

    def __init__(self, executor):
        self._executor = executor

    async def run(self, task: Task) -> TaskResult:
        command = (task.config.get("command") or "").strip()
        if not command:
            raise HandlerError("任务配置中缺少 command")
        return await _run_on_targets(self._executor, task, command)


def build_service_command(service_name: str, operation: str) -> str:
    """
    生成 systemctl 命令。

    Raises:
        HandlerError: 服务名非法或操作不支持
    """
    if not service_name:
        raise HandlerError("缺少服务名 service_name")
    if not _SERVICE_NAME_RE.match(service_name):
        raise HandlerError(f"非法的服务名: {service_name}")
    if operation not in SERVICE_OPERATIONS:
        raise HandlerError(f"不支持的 systemd 操作: {operation}")

    if operation == "status":
        return (
            f"systemctl status {service_name} && systemctl is-active {service_name} "
            f"|| echo 'Service inactive'"
        )
    return f"systemctl {operation} {service_name}"


class SystemServiceTaskHandler:
    """
    systemd 服务管理，config: {"service_name": "nginx", "operation": "restart"}
    """

    def __init__(self, executor):
        self._executor = executor

    async def run(self, task: Task) -> TaskResult:
        command = build_service_command(
            task.config.get("service_name", ""),
            task.config.get("operation", ""),
        )
        return await _run_on_targets(self._executor, task, command)


class ExternalScanHandler:
    """
    外部扫描处理器适配器（漏洞扫描 / 恶意软件扫描）。

    被包装的 handler(task_id) 自己负责把任务迁移到终态，可以是普通函数或协程函数。
    """

    def __init__(self, handler: ScanCallable):
        self._handler = handler

    async def run(self, task: Task) -> None:
        result = self._handler(task.id)
        if inspect.isawaitable(result):
            await result
        return None
