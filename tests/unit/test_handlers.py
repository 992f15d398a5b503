"""任务处理器测试"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.exceptions import HandlerError
from models.host import CommandRecord
from models.task import Task, TaskResult, TaskStatus, TaskType
from services.handlers import (
    CommandTaskHandler,
    ExternalScanHandler,
    SystemServiceTaskHandler,
    build_service_command,
)


def _task(**kwargs) -> Task:
    kwargs.setdefault("id", 1)
    kwargs.setdefault("type", TaskType.COMMAND)
    return Task(**kwargs)


@pytest.fixture
def executor():
    executor = MagicMock()
    executor.execute = AsyncMock(return_value=CommandRecord(
        id=1, command="x", host_id=3, output="done", exit_code=0,
    ))
    executor.execute_many = AsyncMock(return_value=TaskResult(
        status=TaskStatus.FAILED, output="=== Host 3 ===", exit_code=2,
    ))
    return executor


@pytest.mark.parametrize("operation", ["start", "stop", "restart", "enable", "disable"])
def test_service_command(operation):
    assert build_service_command("nginx.service", operation) == f"systemctl {operation} nginx.service"


def test_service_status_command_reports_inactive():
    command = build_service_command("sshd", "status")

    assert command.startswith("systemctl status sshd && systemctl is-active sshd")
    assert command.endswith("|| echo 'Service inactive'")


@pytest.mark.parametrize("name,operation", [
    ("", "start"),
    ("nginx; reboot", "start"),
    ("$(id)", "restart"),
    ("nginx", "mask"),
])
def test_service_command_rejects_bad_input(name, operation):
    with pytest.raises(HandlerError):
        build_service_command(name, operation)


@pytest.mark.asyncio
async def test_command_handler_single_host(executor):
    task = _task(host_id=3, config={"command": "uptime"}, created_by=5)

    result = await CommandTaskHandler(executor).run(task)

    executor.execute.assert_awaited_once_with(3, "uptime", 5)
    assert result.status == TaskStatus.SUCCESS
    assert result.output == "done"
    assert result.exit_code == 0


@pytest.mark.asyncio
async def test_command_handler_prefers_executed_by(executor):
    task = _task(host_id=3, config={"command": "uptime"}, created_by=5, executed_by=9)

    await CommandTaskHandler(executor).run(task)

    executor.execute.assert_awaited_once_with(3, "uptime", 9)


@pytest.mark.asyncio
async def test_command_handler_many_hosts(executor):
    task = _task(host_ids=[3, 4], config={"command": "uptime"})

    result = await CommandTaskHandler(executor).run(task)

    executor.execute_many.assert_awaited_once_with([3, 4], "uptime", 0)
    assert result.exit_code == 2


@pytest.mark.asyncio
async def test_command_handler_falls_back_to_config_host(executor):
    task = _task(config={"command": "uptime", "host_id": "3"})

    await CommandTaskHandler(executor).run(task)

    executor.execute.assert_awaited_once_with(3, "uptime", 0)


@pytest.mark.asyncio
async def test_command_handler_requires_command_and_target(executor):
    with pytest.raises(HandlerError):
        await CommandTaskHandler(executor).run(_task(host_id=3, config={}))
    with pytest.raises(HandlerError):
        await CommandTaskHandler(executor).run(_task(config={"command": "uptime"}))


@pytest.mark.asyncio
async def test_system_service_handler(executor):
    task = _task(
        type=TaskType.SYSTEM_SERVICE,
        host_id=3,
        config={"service_name": "nginx", "operation": "restart"},
    )

    result = await SystemServiceTaskHandler(executor).run(task)

    executor.execute.assert_awaited_once_with(3, "systemctl restart nginx", 0)
    assert result.status == TaskStatus.SUCCESS


@pytest.mark.asyncio
async def test_external_scan_handler_accepts_sync_and_async_callables():
    sync_fn = MagicMock(return_value=None)
    async_fn = AsyncMock(return_value=None)
    task = _task(id=12, type=TaskType.MALWARE_SCAN)

    assert await ExternalScanHandler(sync_fn).run(task) is None
    assert await ExternalScanHandler(async_fn).run(task) is None
    sync_fn.assert_called_once_with(12)
    async_fn.assert_awaited_once_with(12)
