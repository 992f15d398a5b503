"""
任务数据模型
"""

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    """
    任务状态机：

        queued → running → success | failed | stopped
        running → paused → running | stopped
    """
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.STOPPED, TaskStatus.SUCCESS, TaskStatus.FAILED})

# stop 可以作用的状态
STOPPABLE_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.PAUSED})


class TaskType(str, Enum):
    """任务类型，每种类型在调度器中对应一个处理器"""
    COMMAND = "command"
    AUTOMATION = "automation"
    SYSTEM_SERVICE = "system_service"
    VULNERABILITY_SCAN = "vulnerability_scan"
    MALWARE_SCAN = "malware_scan"


SCAN_TASK_TYPES = frozenset({TaskType.VULNERABILITY_SCAN, TaskType.MALWARE_SCAN})


class Task(BaseModel):
    """
    任务定义（持久化到 data/tasks/<id>.json）

    目标主机三选一：host_id 单机、host_ids 多机，或两者皆空（由类型决定是否合法）。
    output / exit_code / completed_at 仅在进入终态时写入一次。
    """
    id: int
    name: str = ""
    type: TaskType
    config: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.QUEUED
    host_id: Optional[int] = None
    host_ids: list[int] = Field(default_factory=list)
    automation_id: Optional[int] = None
    output: Optional[str] = None
    exit_code: Optional[int] = None
    created_by: int = 0
    executed_by: Optional[int] = None
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def targets(self) -> list[int]:
        """实际目标主机列表"""
        if self.host_id is not None:
            return [self.host_id]
        return list(self.host_ids)


class TaskCreate(BaseModel):
    """创建任务请求"""
    name: str = ""
    type: TaskType
    config: dict[str, Any] = Field(default_factory=dict)
    host_id: Optional[int] = None
    host_ids: list[int] = Field(default_factory=list)
    automation_id: Optional[int] = None
    created_by: int = 0


class TaskResult(BaseModel):
    """处理器返回给调度器的终态结果"""
    status: TaskStatus
    output: str = ""
    exit_code: Optional[int] = None


class AutomationDefinition(BaseModel):
    """自动化剧本（ansible playbook）"""
    id: int
    name: str
    description: str = ""
    content: str
    created_by: int = 0
    created_at: float = Field(default_factory=time.time)
