"""
文件存储引擎 + 数据存储协作者

FileStore 负责原子性 JSON 读写（临时文件 + 重命名，按文件加锁）。
Datastore 在其上提供任务、主机、剧本、命令历史与指标的存取，
执行核心只通过 Datastore 读写记录，每次有意义的状态迁移只写一次。

目录结构：
    data/
      counters.json          自增 ID
      hosts.json             {id: HostRecord}
      automations.json       {id: AutomationDefinition}
      tasks/<id>.json        Task
      commands/commands_YYYY-MM-DD.json
      metrics.json           {host_id: [MetricsSnapshot, ...]}
"""

import json
import os
import tempfile
import threading
from datetime import datetime
from typing import Any, Callable, Optional

from core.exceptions import HostNotFoundError, TaskNotFoundError
from core.logger import get_logger
from models.host import CommandRecord, HostRecord, MetricsSnapshot
from models.task import AutomationDefinition, Task, TaskCreate, TaskStatus

_logger = get_logger("services.storage")

# 每台主机保留的指标条数
_METRICS_HISTORY = 100


class FileStore:
    """
    线程安全的 JSON 文件存储。

    filename 为相对 data_dir 的路径，可以包含子目录（如 "tasks/3.json"）。
    """

    def __init__(self, data_dir: str):
        self._data_dir = os.path.abspath(data_dir)
        self._locks: dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()
        os.makedirs(self._data_dir, exist_ok=True)
        _logger.info(f"文件存储引擎初始化: {self._data_dir}")

    @property
    def data_dir(self) -> str:
        return self._data_dir

    def _get_lock(self, filename: str) -> threading.Lock:
        with self._global_lock:
            if filename not in self._locks:
                self._locks[filename] = threading.Lock()
            return self._locks[filename]

    def _filepath(self, filename: str) -> str:
        return os.path.join(self._data_dir, filename)

    def _load(self, filepath: str, default: Any) -> Any:
        if not os.path.isfile(filepath):
            return default
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            _logger.error(f"读取文件失败 [{filepath}]: {e}")
            return default

    def _atomic_dump(self, filepath: str, data: Any):
        """先写临时文件再 os.replace，写入中断不会破坏原文件"""
        dir_path = os.path.dirname(filepath)
        os.makedirs(dir_path, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=dir_path, suffix=".tmp", prefix=f".{os.path.basename(filepath)}_"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, filepath)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def read(self, filename: str, default: Any = None) -> Any:
        """读取 JSON 文件，不存在或损坏时返回 default"""
        with self._get_lock(filename):
            return self._load(self._filepath(filename), default)

    def write(self, filename: str, data: Any) -> bool:
        with self._get_lock(filename):
            try:
                self._atomic_dump(self._filepath(filename), data)
                return True
            except OSError as e:
                _logger.error(f"写入文件失败 [{filename}]: {e}")
                return False

    def update(self, filename: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        """
        读取-修改-写回，整个过程持有同一把文件锁。

        Args:
            updater: (data) -> modified_data
            default: 文件不存在时传给 updater 的初始值
        """
        with self._get_lock(filename):
            filepath = self._filepath(filename)
            data = updater(self._load(filepath, default))
            self._atomic_dump(filepath, data)
            return data

    def delete(self, filename: str) -> bool:
        with self._get_lock(filename):
            filepath = self._filepath(filename)
            if not os.path.isfile(filepath):
                return False
            try:
                os.unlink(filepath)
                return True
            except OSError as e:
                _logger.error(f"删除文件失败 [{filename}]: {e}")
                return False

    def exists(self, filename: str) -> bool:
        return os.path.isfile(self._filepath(filename))

    def ensure_subdir(self, subdir: str) -> str:
        path = os.path.join(self._data_dir, subdir)
        os.makedirs(path, exist_ok=True)
        return path

    def list_dir(self, subdir: str, suffix: str = ".json") -> list[str]:
        """列出子目录下的 JSON 文件名（不含临时文件）"""
        path = self.ensure_subdir(subdir)
        return [
            name for name in os.listdir(path)
            if name.endswith(suffix) and not name.startswith(".")
        ]


class Datastore:
    """
    执行核心的数据存储协作者。

    方法全部为 async，调用方统一 await；内部是同步文件操作，
    在单事件循环模型下每次调用都在一个回合内完成。
    """

    def __init__(self, store: FileStore):
        self._store = store
        self._store.ensure_subdir("tasks")
        self._store.ensure_subdir("commands")

    def _next_id(self, kind: str) -> int:
        def bump(counters):
            counters[kind] = int(counters.get(kind, 0)) + 1
            return counters

        return self._store.update("counters.json", bump, default={})[kind]

    @staticmethod
    def _task_file(task_id: int) -> str:
        return os.path.join("tasks", f"{task_id}.json")

    # ──────────────────────────────────────────
    # 任务
    # ──────────────────────────────────────────

    async def create_task(self, data: TaskCreate) -> Task:
        task = Task(id=self._next_id("task"), **data.model_dump())
        self._store.write(self._task_file(task.id), task.model_dump(mode="json"))
        return task

    async def get_task(self, task_id: int) -> Optional[Task]:
        raw = self._store.read(self._task_file(task_id), None)
        return Task.model_validate(raw) if raw else None

    async def list_tasks(self, limit: int = 50) -> list[Task]:
        tasks = []
        for name in self._store.list_dir("tasks"):
            raw = self._store.read(os.path.join("tasks", name), None)
            if raw:
                tasks.append(Task.model_validate(raw))
        tasks.sort(key=lambda t: t.id, reverse=True)
        return tasks[:limit]

    async def get_tasks_by_status(self, status: TaskStatus) -> list[Task]:
        tasks = [t for t in await self.list_tasks(limit=1_000_000) if t.status == status]
        tasks.sort(key=lambda t: t.id)
        return tasks

    async def update_task(self, task_id: int, **fields) -> Task:
        """
        局部更新任务字段。

        Raises:
            TaskNotFoundError: 任务不存在
        """
        filename = self._task_file(task_id)
        if not self._store.exists(filename):
            raise TaskNotFoundError(task_id)

        def apply(raw):
            task = Task.model_validate(raw).model_copy(update=fields)
            return task.model_dump(mode="json")

        return Task.model_validate(self._store.update(filename, apply))

    async def delete_task(self, task_id: int) -> bool:
        return self._store.delete(self._task_file(task_id))

    # ──────────────────────────────────────────
    # 主机
    # ──────────────────────────────────────────

    async def create_host(self, **fields) -> HostRecord:
        host = HostRecord(id=self._next_id("host"), **fields)

        def insert(hosts):
            hosts[str(host.id)] = host.model_dump(mode="json")
            return hosts

        self._store.update("hosts.json", insert, default={})
        return host

    async def get_host(self, host_id: int) -> Optional[HostRecord]:
        raw = self._store.read("hosts.json", {}).get(str(host_id))
        return HostRecord.model_validate(raw) if raw else None

    async def list_hosts(self) -> list[HostRecord]:
        hosts = self._store.read("hosts.json", {})
        return sorted(
            (HostRecord.model_validate(raw) for raw in hosts.values()),
            key=lambda h: h.id,
        )

    async def update_host(self, host_id: int, **fields) -> HostRecord:
        """
        Raises:
            HostNotFoundError: 主机不存在
        """
        result: dict = {}

        def apply(hosts):
            raw = hosts.get(str(host_id))
            if raw is None:
                raise HostNotFoundError(host_id)
            host = HostRecord.model_validate(raw).model_copy(update=fields)
            hosts[str(host_id)] = result["host"] = host.model_dump(mode="json")
            return hosts

        self._store.update("hosts.json", apply, default={})
        return HostRecord.model_validate(result["host"])

    async def delete_host(self, host_id: int) -> bool:
        removed = []

        def apply(hosts):
            if hosts.pop(str(host_id), None) is not None:
                removed.append(host_id)
            return hosts

        self._store.update("hosts.json", apply, default={})
        return bool(removed)

    # ──────────────────────────────────────────
    # 自动化剧本
    # ──────────────────────────────────────────

    async def create_automation(self, name: str, content: str,
                                description: str = "", created_by: int = 0) -> AutomationDefinition:
        automation = AutomationDefinition(
            id=self._next_id("automation"),
            name=name,
            content=content,
            description=description,
            created_by=created_by,
        )

        def insert(items):
            items[str(automation.id)] = automation.model_dump(mode="json")
            return items

        self._store.update("automations.json", insert, default={})
        return automation

    async def get_automation(self, automation_id: int) -> Optional[AutomationDefinition]:
        raw = self._store.read("automations.json", {}).get(str(automation_id))
        return AutomationDefinition.model_validate(raw) if raw else None

    # ──────────────────────────────────────────
    # 命令历史（按天分文件，只追加）
    # ──────────────────────────────────────────

    @staticmethod
    def _commands_file(date_str: Optional[str] = None) -> str:
        date_str = date_str or datetime.now().strftime("%Y-%m-%d")
        return os.path.join("commands", f"commands_{date_str}.json")

    async def create_command(self, command: str, host_id: int, user_id: int,
                             output: str, exit_code: Optional[int]) -> CommandRecord:
        record = CommandRecord(
            id=self._next_id("command"),
            command=command,
            host_id=host_id,
            user_id=user_id,
            output=output,
            exit_code=exit_code,
        )

        def append(entries):
            if not isinstance(entries, list):
                entries = []
            entries.append(record.model_dump(mode="json"))
            return entries

        self._store.update(self._commands_file(), append, default=[])
        return record

    async def list_commands(self, host_id: Optional[int] = None, limit: int = 50) -> list[CommandRecord]:
        """最近的命令历史（跨天，最新在前）"""
        records: list[CommandRecord] = []
        for name in sorted(self._store.list_dir("commands"), reverse=True):
            for raw in reversed(self._store.read(os.path.join("commands", name), [])):
                if host_id is None or raw.get("host_id") == host_id:
                    records.append(CommandRecord.model_validate(raw))
            if len(records) >= limit:
                break
        return records[:limit]

    # ──────────────────────────────────────────
    # 指标
    # ──────────────────────────────────────────

    async def create_metrics(self, snapshot: MetricsSnapshot) -> MetricsSnapshot:
        def append(metrics):
            history = metrics.setdefault(str(snapshot.host_id), [])
            history.append(snapshot.model_dump(mode="json"))
            del history[:-_METRICS_HISTORY]
            return metrics

        self._store.update("metrics.json", append, default={})
        return snapshot

    async def latest_metrics(self, host_id: int) -> Optional[MetricsSnapshot]:
        history = self._store.read("metrics.json", {}).get(str(host_id)) or []
        return MetricsSnapshot.model_validate(history[-1]) if history else None
